"""
Reconciler — plans, applies and watches one stack.

Composes the planner, the apply executor, the state store and the run
journal. Every apply and destroy lands one RunRecord in the journal.

Drift watch:
  refresh() reads every recorded resource through its provider adapter and
  reports resources that disappeared or whose attributes moved away from
  state. run_async() runs refresh on the configured cron schedule.
"""

import asyncio
import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from croniter import croniter

from lakeform.errors import LakeformError, PendingValueError
from lakeform.execution.executor import ApplyExecutor
from lakeform.journal.store import RunJournal
from lakeform.loader.interpolation import (
    UNKNOWN,
    contains_literal,
    contains_unknown,
    parse_reference,
    pending_names,
    references,
    substitute,
)
from lakeform.models.declaration import DeclarationSet
from lakeform.models.engine import EngineConfig
from lakeform.models.execution import ApplyResult
from lakeform.models.journal import RunRecord
from lakeform.models.plan import Plan
from lakeform.plan.planner import Planner
from lakeform.providers.base import NotFound, ProviderRegistry
from lakeform.schema.builtin import default_registry
from lakeform.schema.registry import SchemaRegistry
from lakeform.state.store import StateStore
from lakeform.utils.logger import REDACTED

logger = logging.getLogger(__name__)


class DriftEvent:
    """A recorded resource that no longer matches the real world."""

    MISSING = "missing"
    CHANGED = "changed"

    def __init__(
        self,
        address: str,
        drift_type: str,
        description: str,
        attributes: Optional[List[str]] = None,
    ):
        self.address = address
        self.drift_type = drift_type
        self.description = description
        self.attributes = attributes or []
        self.detected_at = datetime.utcnow()

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "drift_type": self.drift_type,
            "description": self.description,
            "attributes": self.attributes,
            "detected_at": self.detected_at.isoformat(),
        }


class Reconciler:
    """
    One stack's reconciliation surface.

    Runs are serialized: a second apply waits for the first to finish.
    """

    def __init__(
        self,
        declarations: DeclarationSet,
        state_store: StateStore,
        providers: ProviderRegistry,
        registry: Optional[SchemaRegistry] = None,
        journal: Optional[RunJournal] = None,
        config: Optional[EngineConfig] = None,
        stack: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.declarations = declarations
        self.state_store = state_store
        self.providers = providers
        self.registry = registry or default_registry()
        self.journal = journal
        self.config = config or EngineConfig()
        self.stack = stack

        self.planner = Planner(self.registry)
        self.executor = ApplyExecutor(providers, state_store, self.config, sleep=sleep)

        self._run_lock = threading.Lock()
        self._running = False
        self.last_drift: List[DriftEvent] = []
        self.last_refresh_at: Optional[datetime] = None

    @property
    def status(self) -> str:
        """Drift watcher status."""
        return "running" if self._running else "stopped"

    # --- Plan / apply ---

    def plan(self) -> Plan:
        """Plan the stack against a snapshot of state."""
        return self.planner.plan(self.declarations, self.state_store.snapshot())

    def plan_destroy(self) -> Plan:
        return self.planner.plan_destroy(self.state_store.snapshot())

    def apply(self, plan: Optional[Plan] = None, cancel_event: Optional[threading.Event] = None) -> ApplyResult:
        """Apply ``plan`` (a fresh plan when omitted) and journal the run."""
        with self._run_lock:
            plan = plan or self.plan()
            result = self.executor.execute(plan, cancel_event)
            self._record("destroy" if plan.destroy else "apply", plan, result)
        return result

    def destroy(self, cancel_event: Optional[threading.Event] = None) -> ApplyResult:
        """Delete every recorded resource, dependents first."""
        with self._run_lock:
            plan = self.plan_destroy()
            result = self.executor.execute(plan, cancel_event)
            self._record("destroy", plan, result)
        return result

    def _record(self, operation: str, plan: Plan, result: ApplyResult) -> None:
        if self.journal is None:
            return
        record = RunRecord(
            id=f"rec_{uuid4().hex[:12]}",
            run_id=result.run_id,
            operation=operation,
            stack=self.stack,
            plan_summary=plan.summary(),
            results=result.results,
            success=result.success,
            halted=result.halted,
            cancelled=result.cancelled,
            started_at=result.started_at,
            finished_at=result.finished_at,
        )
        self.journal.append(record)

    def close(self) -> None:
        """Close the state store and the journal."""
        self.state_store.close()
        if self.journal is not None:
            self.journal.close()

    # --- Outputs ---

    def output_names(self) -> List[str]:
        return sorted(self.declarations.outputs)

    def is_output_sensitive(self, name: str) -> bool:
        declaration = self._output_declaration(name)
        if declaration.sensitive:
            return True
        if contains_literal(declaration.value, self.declarations.sensitive_values):
            return True
        for ref in references(declaration.value):
            if self.registry.has(ref.kind) and self.registry.is_sensitive(ref.kind, ref.attribute):
                return True
            entry = self.state_store.get(ref.target)
            if entry is not None and ref.attribute in entry.sensitive_attributes:
                return True
        return False

    def output(self, name: str, show_sensitive: bool = False) -> Any:
        """
        Current value of output ``name`` resolved against state.
        Sensitive outputs come back masked unless ``show_sensitive``.
        """
        declaration = self._output_declaration(name)
        address = f"output.{name}"

        pending = pending_names(declaration.value)
        if pending:
            raise PendingValueError(address, pending)

        def lookup(expression: str) -> Any:
            ref = parse_reference(expression)
            entry = self.state_store.get(ref.target)
            if entry is None or ref.attribute not in entry.attributes:
                return UNKNOWN
            return entry.attributes[ref.attribute]

        try:
            value = substitute(declaration.value, lookup)
        except ValueError as e:
            raise LakeformError(str(e), address) from e
        if contains_unknown(value):
            raise LakeformError("value not available until the stack is applied", address)
        if self.is_output_sensitive(name) and not show_sensitive:
            return REDACTED
        return value

    def outputs(self, show_sensitive: bool = False) -> Dict[str, Any]:
        """Every output that can be resolved right now."""
        values = {}
        for name in self.output_names():
            try:
                values[name] = self.output(name, show_sensitive)
            except LakeformError as e:
                logger.debug("Output %s unavailable: %s", name, e)
        return values

    def _output_declaration(self, name: str):
        declaration = self.declarations.outputs.get(name)
        if declaration is None:
            raise LakeformError(f"no output named '{name}'", f"output.{name}")
        return declaration

    # --- Drift ---

    def refresh(self, update_state: bool = False) -> List[DriftEvent]:
        """
        Read every recorded resource and report drift.
        With ``update_state`` the observed attributes replace the recorded
        ones (missing resources are forgotten) so the next plan repairs them.
        """
        events: List[DriftEvent] = []
        for address, entry in sorted(self.state_store.snapshot().items()):
            adapter = self.providers.for_kind(entry.kind)
            observed = adapter.read(entry.kind, address, entry.provider_id or address)

            if isinstance(observed, NotFound):
                events.append(DriftEvent(
                    address=address,
                    drift_type=DriftEvent.MISSING,
                    description=f"{address} no longer exists at the provider",
                ))
                if update_state:
                    self.state_store.remove(address)
                continue

            names = sorted(set(entry.attributes) | set(observed.attributes))
            changed = [
                n for n in names
                if entry.attributes.get(n) != observed.attributes.get(n)
            ]
            if not changed:
                continue
            events.append(DriftEvent(
                address=address,
                drift_type=DriftEvent.CHANGED,
                description=f"{address} changed outside lakeform: {', '.join(changed)}",
                attributes=changed,
            ))
            if update_state:
                refreshed = entry.model_copy(update={
                    "attributes": observed.attributes,
                    "updated_at": datetime.utcnow(),
                })
                self.state_store.put(refreshed, expected_hash=entry.content_hash)

        for event in events:
            logger.warning("Drift: %s", event.description)
        self.last_drift = events
        self.last_refresh_at = datetime.utcnow()
        return events

    def next_refresh_at(self, now: Optional[datetime] = None) -> datetime:
        if not self.config.drift_schedule:
            raise LakeformError("no drift_schedule configured")
        return croniter(self.config.drift_schedule, now or datetime.utcnow()).get_next(datetime)

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run refresh on the drift schedule until ``stop_event`` is set."""
        next_at = self.next_refresh_at()
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                delay = max(0.0, (next_at - datetime.utcnow()).total_seconds())
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    self.refresh()
                    next_at = self.next_refresh_at()
        finally:
            self._running = False
