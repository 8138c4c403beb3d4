"""
Apply Executor — walks a plan through the provider adapters.

Behavioral Contract:
- A node starts only after every node it depends on is Applied
- A replacement runs as two steps: the old resource is deleted (recorded
  dependents first) before the new one is created (dependencies first)
- Independent nodes run concurrently on a worker pool
- On success the realized attributes (provider-computed included) are written
  to the State Store; on failure the prior state entry is left untouched
- Retryable adapter errors are retried with bounded exponential backoff
- Asynchronous provider operations are polled with bounded backoff until they
  settle or the operation timeout expires
- fail_fast stops scheduling after the first failure; best_effort keeps going
  with subtrees that do not depend on the failed node
- Cancellation stops scheduling but lets in-flight adapter calls finish
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from uuid import uuid4

from lakeform.errors import AdapterError, ApplyTimeoutError, LakeformError, PendingValueError
from lakeform.loader.interpolation import UNKNOWN, contains_unknown, parse_reference, substitute
from lakeform.models.engine import EngineConfig, FailurePolicy
from lakeform.models.execution import ApplyResult, NodeResult, NodeStatus
from lakeform.models.plan import Action, Plan, PlanNode
from lakeform.models.state import StateEntry
from lakeform.providers.base import InProgress, ProviderAdapter, ProviderRegistry, Realized
from lakeform.state.store import StateStore
from lakeform.utils.logger import register_secret

logger = logging.getLogger(__name__)

# A step is (address, phase). Every node has an apply step; a replacement
# also has a destroy step that takes the old resource away first.
Step = Tuple[str, str]
DESTROY = "destroy"
APPLY = "apply"
_PHASES = (DESTROY, APPLY)
_OPEN = (NodeStatus.PENDING, NodeStatus.IN_PROGRESS)


class _NodeRun:
    """Mutable bookkeeping for one node during a run."""

    def __init__(self, node: PlanNode):
        self.node = node
        self.status = NodeStatus.PENDING
        self.attempts = 0
        self.error: Optional[BaseException] = None
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self.started_clock = 0.0
        self.duration = 0.0

    def result(self) -> NodeResult:
        error_chain: List[str] = []
        retryable = None
        if self.error is not None:
            if isinstance(self.error, LakeformError):
                error_chain = self.error.cause_chain()
            else:
                error_chain = [f"{self.node.address}: {self.error}"]
            if isinstance(self.error, AdapterError):
                retryable = self.error.retryable
        return NodeResult(
            address=self.node.address,
            action=self.node.action,
            status=self.status,
            attempts=self.attempts,
            error=error_chain[0] if error_chain else None,
            error_chain=error_chain,
            retryable=retryable,
            started_at=self.started_at,
            finished_at=self.finished_at,
            duration_seconds=round(self.duration, 3),
        )


class ApplyExecutor:
    """Applies plans. One executor may run many plans, one at a time."""

    def __init__(
        self,
        providers: ProviderRegistry,
        state_store: StateStore,
        config: Optional[EngineConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.providers = providers
        self.state_store = state_store
        self.config = config or EngineConfig()
        self._sleep = sleep
        self._clock = clock

    def execute(
        self,
        plan: Plan,
        cancel_event: Optional[threading.Event] = None,
        run_id: Optional[str] = None,
    ) -> ApplyResult:
        """Apply every node of ``plan``. Never raises for per-node failures."""
        run_id = run_id or f"run_{uuid4().hex[:12]}"
        cancel_event = cancel_event or threading.Event()
        started_at = datetime.utcnow()

        runs: Dict[str, _NodeRun] = {n.address: _NodeRun(n) for n in plan.nodes}
        waiting = step_graph(plan.nodes)
        dependents: Dict[Step, List[Step]] = {s: [] for s in waiting}
        for step, deps in waiting.items():
            for dep in deps:
                dependents[dep].append(step)
        started: Set[Step] = set()
        finished: Set[Step] = set()

        # Plan order is deterministic; keep it for scheduling ties
        position = {n.address: i for i, n in enumerate(plan.nodes)}
        halted = False

        def settle(address: str, status: NodeStatus, error: Optional[BaseException] = None) -> None:
            run = runs[address]
            run.status = status
            run.error = error
            if run.finished_at is None and status != NodeStatus.PENDING:
                run.finished_at = datetime.utcnow()

        def downstream(address: str) -> List[Step]:
            return [
                child
                for phase in _PHASES
                if (address, phase) in waiting and (address, phase) not in finished
                for child in dependents[(address, phase)]
            ]

        def cascade(address: str, status: NodeStatus, reason: str) -> None:
            """Mark every node waiting on an unfinished step of ``address``."""
            stack = downstream(address)
            while stack:
                step = stack.pop()
                child = step[0]
                if step in started or runs[child].status not in _OPEN:
                    continue
                settle(child, status, LakeformError(reason, child))
                stack.extend(downstream(child))

        def ready() -> List[Step]:
            return sorted(
                (
                    s for s, deps in waiting.items()
                    if not deps and s not in started and runs[s[0]].status in _OPEN
                ),
                key=lambda s: (position[s[0]], _PHASES.index(s[1])),
            )

        def complete(step: Step) -> None:
            finished.add(step)
            for child in dependents[step]:
                waiting[child].discard(step)

        # Pending values block the node and everything downstream of it
        for address, run in runs.items():
            if run.node.pending and run.status == NodeStatus.PENDING:
                error = PendingValueError(address, run.node.pending)
                logger.warning("%s", error)
                settle(address, NodeStatus.BLOCKED, error)
                cascade(address, NodeStatus.BLOCKED, f"blocked by {address}")

        in_flight: Dict[Future, Step] = {}
        workers = max(1, min(self.config.max_workers, len(runs)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lakeform-apply") as pool:
            while True:
                released = not halted and not cancel_event.is_set()
                while released:
                    # A NoOp settles inline and may release more nodes
                    released = False
                    for step in ready():
                        address, phase = step
                        run = runs[address]
                        started.add(step)
                        if run.node.action == Action.NOOP:
                            settle(address, NodeStatus.APPLIED)
                            complete(step)
                            released = True
                            continue
                        if run.started_at is None:
                            run.started_at = datetime.utcnow()
                            run.started_clock = self._clock()
                        run.status = NodeStatus.IN_PROGRESS
                        in_flight[pool.submit(self._apply_step, run, phase)] = step

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    step = in_flight.pop(future)
                    address, phase = step
                    run = runs[address]
                    run.duration = self._clock() - run.started_clock
                    error = future.exception()
                    if error is None:
                        complete(step)
                        if phase == APPLY:
                            settle(address, NodeStatus.APPLIED)
                            logger.info("%s %s complete", address, run.node.action.value)
                        else:
                            logger.info("%s old resource deleted", address)
                    else:
                        settle(address, NodeStatus.FAILED, error)
                        cascade(address, NodeStatus.SKIPPED, f"upstream {address} failed")
                        logger.error("%s %s failed: %s", address, run.node.action.value, error)
                        if self.config.failure_policy == FailurePolicy.FAIL_FAST:
                            halted = True

        cancelled = cancel_event.is_set()
        if cancelled:
            reason = "run cancelled"
        elif halted:
            reason = "run halted after failure"
        else:
            reason = "dependency order could not be satisfied"
        for address, run in runs.items():
            if run.status in _OPEN:
                settle(address, NodeStatus.SKIPPED, LakeformError(reason, address))

        result = ApplyResult(
            run_id=run_id,
            destroy=plan.destroy,
            results=[runs[n.address].result() for n in plan.nodes],
            halted=halted,
            cancelled=cancelled,
            started_at=started_at,
            finished_at=datetime.utcnow(),
        )
        logger.info("Run %s finished: %s", run_id, result.counts())
        return result

    # --- One step ---

    def _apply_step(self, run: _NodeRun, phase: str) -> None:
        node = run.node
        adapter = self.providers.for_kind(node.kind)

        if phase == DESTROY or node.action == Action.DELETE:
            self._delete(run, adapter)
            self.state_store.remove(node.address)
            return

        desired = self._resolve(node)

        if node.action == Action.UPDATE and not node.changes and node.prior is not None:
            # Only the declaration hash moved; nothing to send to the provider
            realized = Realized(
                provider_id=node.prior.provider_id or node.address,
                attributes=node.prior.attributes,
            )
        elif node.action == Action.UPDATE and node.prior is not None:
            outcome = self._call(
                run,
                lambda: adapter.update(
                    node.kind, node.address, node.prior.provider_id,
                    desired, node.prior.attributes,
                ),
            )
            realized = self._settle(run, adapter, outcome)
        else:
            outcome = self._call(run, lambda: adapter.create(node.kind, node.address, desired))
            realized = self._settle(run, adapter, outcome)

        if realized is None:
            raise LakeformError("provider returned no attributes", node.address)

        for name in node.sensitive_attributes:
            if isinstance(realized.attributes.get(name), str):
                register_secret(realized.attributes[name])

        entry = StateEntry(
            address=node.address,
            kind=node.kind,
            name=node.name,
            provider_id=realized.provider_id,
            attributes=realized.attributes,
            content_hash=node.content_hash,
            dependencies=node.dependencies,
            sensitive_attributes=node.sensitive_attributes,
            updated_at=datetime.utcnow(),
        )
        # The destroy step of a replacement already dropped the prior entry
        replaced = node.action == Action.REPLACE
        expected = node.prior.content_hash if node.prior is not None and not replaced else None
        self.state_store.put(entry, expected_hash=expected)

    def _delete(self, run: _NodeRun, adapter: ProviderAdapter) -> None:
        node = run.node
        prior = node.prior
        provider_id = prior.provider_id if prior and prior.provider_id else node.address
        outcome = self._call(run, lambda: adapter.delete(node.kind, node.address, provider_id))
        if isinstance(outcome, InProgress):
            self._await(run, adapter, outcome)

    def _resolve(self, node: PlanNode) -> Dict[str, Any]:
        """Resolve references against state; every upstream is applied by now."""

        def lookup(expression: str) -> Any:
            ref = parse_reference(expression)
            entry = self.state_store.get(ref.target)
            if entry is None or ref.attribute not in entry.attributes:
                return UNKNOWN
            return entry.attributes[ref.attribute]

        desired = {}
        for name, raw in node.desired.items():
            value = substitute(raw, lookup)
            if contains_unknown(value):
                raise LakeformError(
                    f"attribute '{name}' references a value that is not available", node.address
                )
            desired[name] = value
        return desired

    def _settle(self, run: _NodeRun, adapter: ProviderAdapter, outcome) -> Optional[Realized]:
        if isinstance(outcome, InProgress):
            return self._await(run, adapter, outcome)
        return outcome

    def _call(self, run: _NodeRun, fn: Callable[[], Any]) -> Any:
        """Invoke an adapter call, retrying retryable errors with backoff."""
        attempt = 0
        while True:
            attempt += 1
            run.attempts += 1
            try:
                return fn()
            except AdapterError as e:
                if e.address is None:
                    e.address = run.node.address
                if not e.retryable or attempt > self.config.max_retries:
                    raise
                delay = min(
                    self.config.retry_base_delay_seconds * (2 ** (attempt - 1)),
                    self.config.retry_max_delay_seconds,
                )
                logger.warning(
                    "%s: retryable error (attempt %d/%d), retrying in %.2fs: %s",
                    run.node.address, attempt, self.config.max_retries + 1, delay, e.message,
                )
                self._sleep(delay)

    def _await(self, run: _NodeRun, adapter: ProviderAdapter, operation: InProgress) -> Optional[Realized]:
        """Poll an in-progress operation until it settles or times out."""
        deadline = self._clock() + self.config.operation_timeout_seconds
        interval = self.config.poll_interval_seconds
        current = operation
        while True:
            if self._clock() >= deadline:
                raise ApplyTimeoutError(
                    f"operation {current.operation_id} did not finish within "
                    f"{self.config.operation_timeout_seconds:g}s",
                    run.node.address,
                )
            self._sleep(interval)
            outcome = self._call(run, lambda: adapter.poll(current.operation_id))
            if not isinstance(outcome, InProgress):
                return outcome
            current = outcome
            interval = min(interval * 2, self.config.poll_max_interval_seconds)


def _replaces(node: PlanNode) -> bool:
    return node.action == Action.REPLACE and node.prior is not None


def _removal(node: PlanNode) -> Step:
    """The step that takes ``node``'s recorded resource away."""
    return (node.address, DESTROY if _replaces(node) else APPLY)


def step_graph(nodes: List[PlanNode]) -> Dict[Step, Set[Step]]:
    """
    Split plan nodes into steps, mapped to the steps each one waits for.

    Apply steps follow the declared dependencies. Deletes wait for the
    removal of whatever still points at them. A destroy step waits for
    every recorded dependent to be removed or to drop its reference, so
    the provider is never asked to delete a resource that is still in use.
    """
    by_address = {n.address: n for n in nodes}
    waits: Dict[Step, Set[Step]] = {}
    for node in nodes:
        upstream = [by_address[d] for d in node.depends_on if d in by_address]
        if node.action == Action.DELETE:
            waits[(node.address, APPLY)] = {_removal(d) for d in upstream}
        else:
            waits[(node.address, APPLY)] = {(d.address, APPLY) for d in upstream}
        if _replaces(node):
            waits[(node.address, DESTROY)] = set()
            waits[(node.address, APPLY)].add((node.address, DESTROY))

    for node in nodes:
        if node.prior is None:
            continue
        for parent in node.prior.dependencies:
            target = by_address.get(parent)
            if target is None or not _replaces(target) or parent == node.address:
                continue
            if _replaces(node) or node.action == Action.DELETE:
                waits[(parent, DESTROY)].add(_removal(node))
            elif parent not in node.depends_on:
                waits[(parent, DESTROY)].add((node.address, APPLY))
    return waits
