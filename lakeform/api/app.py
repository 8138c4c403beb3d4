"""
Lakeform API — FastAPI endpoints over one Reconciler.

Exposes:
- Plans and apply / destroy runs
- Recorded state
- Outputs (sensitive values masked unless requested)
- The run journal and its integrity check
- Drift refresh
"""

from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from lakeform.errors import (
    CycleError,
    LakeformError,
    ParseError,
    PendingValueError,
    SchemaViolationError,
    UnresolvedReferenceError,
)
from lakeform.plan.render import plan_to_dict
from lakeform.reconciler.loop import Reconciler
from lakeform.utils.logger import REDACTED


# --- Request/Response Models ---

class RefreshRequest(BaseModel):
    update_state: bool = False


def _http_error(error: LakeformError) -> HTTPException:
    if isinstance(error, (ParseError, CycleError, SchemaViolationError, UnresolvedReferenceError)):
        return HTTPException(status_code=422, detail=str(error))
    if isinstance(error, PendingValueError):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


def _masked_state(entry: dict, sensitive: list) -> dict:
    for name in sensitive:
        if name in entry["attributes"]:
            entry["attributes"][name] = REDACTED
    return entry


# --- Application Factory ---

def create_app(reconciler: Reconciler) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Lakeform API",
        description="Declarative reconciliation for data-lake infrastructure",
        version="0.1.0",
    )

    # Store components on app state for access in endpoints
    app.state.reconciler = reconciler
    app.state.state_store = reconciler.state_store
    app.state.journal = reconciler.journal

    @app.get("/health")
    def health():
        return {
            "status": "healthy",
            "stack": reconciler.stack,
            "resources": reconciler.state_store.count(),
            "drift_watcher": reconciler.status,
        }

    # === PLAN / APPLY ===

    @app.get("/plan", response_model=dict)
    def get_plan(show_sensitive: bool = False):
        """Compute a plan without applying it."""
        try:
            plan = reconciler.plan()
        except LakeformError as e:
            raise _http_error(e)
        return plan_to_dict(plan, show_sensitive=show_sensitive)

    @app.post("/apply", response_model=dict)
    def apply():
        """Plan and apply in one step."""
        try:
            result = reconciler.apply()
        except LakeformError as e:
            raise _http_error(e)
        data = result.model_dump(mode="json")
        data["success"] = result.success
        data["counts"] = result.counts()
        return data

    @app.post("/destroy", response_model=dict)
    def destroy():
        """Delete every recorded resource."""
        try:
            result = reconciler.destroy()
        except LakeformError as e:
            raise _http_error(e)
        data = result.model_dump(mode="json")
        data["success"] = result.success
        data["counts"] = result.counts()
        return data

    @app.post("/refresh", response_model=dict)
    def refresh(req: Optional[RefreshRequest] = None):
        """Read every recorded resource and report drift."""
        update_state = req.update_state if req else False
        try:
            events = reconciler.refresh(update_state=update_state)
        except LakeformError as e:
            raise _http_error(e)
        return {"drift": [e.to_dict() for e in events], "count": len(events)}

    # === STATE ===

    @app.get("/state", response_model=dict)
    def list_state():
        snapshot = reconciler.state_store.snapshot()
        return {
            "resources": [
                {
                    "address": entry.address,
                    "kind": entry.kind,
                    "provider_id": entry.provider_id,
                    "updated_at": entry.updated_at.isoformat(),
                }
                for _, entry in sorted(snapshot.items())
            ],
            "count": len(snapshot),
        }

    @app.get("/state/{address}", response_model=dict)
    def get_state(address: str, show_sensitive: bool = False):
        entry = reconciler.state_store.get(address)
        if entry is None:
            raise HTTPException(status_code=404, detail=f"{address} is not in state")
        data = entry.model_dump(mode="json")
        if show_sensitive:
            return data
        sensitive = set(entry.sensitive_attributes)
        if reconciler.registry.has(entry.kind):
            sensitive.update(reconciler.registry.get(entry.kind).sensitive_attributes())
        return _masked_state(data, sorted(sensitive))

    # === OUTPUTS ===

    @app.get("/outputs", response_model=dict)
    def list_outputs():
        return {"outputs": reconciler.outputs()}

    @app.get("/outputs/{name}", response_model=dict)
    def get_output(name: str, show_sensitive: bool = False):
        if name not in reconciler.declarations.outputs:
            raise HTTPException(status_code=404, detail=f"no output named '{name}'")
        try:
            value = reconciler.output(name, show_sensitive=show_sensitive)
        except LakeformError as e:
            raise _http_error(e)
        return {
            "name": name,
            "value": value,
            "sensitive": reconciler.is_output_sensitive(name),
        }

    # === JOURNAL ===

    @app.get("/runs", response_model=dict)
    def list_runs(limit: int = 50, failures_only: bool = False):
        journal = reconciler.journal
        if journal is None:
            return {"runs": [], "count": 0}
        records = journal.query_failures() if failures_only else journal.query_recent(limit)
        return {
            "runs": [r.model_dump(mode="json") for r in records],
            "count": journal.count(),
        }

    @app.get("/runs/verify", response_model=dict)
    def verify_runs():
        journal = reconciler.journal
        if journal is None:
            return {"chain_intact": True, "record_count": 0}
        return {
            "chain_intact": journal.verify_chain_integrity(),
            "record_count": journal.count(),
        }

    @app.get("/runs/{record_id}", response_model=dict)
    def get_run(record_id: str):
        journal = reconciler.journal
        record = journal.get_by_id(record_id) if journal else None
        if record is None:
            raise HTTPException(status_code=404, detail="Run record not found")
        return record.model_dump(mode="json")

    return app
