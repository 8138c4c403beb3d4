"""Apply results — outcome of walking a plan through the providers."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel

from lakeform.models.plan import Action


class NodeStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"     # Upstream failed, or the run halted / was cancelled
    BLOCKED = "blocked"     # Waiting on a pending value


class NodeResult(BaseModel):
    """Terminal status of one plan node."""

    address: str
    action: Action
    status: NodeStatus
    attempts: int = 0
    error: Optional[str] = None
    error_chain: List[str] = []
    retryable: Optional[bool] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0


class ApplyResult(BaseModel):
    """Outcome of one apply or destroy run."""

    run_id: str
    destroy: bool = False
    results: List[NodeResult]
    halted: bool = False                    # fail_fast stopped scheduling
    cancelled: bool = False
    started_at: datetime
    finished_at: datetime

    @property
    def success(self) -> bool:
        return all(r.status == NodeStatus.APPLIED for r in self.results)

    @property
    def failed(self) -> List[NodeResult]:
        return [r for r in self.results if r.status == NodeStatus.FAILED]

    def get(self, address: str) -> Optional[NodeResult]:
        for result in self.results:
            if result.address == address:
                return result
        return None

    def counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in NodeStatus}
        for result in self.results:
            counts[result.status.value] += 1
        return counts
