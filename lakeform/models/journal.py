"""Run records — the audit chain of every apply and destroy."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel

from lakeform.models.execution import NodeResult


class RunRecord(BaseModel):
    """
    One entry per apply/destroy run. Answers: what was planned, what was
    applied, what failed and why.
    """

    id: str
    run_id: str
    operation: str                          # "apply" | "destroy"
    stack: Optional[str] = None

    # WHAT WAS PLANNED
    plan_summary: Dict[str, int] = {}

    # WHAT HAPPENED
    results: List[NodeResult] = []
    success: bool = False
    halted: bool = False
    cancelled: bool = False
    started_at: datetime
    finished_at: datetime

    # INTEGRITY
    signature: str = ""
    prior_record_hash: Optional[str] = None
