"""Lakeform data models."""

from lakeform.models.declaration import (
    DeclarationSet,
    OutputDeclaration,
    Reference,
    ResourceDeclaration,
    VariableDeclaration,
)
from lakeform.models.engine import EngineConfig, FailurePolicy
from lakeform.models.execution import ApplyResult, NodeResult, NodeStatus
from lakeform.models.journal import RunRecord
from lakeform.models.plan import Action, AttributeChange, Plan, PlanNode
from lakeform.models.state import StateEntry

__all__ = [
    "Action",
    "ApplyResult",
    "AttributeChange",
    "DeclarationSet",
    "EngineConfig",
    "FailurePolicy",
    "NodeResult",
    "NodeStatus",
    "OutputDeclaration",
    "Plan",
    "PlanNode",
    "Reference",
    "ResourceDeclaration",
    "RunRecord",
    "StateEntry",
    "VariableDeclaration",
]
