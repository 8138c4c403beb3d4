"""Plan — the ordered set of actions a reconciliation run intends to apply."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from lakeform.models.state import StateEntry


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"     # Delete then create; a force-new attribute changed
    DELETE = "delete"
    NOOP = "noop"


class AttributeChange(BaseModel):
    """One attribute moving from its recorded value to its desired value."""

    name: str
    old: Any = None
    new: Any = None
    known: bool = True                      # False when resolved only after apply
    forces_replacement: bool = False
    sensitive: bool = False


class PlanNode(BaseModel):
    """One required action for one resource."""

    address: str
    kind: str
    name: str
    action: Action
    desired: Dict[str, Any] = {}            # Raw attributes, references unresolved
    changes: List[AttributeChange] = []
    prior: Optional[StateEntry] = None
    depends_on: List[str] = []              # Nodes that must be applied first
    dependencies: List[str] = []            # Upstream addresses to record in state
    pending: List[str] = []                 # Variables blocking this node
    sensitive_attributes: List[str] = []
    content_hash: Optional[str] = None

    def change_for(self, attribute: str) -> Optional[AttributeChange]:
        for change in self.changes:
            if change.name == attribute:
                return change
        return None


class Plan(BaseModel):
    """An ordered, reviewable set of PlanNodes."""

    nodes: List[PlanNode] = []
    destroy: bool = False

    def get(self, address: str) -> Optional[PlanNode]:
        for node in self.nodes:
            if node.address == address:
                return node
        return None

    def by_action(self, action: Action) -> List[PlanNode]:
        return [n for n in self.nodes if n.action == action]

    @property
    def has_changes(self) -> bool:
        return any(n.action != Action.NOOP for n in self.nodes)

    def summary(self) -> Dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for node in self.nodes:
            counts[node.action.value] += 1
        return counts
