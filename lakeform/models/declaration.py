"""Declarations — the desired state read from stack documents."""

import hashlib
import json
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict


class Reference(BaseModel):
    """A pointer from one attribute to another resource's attribute."""

    model_config = ConfigDict(frozen=True)

    kind: str                               # e.g., "aws_s3_bucket"
    name: str                               # e.g., "bronze"
    attribute: str                          # e.g., "arn"

    @property
    def target(self) -> str:
        """Address of the referenced resource."""
        return f"{self.kind}.{self.name}"

    def __str__(self) -> str:
        return f"{self.kind}.{self.name}.{self.attribute}"


class VariableDeclaration(BaseModel):
    """An input variable with an optional default."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "string"                    # string | number | bool | list | map
    description: str = ""
    default: Any = None
    has_default: bool = False
    sensitive: bool = False


class OutputDeclaration(BaseModel):
    """A named value exposed after apply, usually a computed attribute."""

    model_config = ConfigDict(frozen=True)

    name: str
    value: Any
    description: str = ""
    sensitive: bool = False


class ResourceDeclaration(BaseModel):
    """
    One declared resource. Attribute values may embed references as
    ``${kind.name.attribute}``; variables are already substituted.
    """

    model_config = ConfigDict(frozen=True)

    kind: str
    name: str
    attributes: Dict[str, Any] = {}
    depends_on: List[str] = []              # Explicit dependency addresses
    index: int = 0                          # Position in declaration order
    source: Optional[str] = None            # File the block came from

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"

    def content_hash(self) -> str:
        """Stable hash of everything that defines this declaration."""
        payload = {
            "kind": self.kind,
            "attributes": self.attributes,
            "depends_on": sorted(self.depends_on),
        }
        raw = json.dumps(payload, sort_keys=True, default=str).encode()
        return hashlib.sha256(raw).hexdigest()


class DeclarationSet(BaseModel):
    """Everything loaded from a stack: resources, outputs and variables."""

    resources: List[ResourceDeclaration] = []
    outputs: Dict[str, OutputDeclaration] = {}
    variables: Dict[str, VariableDeclaration] = {}
    values: Dict[str, Any] = {}             # Resolved variable values
    pending: List[str] = []                 # Variables with no value yet
    sensitive_values: List[str] = []        # Literal values that must be redacted

    def get(self, address: str) -> Optional[ResourceDeclaration]:
        for resource in self.resources:
            if resource.address == address:
                return resource
        return None

    @property
    def addresses(self) -> List[str]:
        return [r.address for r in self.resources]

    def sensitive_variable_names(self) -> Set[str]:
        return {v.name for v in self.variables.values() if v.sensitive}
