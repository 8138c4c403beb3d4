"""
Resource Schema Registry — the known resource kinds and their attributes.

Each kind lists its attributes with a type and flags:
- required: must be declared
- computed: assigned by the provider, never declared, never diffed
- force_new: changing it cannot be done in place (plan becomes a replace)
- sensitive: never shown in plans, outputs or logs unless asked for
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from lakeform.errors import SchemaViolationError
from lakeform.loader.interpolation import EXPRESSION, references
from lakeform.models.declaration import ResourceDeclaration


class AttributeType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    LIST = "list"
    MAP = "map"
    ANY = "any"


_PY_TYPES = {
    AttributeType.STRING: (str,),
    AttributeType.NUMBER: (int, float),
    AttributeType.BOOL: (bool,),
    AttributeType.LIST: (list,),
    AttributeType.MAP: (dict,),
}


class AttributeSpec(BaseModel):
    """Schema of a single attribute."""

    type: AttributeType = AttributeType.STRING
    required: bool = False
    computed: bool = False
    force_new: bool = False
    sensitive: bool = False
    default: Any = None
    choices: Optional[List[Any]] = None
    description: str = ""


class ResourceKindSpec(BaseModel):
    """Schema of a resource kind."""

    kind: str
    description: str = ""
    attributes: Dict[str, AttributeSpec] = {}

    @property
    def provider(self) -> str:
        """Provider prefix, e.g. 'aws' for 'aws_s3_bucket'."""
        return self.kind.split("_", 1)[0]

    def computed_attributes(self) -> List[str]:
        return [n for n, a in self.attributes.items() if a.computed]

    def sensitive_attributes(self) -> List[str]:
        return [n for n, a in self.attributes.items() if a.sensitive]

    def force_new_attributes(self) -> List[str]:
        return [n for n, a in self.attributes.items() if a.force_new]


class SchemaRegistry:
    """Registry of resource kinds. Validates declarations against them."""

    def __init__(self):
        self._kinds: Dict[str, ResourceKindSpec] = {}

    def register(self, spec: ResourceKindSpec) -> None:
        """Register (or replace) a resource kind."""
        self._kinds[spec.kind] = spec

    def kinds(self) -> List[str]:
        return sorted(self._kinds)

    def has(self, kind: str) -> bool:
        return kind in self._kinds

    def get(self, kind: str) -> ResourceKindSpec:
        spec = self._kinds.get(kind)
        if spec is None:
            raise SchemaViolationError(f"unknown resource kind '{kind}'")
        return spec

    def is_computed(self, kind: str, attribute: str) -> bool:
        spec = self.get(kind).attributes.get(attribute)
        return bool(spec and spec.computed)

    def is_sensitive(self, kind: str, attribute: str) -> bool:
        spec = self.get(kind).attributes.get(attribute)
        return bool(spec and spec.sensitive)

    def forces_replacement(self, kind: str, attribute: str) -> bool:
        spec = self.get(kind).attributes.get(attribute)
        return bool(spec and spec.force_new)

    def with_defaults(self, kind: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Declared attributes plus schema defaults for anything left out."""
        result = dict(attributes)
        for name, attr in self.get(kind).attributes.items():
            if name not in result and not attr.computed and attr.default is not None:
                result[name] = attr.default
        return result

    def validate(self, declaration: ResourceDeclaration) -> None:
        """Raise SchemaViolationError if the declaration does not fit its kind."""
        address = declaration.address
        if declaration.kind not in self._kinds:
            raise SchemaViolationError(
                f"unknown resource kind '{declaration.kind}'", address
            )
        spec = self._kinds[declaration.kind]

        for name, value in declaration.attributes.items():
            attr = spec.attributes.get(name)
            if attr is None:
                raise SchemaViolationError(f"unknown attribute '{name}'", address)
            if attr.computed:
                raise SchemaViolationError(
                    f"attribute '{name}' is computed by the provider and cannot be set",
                    address,
                )
            self._check_type(address, name, attr, value)

        for name, attr in spec.attributes.items():
            if attr.required and name not in declaration.attributes:
                raise SchemaViolationError(f"missing required attribute '{name}'", address)

        # Undeclared targets are reported by the graph builder
        for ref in references(declaration.attributes):
            target = self._kinds.get(ref.kind)
            if target is not None and ref.attribute not in target.attributes:
                raise SchemaViolationError(
                    f"reference to '{ref.target}' names unknown attribute '{ref.attribute}'",
                    address,
                )

    def validate_all(self, declarations: List[ResourceDeclaration]) -> None:
        for declaration in declarations:
            self.validate(declaration)

    def _check_type(self, address: str, name: str, attr: AttributeSpec, value: Any) -> None:
        if value is None or attr.type == AttributeType.ANY:
            return
        # A value that is a single expression is typed only after resolution
        if isinstance(value, str) and EXPRESSION.fullmatch(value):
            return
        ok = isinstance(value, _PY_TYPES[attr.type])
        if attr.type == AttributeType.NUMBER and isinstance(value, bool):
            ok = False
        if not ok:
            raise SchemaViolationError(
                f"attribute '{name}' must be {attr.type.value}, got {type(value).__name__}",
                address,
            )
        if attr.choices is not None and value not in attr.choices:
            raise SchemaViolationError(
                f"attribute '{name}' must be one of {attr.choices}, got {value!r}",
                address,
            )
