"""
Provider Adapter contract — the seam to external services.

An adapter serves every resource kind with its prefix (``aws_``,
``snowflake_``). Calls either finish (Realized / None) or report an
InProgress operation that the executor polls until it settles. Failures are
raised as AdapterError; ``retryable=True`` marks transient ones.
"""

from typing import Any, Dict, List, Optional, Protocol, Union

from pydantic import BaseModel

from lakeform.errors import LakeformError


class Realized(BaseModel):
    """Real-world attributes of a resource after an operation."""

    provider_id: str
    attributes: Dict[str, Any] = {}


class InProgress(BaseModel):
    """An asynchronous operation the provider has not finished."""

    operation_id: str
    provider_id: Optional[str] = None


class NotFound(BaseModel):
    """The provider has no such resource."""

    provider_id: Optional[str] = None


CreateOutcome = Union[Realized, InProgress]
DeleteOutcome = Optional[InProgress]
ReadOutcome = Union[Realized, NotFound]
PollOutcome = Union[Realized, InProgress, None]


class ProviderAdapter(Protocol):
    """What the executor needs from an external service."""

    name: str

    def create(self, kind: str, address: str, desired: Dict[str, Any]) -> CreateOutcome: ...

    def update(
        self,
        kind: str,
        address: str,
        provider_id: str,
        desired: Dict[str, Any],
        prior: Dict[str, Any],
    ) -> CreateOutcome: ...

    def delete(self, kind: str, address: str, provider_id: str) -> DeleteOutcome: ...

    def read(self, kind: str, address: str, provider_id: str) -> ReadOutcome: ...

    def poll(self, operation_id: str) -> PollOutcome: ...


class ProviderRegistry:
    """Maps resource kinds to adapters by kind prefix."""

    def __init__(self):
        self._adapters: Dict[str, ProviderAdapter] = {}

    def register(self, prefix: str, adapter: ProviderAdapter) -> None:
        """Serve every kind starting with ``<prefix>_`` with ``adapter``."""
        self._adapters[prefix] = adapter

    def prefixes(self) -> List[str]:
        return sorted(self._adapters)

    def for_kind(self, kind: str) -> ProviderAdapter:
        for prefix in sorted(self._adapters, key=len, reverse=True):
            if kind == prefix or kind.startswith(prefix + "_"):
                return self._adapters[prefix]
        raise LakeformError(f"no provider registered for resource kind '{kind}'")
