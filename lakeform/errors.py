"""
Lakeform error taxonomy.

The engine only raises these; the CLI and API layers decide how to render them.
Every error carries the resource address it concerns (when there is one) so
callers can show ``address: cause`` without digging through the chain.
"""

from typing import Iterable, List, Optional


class LakeformError(Exception):
    """Base error for the reconciliation engine."""

    def __init__(self, message: str, address: Optional[str] = None):
        self.address = address
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        if self.address:
            return f"{self.address}: {self.message}"
        return self.message

    def cause_chain(self) -> List[str]:
        """Human-readable chain: this error followed by every __cause__."""
        chain = [str(self)]
        current = self.__cause__
        while current is not None:
            chain.append(str(current))
            current = current.__cause__
        return chain


class ParseError(LakeformError):
    """Malformed declaration document."""

    def __init__(self, message: str, address: Optional[str] = None, source: Optional[str] = None):
        self.source = source
        if source:
            message = f"{message} (in {source})"
        super().__init__(message, address)


class SchemaViolationError(LakeformError):
    """Wrong attribute type, unknown attribute, or missing required attribute."""
    pass


class UnresolvedReferenceError(LakeformError):
    """A reference points at a resource that is not declared."""

    def __init__(self, address: str, target: str):
        self.target = target
        super().__init__(f"reference to undeclared resource '{target}'", address)


class CycleError(LakeformError):
    """The declaration graph contains a dependency cycle."""

    def __init__(self, participants: Iterable[str]):
        self.participants = sorted(participants)
        super().__init__(
            "dependency cycle between: " + ", ".join(self.participants)
        )


class StateConflictError(LakeformError):
    """Two different resources tried to claim the same state identifier."""
    pass


class PendingValueError(LakeformError):
    """A value needed for apply has not been supplied yet."""

    def __init__(self, address: str, variables: Iterable[str]):
        self.variables = sorted(variables)
        super().__init__(
            "waiting on pending value(s): " + ", ".join(
                f"var.{v}" for v in self.variables
            ),
            address,
        )


class AdapterError(LakeformError):
    """A provider-side failure. ``retryable`` marks transient errors."""

    def __init__(self, message: str, address: Optional[str] = None, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message, address)


class ApplyTimeoutError(LakeformError, TimeoutError):
    """Asynchronous provisioning did not finish within the configured bound."""
    pass
