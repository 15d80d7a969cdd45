"""Error taxonomy shared by every Strataform component.

Parse, reference, cycle and validation errors abort planning before any
mutation. Provider errors halt only the affected branch of an apply.
State conflicts surface concurrent writers racing on the same record.
"""

from __future__ import annotations


class StrataformError(Exception):
    """Base class for all Strataform errors.

    Parameters
    ----------
    message:
        Human-readable cause.
    address:
        Identity of the resource the error concerns, or ``None`` for
        document-level problems.
    """

    def __init__(self, message: str, *, address: str | None = None) -> None:
        self.message = message
        self.address = address
        super().__init__(f"{address}: {message}" if address else message)


class ParseError(StrataformError):
    """Raised when a configuration document is malformed."""


class VariableError(ParseError):
    """Raised when a variable is undeclared, missing or of the wrong type."""


class ResourceReferenceError(StrataformError):
    """Raised when an expression refers to a node that does not exist."""

    def __init__(self, expression: str, *, address: str | None = None) -> None:
        self.expression = expression
        super().__init__(
            f"reference to undeclared object in expression {expression!r}",
            address=address,
        )


class CycleError(StrataformError):
    """Raised when the dependency graph contains an unbroken cycle."""

    def __init__(self, nodes: list[str]) -> None:
        self.nodes = list(nodes)
        super().__init__(f"dependency cycle between: {', '.join(self.nodes)}")


class ValidationError(StrataformError):
    """Raised when resource arguments are rejected before any API call."""


class ProviderError(StrataformError):
    """Raised when a provider API call fails."""


class ProviderTimeoutError(ProviderError):
    """Raised when a provider call exceeds the caller-supplied timeout."""


class ResourceNotFoundError(ProviderError):
    """Raised when a provider is asked to act on an object that is gone."""


class StateConflictError(StrataformError):
    """Raised when a state record changed between read and write, or the
    state is locked by another run."""
