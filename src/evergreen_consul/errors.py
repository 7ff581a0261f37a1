"""Exception taxonomy for the Consul directive.

Parse-time errors (``ExpressionError``, ``InvalidOperationError``,
``ValidationError``) are raised before any state manager exists and are
reported straight to the host. ``ConnectionFailure`` is raised only for the
initial fetch, and only when the expression did not ask to ignore startup
failures.
"""

from typing import Any


class ConsulDirectiveError(Exception):
    """Base class for all errors raised by the Consul directive."""


class ExpressionError(ConsulDirectiveError):
    """Raised when an expression cannot be split into operation and query.

    Attributes:
        expression: The offending expression
    """

    def __init__(self, expression: str, reason: str | None = None):
        self.expression = expression
        self.reason = reason
        message = f"The supplied expression is invalid: {expression!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class InvalidOperationError(ConsulDirectiveError):
    """Raised when the operation is not a known Consul operation or alias.

    Attributes:
        operation: The unresolved operation name
    """

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"The supplied operation is invalid: {operation!r}")


class ValidationError(ConsulDirectiveError, ValueError):
    """Raised when an option bag does not satisfy its operation schema.

    The underlying pydantic error is kept as ``__cause__``.

    Attributes:
        operation: Canonical name of the operation being validated
        errors: One human-readable line per violation
    """

    def __init__(self, operation: str, errors: list[str]):
        self.operation = operation
        self.errors = errors
        details = "; ".join(errors)
        super().__init__(f"Invalid options for '{operation}': {details}")


class ConnectionFailure(ConsulDirectiveError):
    """Raised when the initial fetch of a value fails.

    Attributes:
        operation: Canonical name of the operation that failed
        cause: The exception reported by the backend
    """

    def __init__(self, operation: str, cause: Any):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Failed to retrieve '{operation}' from Consul: {cause}")


class WatchError(ConsulDirectiveError):
    """Raised when a watch operation is not valid in the current state."""
