"""Exception taxonomy for the dispatch pipeline."""

from typing import Any


class HeraldError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(HeraldError):
    """Raised when an event payload or template payload fails its schema.

    Attributes:
        errors: Structured error details (pydantic error dicts or messages).
    """

    def __init__(self, message: str, errors: list[Any] | None = None) -> None:
        self.errors = errors or []
        super().__init__(message)


class UnknownEventTypeError(ValidationError):
    """Raised when an event type has no registered schema or handler."""


class ConfigurationError(HeraldError):
    """Raised when a component is used without the configuration it needs."""


class PermanentDeliveryError(HeraldError):
    """Raised for delivery failures that can never succeed on retry.

    Attributes:
        code: Short machine-readable reason, e.g. ``invalid_address``.
    """

    def __init__(self, message: str, code: str = "permanent") -> None:
        self.code = code
        super().__init__(message)


class StoreError(HeraldError):
    """Base class for document store failures."""


class StoreUnavailableError(StoreError):
    """Raised when the document store cannot be reached."""


class TransactionConflictError(StoreError):
    """Raised when a transaction keeps conflicting past its retry limit.

    Attributes:
        attempts: Number of times the transaction function was run.
    """

    def __init__(self, message: str, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message)


class NotFoundError(HeraldError):
    """Raised when an operator action targets a document that does not exist."""


class RetryRefusedError(HeraldError):
    """Raised when a manual retry targets a record that already completed."""
