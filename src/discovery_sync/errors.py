"""Error taxonomy for the sync engine.

Every failure that crosses a component boundary is one of the variants below.
Retry decisions are made with `is_retryable` instead of inspecting codes or
messages at call sites.
"""

from typing import Any


class SyncError(Exception):
    """Base class for all sync engine errors."""

    code = "SYNC_SYS_003"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        entity: str = "category",
        cause: BaseException | None = None,
    ) -> None:
        """Initialize a sync error.

        Args:
            message: Human-readable description.
            operation: Operation being performed (CREATE, UPDATE, DELETE, BULK, ...).
            entity: Entity type or store target the error relates to.
            cause: Underlying exception, if any.
        """
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.entity = entity
        self.cause = cause

    @property
    def is_retryable(self) -> bool:
        return self.retryable

    def __str__(self) -> str:
        text = f"[{self.code}] {self.message}"
        if self.cause is not None:
            text = f"{text}: {self.cause}"
        return f"{text} (operation: {self.operation or '-'}, entity: {self.entity})"

    def to_dict(self) -> dict[str, Any]:
        """Render the error as a structured log payload."""
        return {
            "error_code": self.code,
            "error_type": type(self).__name__,
            "error": self.message,
            "cause": repr(self.cause) if self.cause is not None else None,
            "operation": self.operation,
            "entity": self.entity,
            "retryable": self.retryable,
        }


# ==================== Decode ====================


class DecodeError(SyncError):
    """The change envelope could not be turned into an operation."""

    code = "SYNC_KAFKA_003"


class InvalidPayloadError(DecodeError):
    """Envelope or payload does not match the expected schema."""

    code = "SYNC_DATA_001"


class UnknownOperationError(DecodeError):
    """Operation code outside of c/u/d."""

    code = "SYNC_DATA_001"


class DataTransformError(DecodeError):
    """The before/after snapshot needed for the operation is missing or malformed."""

    code = "SYNC_DATA_003"


# ==================== Validation ====================


class ValidationError(SyncError):
    """A normalized operation or document was rejected before or by the store."""

    code = "SYNC_VAL_001"


# ==================== Store ====================


class StoreUnavailableError(SyncError):
    """The document store could not be reached or answered with a transient failure."""

    code = "SYNC_ES_001"
    retryable = True


class StoreTimeoutError(StoreUnavailableError):
    """A store request exceeded its deadline."""

    code = "SYNC_ES_007"


class ConflictError(SyncError):
    """Document version conflict."""

    code = "SYNC_ES_006"


class BulkFlushError(SyncError):
    """A bulk submission failed as a unit; the buffered batch is retained."""

    code = "SYNC_ES_002"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        batch_size: int = 0,
        failed_items: list[dict[str, Any]] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, operation="BULK", entity="elasticsearch", cause=cause)
        self.batch_size = batch_size
        self.failed_items = failed_items or []


# ==================== Retry ====================


class RetryExhaustedError(SyncError):
    """All retry attempts failed."""

    code = "SYNC_RETRY_001"

    def __init__(
        self,
        message: str,
        *,
        last_error: BaseException | None,
        attempts: int,
        operation: str = "",
        entity: str = "category",
    ) -> None:
        super().__init__(message, operation=operation, entity=entity, cause=last_error)
        self.last_error = last_error
        self.attempts = attempts


class OperationCancelledError(SyncError):
    """The operation deadline passed before it reached a terminal outcome."""

    code = "SYNC_RETRY_002"


# ==================== Startup ====================


class ProvisioningError(SyncError):
    """Template, lifecycle policy or alias setup failed at startup."""

    code = "SYNC_ES_003"

    def __init__(self, message: str, *, step: str, cause: BaseException | None = None) -> None:
        super().__init__(message, operation=step, entity="elasticsearch", cause=cause)
        self.step = step


def is_retryable(exc: BaseException) -> bool:
    """Return True if the error may succeed when the same operation is retried."""
    return isinstance(exc, SyncError) and exc.is_retryable
