"""Core types for the indexing pipeline.

Defines the indexed entity, the normalized operation produced by the
decoder, and the in-memory records that describe an operation's outcome
and retry history.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Integer timestamps above this are epoch microseconds (change-capture default)
_MICROS_THRESHOLD = 10**14


def utcnow() -> datetime:
    return datetime.now(UTC)


class OperationType(str, Enum):
    """Index operation derived from a change-capture op code.

    Attributes:
        CREATE: Row inserted (``c``); full document write.
        UPDATE: Row updated (``u``); partial merge with upsert.
        DELETE: Row deleted (``d``); remove by id, absence is fine.
    """

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

    @classmethod
    def from_code(cls, code: str) -> "OperationType | None":
        """Map a single-letter op code, returning None when it is unknown."""
        return _OP_CODES.get(code)


_OP_CODES = {
    "c": OperationType.CREATE,
    "u": OperationType.UPDATE,
    "d": OperationType.DELETE,
}


class SyncStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    RETRYING = "RETRYING"


class Category(BaseModel):
    """A category row as carried in change-capture snapshots.

    ``id`` is the document id for every write, so repeated delivery of a
    change always lands in the same document slot. Unknown columns are
    ignored.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(description="Stable identifier, used as the document id")
    name: str = Field(default="", description="Display name, required for create/update")
    description: str | None = Field(default=None, description="Optional description")
    status: int = Field(default=0, description="Status code, non-negative")
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 0
    sync_status: SyncStatus | None = None
    last_sync: datetime | None = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        # Source tables use serial ids; the index keys on their string form
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("created_at", "updated_at", "last_sync", mode="before")
    @classmethod
    def parse_timestamp(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool) and abs(v) >= _MICROS_THRESHOLD:
            return datetime.fromtimestamp(v / 1_000_000, tz=UTC)
        return v

    def to_document(self, *, partial: bool = False) -> dict[str, Any]:
        """Render the entity as an index document body.

        Args:
            partial: Keep only the fields present in the source row, for merge updates.

        Returns:
            JSON-compatible document.
        """
        return self.model_dump(mode="json", exclude_unset=partial)


class CategoryOperation(BaseModel):
    """Normalized unit of work produced by the decoder."""

    model_config = ConfigDict(frozen=True)

    operation: OperationType
    payload: Category
    occurred_at: datetime = Field(description="Source commit time of the change")
    entity: str = Field(default="category", description="Entity type")

    @property
    def document_id(self) -> str:
        return self.payload.id


class SyncRecord(BaseModel):
    """Outcome record of one operation, emitted to the log sink."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    entity_type: str
    entity_id: str
    operation: OperationType
    status: SyncStatus = SyncStatus.PENDING
    error_message: str | None = None
    retry_count: int = 0
    last_retry_at: datetime | None = None
    next_retry_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def for_operation(cls, op: CategoryOperation) -> "SyncRecord":
        return cls(entity_type=op.entity, entity_id=op.payload.id, operation=op.operation)

    def mark_retrying(self, error: BaseException | str, retry_delay: float) -> None:
        """Transition to RETRYING after a failed attempt that will be retried."""
        now = utcnow()
        self.status = SyncStatus.RETRYING
        self.error_message = str(error)
        self.retry_count += 1
        self.last_retry_at = now
        self.next_retry_at = now + timedelta(seconds=retry_delay)
        self.updated_at = now

    def mark_failed(self, error: BaseException | str, retry_delay: float = 0.0) -> None:
        """Transition to FAILED, stamping the attempt and the next retry time.

        Args:
            error: Error that caused the failure.
            retry_delay: Seconds until the next retry would be attempted.
        """
        now = utcnow()
        self.status = SyncStatus.FAILED
        self.error_message = str(error)
        self.retry_count += 1
        self.last_retry_at = now
        self.next_retry_at = now + timedelta(seconds=retry_delay)
        self.updated_at = now

    def mark_success(self) -> None:
        self.status = SyncStatus.SUCCESS
        self.error_message = None
        self.last_retry_at = None
        self.next_retry_at = None
        self.updated_at = utcnow()


@dataclass
class RetryAttempt:
    """A single attempt made by the retry engine.

    Attributes:
        number: 0-indexed attempt number.
        started_at: When the attempt began.
        duration: Seconds the attempt took.
        error: Error raised by the attempt, None on success.
        next_delay: Backoff delay computed after a failed attempt, None otherwise.
    """

    number: int
    started_at: datetime
    duration: float
    error: BaseException | None = None
    next_delay: float | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class RetryHistory:
    """Attempts made for one operation, discarded when its retry sequence ends."""

    operation_id: str
    attempts: list[RetryAttempt] = field(default_factory=list)

    def add(self, attempt: RetryAttempt) -> None:
        self.attempts.append(attempt)

    @property
    def count(self) -> int:
        return len(self.attempts)

    @property
    def last_error(self) -> BaseException | None:
        for attempt in reversed(self.attempts):
            if attempt.error is not None:
                return attempt.error
        return None

    @property
    def total_delay(self) -> float:
        return sum(a.next_delay or 0.0 for a in self.attempts)

    def summary(self) -> list[dict[str, Any]]:
        """Render attempts as log-friendly dicts."""
        return [
            {
                "attempt": a.number,
                "duration_ms": round(a.duration * 1000, 2),
                "error": str(a.error) if a.error is not None else None,
                "next_delay_s": round(a.next_delay, 3) if a.next_delay is not None else None,
            }
            for a in self.attempts
        ]


def build_document(op: CategoryOperation, synced_at: datetime) -> dict[str, Any]:
    """Document body written for a create or update, stamped as synced.

    Creates carry the full entity. Updates carry only the fields present in
    the change so the merge never blanks out stored values.
    """
    stamped = op.payload.model_copy(
        update={"sync_status": SyncStatus.SUCCESS, "last_sync": synced_at}
    )
    return stamped.to_document(partial=op.operation is OperationType.UPDATE)
