"""Decode change-capture envelopes into normalized operations."""

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from discovery_sync.errors import DataTransformError, InvalidPayloadError, UnknownOperationError
from discovery_sync.indexing.models import Category, CategoryOperation, OperationType

logger = logging.getLogger(__name__)


class SourceInfo(BaseModel):
    """Source metadata attached to each change event."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    ts_ms: int = Field(default=0, description="Source commit time, epoch milliseconds")
    connector: str | None = None
    db: str | None = None
    schema_name: str | None = Field(default=None, alias="schema")
    table: str | None = None
    lsn: int | str | None = None


class ChangePayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    # Snapshots stay untyped here; they are validated once the op selects one
    before: Any = None
    after: Any = None
    source: SourceInfo = Field(default_factory=SourceInfo)
    op: str


class ChangeEnvelope(BaseModel):
    """Wire format of a change-capture message value."""

    model_config = ConfigDict(extra="allow")

    payload: ChangePayload


class EventDecoder:
    """Turns raw change-capture message values into CategoryOperations.

    Decode failures are never retryable: the same bytes will always fail
    the same way.
    """

    def __init__(self, entity: str = "category") -> None:
        self.entity = entity

    def decode(self, raw: bytes | str | None) -> CategoryOperation:
        """Decode one message value.

        Args:
            raw: Message value bytes.

        Returns:
            The normalized operation.

        Raises:
            InvalidPayloadError: Envelope does not match the schema or lacks a source timestamp.
            UnknownOperationError: Op code outside c/u/d.
            DataTransformError: The snapshot the operation needs is absent or malformed.
        """
        if not raw:
            raise InvalidPayloadError("Empty change message", entity=self.entity)

        try:
            envelope = ChangeEnvelope.model_validate_json(raw)
        except PydanticValidationError as e:
            raise InvalidPayloadError(
                "Invalid change envelope", operation="DECODE", entity=self.entity, cause=e
            ) from e

        payload = envelope.payload
        operation = OperationType.from_code(payload.op)
        if operation is None:
            raise UnknownOperationError(
                f"Unknown operation: {payload.op!r}", operation=payload.op, entity=self.entity
            )

        if payload.source.ts_ms <= 0:
            raise InvalidPayloadError(
                "Missing source timestamp", operation=operation.value, entity=self.entity
            )

        snapshot = payload.before if operation is OperationType.DELETE else payload.after
        if snapshot is None:
            side = "before" if operation is OperationType.DELETE else "after"
            raise DataTransformError(
                f"Missing '{side}' snapshot", operation=operation.value, entity=self.entity
            )

        try:
            category = Category.model_validate(snapshot)
        except PydanticValidationError as e:
            raise DataTransformError(
                f"Failed to read {self.entity} snapshot",
                operation=operation.value,
                entity=self.entity,
                cause=e,
            ) from e

        occurred_at = datetime.fromtimestamp(payload.source.ts_ms / 1000, tz=UTC)
        logger.debug(f"Decoded {operation.value} for {self.entity} {category.id}")

        return CategoryOperation(
            operation=operation,
            payload=category,
            occurred_at=occurred_at,
            entity=self.entity,
        )
