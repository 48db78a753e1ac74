"""Operation dispatcher: validate, route, write, retry."""

import asyncio
import json
import time
from dataclasses import dataclass

from discovery_sync.clients.elasticsearch import IndexWriter
from discovery_sync.errors import (
    BulkFlushError,
    InvalidPayloadError,
    OperationCancelledError,
    RetryExhaustedError,
    SyncError,
    ValidationError,
)
from discovery_sync.indexing.bulk import BufferedOperation, BulkBuffer
from discovery_sync.indexing.models import (
    CategoryOperation,
    OperationType,
    SyncRecord,
    SyncStatus,
    build_document,
    utcnow,
)
from discovery_sync.indexing.naming import IndexNamer
from discovery_sync.indexing.retry import RetryEngine
from discovery_sync.utils.logging import get_logger
from discovery_sync.utils.metrics import MetricsCollector

logger = get_logger(__name__)


def validate_operation(op: CategoryOperation) -> None:
    """Reject operations that cannot be written.

    Raises:
        InvalidPayloadError: Missing id, or missing name on create/update.
        ValidationError: Negative status.
    """
    payload = op.payload
    if not payload.id:
        raise InvalidPayloadError(
            "Document id is required", operation=op.operation.value, entity=op.entity
        )
    if op.operation is OperationType.DELETE:
        return
    if not payload.name:
        raise InvalidPayloadError(
            f"name is required for {op.entity} {payload.id}",
            operation=op.operation.value,
            entity=op.entity,
        )
    if payload.status < 0:
        raise ValidationError(
            f"status must be non-negative, got {payload.status}",
            operation=op.operation.value,
            entity=op.entity,
        )


@dataclass
class BulkOutcome:
    """Terminal outcome of one operation dispatched in bulk.

    Attributes:
        record: Sync record of the operation.
        error: Error that failed it, None on success.
    """

    record: SyncRecord
    error: SyncError | None = None

    def fail(self, error: SyncError) -> None:
        self.error = error
        if isinstance(error, RetryExhaustedError):
            self.record.mark_failed(error.last_error or error)
            self.record.retry_count = error.attempts
        else:
            self.record.mark_failed(error)

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.record.status is SyncStatus.SUCCESS


class OperationDispatcher:
    """Executes normalized operations against the index.

    Creates write the full document, updates merge with upsert, and deletes
    treat a missing document as done, so replaying any operation converges
    on the same document. The target index is resolved at processing time on
    every call. Retryable store failures go through the retry engine; every
    terminal outcome is logged as a ``sync_record`` entry.
    """

    def __init__(
        self,
        writer: IndexWriter,
        namer: IndexNamer,
        retry: RetryEngine,
        metrics: MetricsCollector | None = None,
        bulk: BulkBuffer | None = None,
        write_timeout: float | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            writer: Index writer for single-document writes.
            namer: Resolves the active index per entity.
            retry: Retry engine wrapping each write.
            metrics: Metrics collector.
            bulk: Shared bulk buffer, required for ``dispatch_bulk``.
            write_timeout: Per-write deadline in seconds (writer default when None).
        """
        self._writer = writer
        self._namer = namer
        self._retry = retry
        self._metrics = metrics
        self._bulk = bulk
        self._write_timeout = write_timeout

    async def dispatch(
        self, op: CategoryOperation, deadline: float | None = None
    ) -> SyncRecord:
        """Validate and apply one operation.

        Args:
            op: Operation to apply.
            deadline: Absolute event-loop time bounding the write and its retries.

        Returns:
            The SUCCESS sync record.

        Raises:
            InvalidPayloadError, ValidationError: Operation rejected before any write.
            RetryExhaustedError: Every attempt failed with a retryable error.
            OperationCancelledError: The deadline passed first.
            SyncError: A non-retryable store failure (conflict, rejected document).
        """
        record = SyncRecord.for_operation(op)
        try:
            validate_operation(op)
            index = self._namer.index_name(op.entity)
            await self._retry.run(
                lambda: self.execute(op, index),
                operation=op.operation.value,
                operation_id=f"{op.entity}:{op.document_id}",
                entity=op.entity,
                deadline=deadline,
                on_retry=lambda _, error, delay: record.mark_retrying(error, delay),
            )
        except RetryExhaustedError as e:
            record.mark_failed(e.last_error or e)
            record.retry_count = e.attempts
            self._log_record(record, e)
            raise
        except SyncError as e:
            record.mark_failed(e)
            self._log_record(record, e)
            raise

        record.mark_success()
        self._log_record(record)
        return record

    async def execute(self, op: CategoryOperation, index: str) -> None:
        """Make a single write attempt and record its metrics."""
        operation = op.operation.value
        document = None
        if op.operation is not OperationType.DELETE:
            document = build_document(op, utcnow())
        payload_size = len(json.dumps(document)) if document is not None else 0

        start = time.perf_counter()
        success = False
        try:
            if op.operation is OperationType.CREATE:
                await self._writer.index_document(
                    index, op.document_id, document, timeout=self._write_timeout
                )
            elif op.operation is OperationType.UPDATE:
                await self._writer.update_document(
                    index, op.document_id, document, timeout=self._write_timeout
                )
            else:
                await self._writer.delete_document(
                    index, op.document_id, timeout=self._write_timeout
                )
            success = True
        finally:
            if self._metrics is not None:
                self._metrics.record_operation(
                    operation, op.entity, success, time.perf_counter() - start, payload_size
                )

    async def dispatch_bulk(
        self, ops: list[CategoryOperation], deadline: float | None = None
    ) -> list[BulkOutcome]:
        """Apply operations through the shared bulk buffer.

        Invalid operations are rejected individually. If the buffer cannot
        be flushed within the retry budget, this call's still-buffered
        operations are pulled back out and applied one at a time, so one bad
        document cannot fail the rest of the batch.

        Args:
            ops: Operations in delivery order.
            deadline: Absolute event-loop time bounding the whole batch.

        Returns:
            One outcome per operation, in input order.

        Raises:
            OperationCancelledError: The deadline passed before every
                operation reached a terminal outcome.
        """
        if self._bulk is None:
            raise RuntimeError("dispatch_bulk requires a bulk buffer")

        outcomes = [BulkOutcome(SyncRecord.for_operation(op)) for op in ops]
        entries: list[BufferedOperation | None] = []
        for op, outcome in zip(ops, outcomes, strict=True):
            try:
                validate_operation(op)
            except SyncError as e:
                outcome.fail(e)
                self._log_record(outcome.record, e)
                entries.append(None)
                continue
            entries.append(BufferedOperation(op, self._namer.index_name(op.entity)))

        mine = [e for e in entries if e is not None]
        start = time.perf_counter()
        try:
            for entry in mine:
                try:
                    await self._bulk.add(entry)
                except BulkFlushError:
                    # Entry stays buffered, the flush below retries it
                    pass

            async def flush_until_written() -> None:
                if all(e.flushed for e in mine):
                    return
                await self._bulk.flush()

            await self._retry.run(
                flush_until_written,
                operation="BULK",
                operation_id=f"bulk:{len(mine)}",
                deadline=deadline,
            )
        except RetryExhaustedError as e:
            pending = [entry for entry in mine if not entry.flushed]
            await self._bulk.remove(pending)
            logger.warning(
                "bulk_fallback_to_single",
                pending=len(pending),
                error=str(e.last_error or e),
            )
        except (OperationCancelledError, asyncio.CancelledError):
            await self._bulk.remove([entry for entry in mine if not entry.flushed])
            raise

        share = (time.perf_counter() - start) / max(len(mine), 1)
        for op, outcome, entry in zip(ops, outcomes, entries, strict=True):
            if entry is None:
                continue
            if entry.flushed:
                outcome.record.mark_success()
                self._log_record(outcome.record)
                if self._metrics is not None:
                    # Duration is this call's bulk time split evenly across its operations
                    self._metrics.record_operation(
                        op.operation.value, op.entity, True, share, entry.payload_size
                    )
                continue
            try:
                outcome.record = await self.dispatch(op, deadline)
            except OperationCancelledError:
                raise
            except SyncError as e:
                outcome.fail(e)
        return outcomes

    @staticmethod
    def _log_record(record: SyncRecord, error: SyncError | None = None) -> None:
        fields = record.model_dump(mode="json")
        if error is None:
            logger.info("sync_record", **fields)
            return
        cause = error.last_error if isinstance(error, RetryExhaustedError) else None
        logger.error(
            "sync_record",
            **fields,
            error_code=error.code,
            retryable=error.is_retryable,
            last_error=str(cause) if cause is not None else None,
        )
