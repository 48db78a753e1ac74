"""Bulk buffer for batching index writes."""

import asyncio
import contextlib
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from discovery_sync.clients.elasticsearch import IndexWriter
from discovery_sync.errors import BulkFlushError, SyncError
from discovery_sync.indexing.models import (
    CategoryOperation,
    OperationType,
    build_document,
    utcnow,
)
from discovery_sync.utils.metrics import MetricsCollector

logger = logging.getLogger(__name__)

_ACTIONS = {
    OperationType.CREATE: "index",
    OperationType.UPDATE: "update",
    OperationType.DELETE: "delete",
}


class BulkConfig(BaseModel):
    """Configuration for bulk writes."""

    batch_size: int = Field(default=100, ge=1, description="Operations per bulk request")
    flush_interval_ms: int = Field(default=0, ge=0, description="Timed flush period, 0 disables")
    request_timeout: float | None = Field(default=None, description="Bulk request deadline (s)")


@dataclass(eq=False)
class BufferedOperation:
    """An operation waiting in the buffer, addressed to a resolved index.

    Attributes:
        operation: The operation to write.
        index: Target index, resolved when the operation was buffered.
        flushed: Set once a bulk request containing it succeeded.
        payload_size: Serialized document size in bytes, set when encoded.
    """

    operation: CategoryOperation
    index: str
    flushed: bool = False
    payload_size: int = 0


def encode_operations(
    entries: list[BufferedOperation], synced_at: datetime | None = None
) -> list[dict[str, Any]]:
    """Encode buffered operations as bulk action/body pairs.

    Deletes contribute only their action line. Update bodies merge with
    upsert so an update seen before its create still lands. Each entry's
    encoded document size is recorded on ``payload_size``.
    """
    synced_at = synced_at or utcnow()
    lines: list[dict[str, Any]] = []
    for entry in entries:
        op = entry.operation
        action = _ACTIONS[op.operation]
        lines.append({action: {"_index": entry.index, "_id": op.document_id}})
        if op.operation is OperationType.DELETE:
            continue
        document = build_document(op, synced_at)
        entry.payload_size = len(json.dumps(document))
        if op.operation is OperationType.UPDATE:
            lines.append({"doc": document, "doc_as_upsert": True})
        else:
            lines.append(document)
    return lines


class BulkBuffer:
    """Shared buffer that flushes operations to the store in bulk requests.

    A flush happens when:
    - The buffer reaches the batch size (inside ``add``)
    - ``flush`` is called
    - The timed flush loop fires, when enabled

    One lock guards the buffer for the whole of a flush, so a flush sees a
    consistent snapshot that cannot grow while it is encoded and submitted.
    Entries leave the buffer only after the store confirmed their batch.
    """

    def __init__(
        self,
        writer: IndexWriter,
        config: BulkConfig | None = None,
        metrics: MetricsCollector | None = None,
        entity: str = "category",
    ) -> None:
        """Initialize the bulk buffer.

        Args:
            writer: Index writer used to submit bulk requests.
            config: Bulk configuration.
            metrics: Metrics collector for batch outcomes and buffer depth.
            entity: Entity type, used as a metrics label.
        """
        self.config = config or BulkConfig()
        self._writer = writer
        self._metrics = metrics
        self._entity = entity
        self._buffer: list[BufferedOperation] = []
        self._lock = asyncio.Lock()
        self._flush_task: asyncio.Task[None] | None = None
        self._running = False

    async def start(self) -> None:
        """Start the timed flush loop when a flush interval is configured."""
        if self._running:
            logger.warning("BulkBuffer already started")
            return

        self._running = True
        if self.config.flush_interval_ms > 0:
            self._flush_task = asyncio.create_task(self._flush_loop())
        logger.info(
            f"BulkBuffer started (batch_size={self.config.batch_size}, "
            f"flush_interval={self.config.flush_interval_ms}ms)"
        )

    async def stop(self) -> None:
        """Stop the flush loop and make a final flush attempt.

        Anything that still fails to flush stays buffered and is logged.
        """
        if not self._running:
            return

        self._running = False
        if self._flush_task is not None:
            self._flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None

        try:
            await self.flush()
        except BulkFlushError as e:
            logger.error(f"Final bulk flush failed, {self.size} operations not written: {e}")
        logger.info("BulkBuffer stopped")

    async def add(self, entry: BufferedOperation) -> None:
        """Buffer an operation, flushing when the batch size is reached.

        Raises:
            BulkFlushError: The triggered flush failed. The entry stays buffered.
        """
        async with self._lock:
            self._buffer.append(entry)
            self._update_gauge()
            if len(self._buffer) >= self.config.batch_size:
                await self._flush_locked()

    async def flush(self) -> int:
        """Flush everything currently buffered.

        Returns:
            Number of operations written.

        Raises:
            BulkFlushError: A bulk request failed. Its entries and everything
                after them stay buffered.
        """
        async with self._lock:
            return await self._flush_locked()

    async def remove(self, entries: list[BufferedOperation]) -> int:
        """Take entries out of the buffer without writing them.

        Returns:
            Number of entries that were still buffered.
        """
        targets = {id(e) for e in entries}
        async with self._lock:
            before = len(self._buffer)
            self._buffer = [e for e in self._buffer if id(e) not in targets]
            self._update_gauge()
            return before - len(self._buffer)

    async def _flush_locked(self) -> int:
        flushed = 0
        while self._buffer:
            batch = self._buffer[: self.config.batch_size]
            operations = encode_operations(batch)
            start = time.perf_counter()
            try:
                await self._writer.bulk(operations, timeout=self.config.request_timeout)
            except SyncError as e:
                self._record(len(batch), success=False)
                logger.warning(f"Bulk flush of {len(batch)} operations failed: {e}")
                if isinstance(e, BulkFlushError):
                    raise
                raise BulkFlushError(
                    f"Bulk flush of {len(batch)} operations failed",
                    batch_size=len(batch),
                    cause=e,
                ) from e

            del self._buffer[: len(batch)]
            for entry in batch:
                entry.flushed = True
            flushed += len(batch)
            self._record(len(batch), success=True)
            self._update_gauge()
            logger.info(
                f"Flushed {len(batch)} operations in {(time.perf_counter() - start) * 1000:.1f}ms"
            )
        return flushed

    async def _flush_loop(self) -> None:
        interval_s = self.config.flush_interval_ms / 1000.0
        while self._running:
            await asyncio.sleep(interval_s)
            try:
                await self.flush()
            except BulkFlushError as e:
                # Entries stay buffered; the next tick or an owner retries them
                logger.warning(f"Timed bulk flush failed: {e}")

    def _record(self, size: int, success: bool) -> None:
        if self._metrics is not None:
            self._metrics.record_bulk(self._entity, size, success)

    def _update_gauge(self) -> None:
        if self._metrics is not None:
            self._metrics.set_buffer_size(len(self._buffer))

    @property
    def size(self) -> int:
        """Number of operations currently buffered."""
        return len(self._buffer)
