"""Sync mode orchestration.

Two mutually exclusive paths can keep the index up to date: the in-process
change-event engine (``custom``) or an external Kafka Connect sink
(``kafka-connect``), which this service only monitors.
"""

import asyncio
import contextlib
import logging
from typing import Any

from discovery_sync.clients.elasticsearch import IndexWriter
from discovery_sync.indexing.bulk import BulkBuffer
from discovery_sync.indexing.consumer import ConsumerGroupRunner, RunnerStatus
from discovery_sync.indexing.naming import IndexNamer
from discovery_sync.services.connector import ConnectorMonitor

logger = logging.getLogger(__name__)

SYNC_MODES = ("custom", "kafka-connect")


class SyncModeError(ValueError):
    """Requested sync mode is unknown or disabled."""


class SyncService:
    """Starts, stops and switches the active sync path."""

    def __init__(
        self,
        writer: IndexWriter,
        namer: IndexNamer,
        runner: ConsumerGroupRunner,
        monitor: ConnectorMonitor,
        enabled_modes: dict[str, bool],
        bulk: BulkBuffer | None = None,
        entity: str = "category",
    ) -> None:
        """Initialize the service.

        Args:
            writer: Index writer, probed for status reports.
            namer: Resolves the current index for status reports.
            runner: Consumer group runner driving ``custom`` mode.
            monitor: Connector monitor driving ``kafka-connect`` mode.
            enabled_modes: Which modes may be activated.
            bulk: Bulk buffer started and stopped alongside the runner.
            entity: Entity reported in status.
        """
        self.writer = writer
        self.namer = namer
        self.runner = runner
        self.monitor = monitor
        self.enabled_modes = enabled_modes
        self.bulk = bulk
        self.entity = entity
        self.mode: str | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()

    def check_mode(self, mode: str) -> None:
        """Raise SyncModeError unless ``mode`` is known and enabled."""
        if mode not in SYNC_MODES:
            raise SyncModeError(f"Invalid sync mode: {mode}")
        if not self.enabled_modes.get(mode, False):
            raise SyncModeError(f"Sync mode '{mode}' is not enabled")

    async def start(self, mode: str) -> None:
        """Start a sync path.

        Raises:
            SyncModeError: Mode unknown or disabled.
        """
        self.check_mode(mode)
        async with self._lock:
            await self._start(mode)

    async def stop(self) -> None:
        async with self._lock:
            await self._stop()

    async def switch_mode(self, mode: str) -> bool:
        """Stop the active path and start ``mode``.

        A failed runner is restarted when its own mode is requested again.

        Returns:
            True if a (re)start happened, False if ``mode`` was already running.

        Raises:
            SyncModeError: Mode unknown or disabled.
        """
        self.check_mode(mode)
        async with self._lock:
            if mode == self.mode and self.healthy_path:
                return False
            await self._stop()
            await self._start(mode)
            return True

    @property
    def healthy_path(self) -> bool:
        if self.mode == "custom":
            return self.runner.status is RunnerStatus.RUNNING
        if self.mode == "kafka-connect":
            return self.monitor.running
        return False

    async def _start(self, mode: str) -> None:
        logger.info(f"Starting {mode} sync mode")
        if mode == "custom":
            if self.bulk is not None:
                await self.bulk.start()
            await self.runner.start()
            self._watch_task = asyncio.create_task(self._watch_runner())
        else:
            await self.monitor.start()
        self.mode = mode

    async def _stop(self) -> None:
        if self.mode is None:
            return
        logger.info(f"Stopping {self.mode} sync mode")
        if self.mode == "custom":
            if self._watch_task is not None:
                self._watch_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._watch_task
                self._watch_task = None
            await self.runner.stop()
            if self.bulk is not None:
                await self.bulk.stop()
        else:
            await self.monitor.stop()
        self.mode = None

    async def _watch_runner(self) -> None:
        try:
            await self.runner.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Left in ERROR for operators; a mode switch to custom restarts it
            logger.error(f"Custom sync stopped on error: {e}")

    # ==================== Index reads ====================

    async def list_documents(self, size: int = 10) -> list[dict[str, Any]]:
        """Documents currently served through the entity alias.

        Raises:
            SyncError: The search failed.
        """
        return await self.writer.search(self.namer.alias_name(self.entity), size=size)

    async def get_document(self, doc_id: str) -> dict[str, Any] | None:
        """One document from the entity alias, None when it is not indexed.

        Raises:
            SyncError: The read failed for another reason than a missing document.
        """
        return await self.writer.get_document(self.namer.alias_name(self.entity), doc_id)

    def status(self) -> dict[str, Any]:
        """Summarize the active mode for the operator API."""
        mode = self.mode
        if mode == "custom":
            state = "running" if self.runner.status is RunnerStatus.RUNNING else "stopped"
            if self.runner.status is RunnerStatus.ERROR:
                state = "error"
        elif mode == "kafka-connect":
            state = "running" if self.monitor.running else "stopped"
        else:
            state = "stopped"
        failure = self.runner.failure
        checked = self.monitor.last_checked
        return {
            "mode": mode or "none",
            "enabled": bool(mode and self.enabled_modes.get(mode, False)),
            "status": state,
            "current_index": self.namer.index_name(self.entity),
            "consumer_status": self.runner.status.value,
            "consumer_error": str(failure) if failure is not None else None,
            "assigned_partitions": len(self.runner.assignment),
            "connector_state": self.monitor.state,
            "connector_checked_at": checked.isoformat() if checked is not None else None,
            "es_status": "UP" if self.writer.healthy else "DOWN",
        }
