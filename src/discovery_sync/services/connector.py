"""Kafka Connect sink connector monitoring."""

import asyncio
import contextlib
import logging
from datetime import UTC, datetime

import httpx

logger = logging.getLogger(__name__)


class ConnectorMonitor:
    """Polls the Kafka Connect REST API for the sink connector's state.

    Used in ``kafka-connect`` mode, where the connector rather than this
    service writes to the index. Poll failures are logged and the loop
    keeps going.
    """

    def __init__(
        self,
        url: str,
        name: str,
        poll_interval_s: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the monitor.

        Args:
            url: Kafka Connect REST base URL.
            name: Sink connector name.
            poll_interval_s: Seconds between status checks.
            client: HTTP client, created on start when omitted.
        """
        self.url = url.rstrip("/")
        self.name = name
        self.poll_interval_s = poll_interval_s
        self._client = client
        self._owns_client = client is None
        self._task: asyncio.Task[None] | None = None
        self.state: str | None = None
        self.last_checked: datetime | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def check_status(self) -> str:
        """Fetch the connector state (RUNNING, PAUSED, FAILED, ...).

        Raises:
            httpx.HTTPError: The request failed or returned an error status.
        """
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        response = await self._client.get(f"{self.url}/connectors/{self.name}/status")
        response.raise_for_status()
        state = response.json().get("connector", {}).get("state", "UNKNOWN")
        self.state = state
        self.last_checked = datetime.now(UTC)
        return state

    async def start(self) -> None:
        if self.running:
            logger.warning("Connector monitor already running")
            return
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"Monitoring connector '{self.name}' at {self.url}")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("Connector monitor stopped")

    async def _poll_loop(self) -> None:
        while True:
            try:
                state = await self.check_status()
                logger.info(f"Connector '{self.name}' state: {state}")
            except (httpx.HTTPError, ValueError) as e:
                self.state = None
                logger.error(f"Failed to check connector '{self.name}' status: {e}")
            await asyncio.sleep(self.poll_interval_s)
