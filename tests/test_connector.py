"""Tests for the Kafka Connect connector monitor."""

import asyncio

import httpx
import pytest

from discovery_sync.services.connector import ConnectorMonitor

URL = "http://connect:8083"


def _client(state: str = "RUNNING", status_code: int = 200) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/connectors/es-sink/status"
        return httpx.Response(
            status_code, json={"name": "es-sink", "connector": {"state": state}}
        )

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestConnectorMonitor:
    """Tests for ConnectorMonitor."""

    async def test_check_status(self) -> None:
        """Test the connector state is read from the status endpoint."""
        monitor = ConnectorMonitor(URL + "/", "es-sink", client=_client("RUNNING"))

        assert await monitor.check_status() == "RUNNING"
        assert monitor.state == "RUNNING"
        assert monitor.last_checked is not None

    async def test_check_status_error(self) -> None:
        """Test an error status raises."""
        monitor = ConnectorMonitor(URL, "es-sink", client=_client(status_code=404))

        with pytest.raises(httpx.HTTPStatusError):
            await monitor.check_status()

    async def test_poll_loop_survives_errors(self) -> None:
        """Test failed polls clear the state and the loop keeps running."""
        monitor = ConnectorMonitor(
            URL, "es-sink", poll_interval_s=0.01, client=_client(status_code=500)
        )
        await monitor.start()
        await asyncio.sleep(0.05)

        assert monitor.running
        assert monitor.state is None

        await monitor.stop()
        assert not monitor.running

    async def test_start_twice(self) -> None:
        """Test a second start keeps the existing loop."""
        monitor = ConnectorMonitor(URL, "es-sink", poll_interval_s=10, client=_client())
        await monitor.start()
        task = monitor._task

        await monitor.start()

        assert monitor._task is task
        await monitor.stop()
