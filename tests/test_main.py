"""Tests for application wiring and the lifespan."""

from contextlib import ExitStack
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiokafka.errors import KafkaConnectionError
from fastapi import FastAPI

from discovery_sync.config import Settings
from discovery_sync.errors import ProvisioningError
from discovery_sync.main import build_sync_service, create_app, lifespan
from discovery_sync.services.provisioning import ProvisioningReport


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestBuildSyncService:
    """Tests for component wiring from settings."""

    def test_defaults(self, store, metrics) -> None:
        """Test the default pipeline has no bulk buffer or dead-lettering."""
        service = build_sync_service(_settings(), store, MagicMock(), metrics)

        assert service.bulk is None
        assert service.runner.dead_letter is None
        assert service.runner.config.topics == ["postgres.digital_discovery.public.categories"]
        assert service.enabled_modes == {"custom": True, "kafka-connect": False}

    def test_settings_flow_into_components(self, store, metrics) -> None:
        """Test bulk, retry, dead-letter and topic settings reach the runner."""
        settings = _settings(
            sync_bulk_enabled=True,
            sync_batch_size=50,
            sync_dead_letter_enabled=True,
            sync_failure_topic="dlq",
            sync_max_retries=5,
            sync_message_deadline_s=30.0,
            kafka_topic_prefix="cdc.catalog",
        )

        service = build_sync_service(settings, store, MagicMock(), metrics)

        assert service.bulk is not None
        assert service.bulk.config.batch_size == 50
        runner = service.runner
        assert runner.config.bulk_enabled is True
        assert runner.config.message_deadline_s == 30.0
        assert runner.config.topics == ["cdc.catalog.categories"]
        assert runner.dead_letter.topic == "dlq"
        assert runner.dispatcher._retry.policy.max_attempts == 5


class TestLifespan:
    """Tests for startup and shutdown."""

    @pytest.fixture
    def writer(self) -> MagicMock:
        """Create mock index writer."""
        writer = MagicMock()
        writer.connect = AsyncMock()
        writer.close = AsyncMock()
        writer.check_health = AsyncMock(return_value=True)
        return writer

    @pytest.fixture
    def provisioner(self) -> MagicMock:
        """Create mock provisioner."""
        provisioner = MagicMock()
        provisioner.provision = AsyncMock(
            return_value=ProvisioningReport(index="i-2025-04", alias="i")
        )
        return provisioner

    @pytest.fixture
    def kafka(self) -> MagicMock:
        """Create mock Kafka client."""
        kafka = MagicMock()
        kafka.close = AsyncMock()
        return kafka

    @pytest.fixture
    def sync_service(self) -> MagicMock:
        """Create mock sync service."""
        service = MagicMock()
        service.start = AsyncMock()
        service.stop = AsyncMock()
        return service

    @pytest.fixture
    def patched(self, writer, provisioner, kafka, sync_service):
        """Patch the builders used by the lifespan."""

        def run(settings: Settings) -> ExitStack:
            stack = ExitStack()
            builders = {
                "get_settings": settings,
                "build_writer": writer,
                "build_provisioner": provisioner,
                "build_kafka": kafka,
                "build_sync_service": sync_service,
            }
            for name, value in builders.items():
                stack.enter_context(patch(f"discovery_sync.main.{name}", return_value=value))
            return stack

        return run

    async def test_startup_and_shutdown(self, patched, writer, kafka, sync_service) -> None:
        """Test the configured mode starts and everything is released on shutdown."""
        app = FastAPI()
        with patched(_settings()):
            async with lifespan(app):
                writer.connect.assert_awaited_once()
                sync_service.start.assert_awaited_once_with("custom")
                assert app.state.sync_service is sync_service
                assert app.state.writer is writer
                assert app.state.metrics is not None

        sync_service.stop.assert_awaited_once()
        kafka.close.assert_awaited_once()
        writer.close.assert_awaited_once()

    async def test_provisioning_failure_aborts(self, patched, writer, provisioner) -> None:
        """Test a provisioning failure aborts startup after closing the writer."""
        provisioner.provision.side_effect = ProvisioningError("failed", step="template")
        app = FastAPI()
        with patched(_settings()):
            with pytest.raises(ProvisioningError):
                async with lifespan(app):
                    pass

        writer.close.assert_awaited_once()
        assert not hasattr(app.state, "sync_service")

    async def test_mode_start_failure_keeps_serving(self, patched, sync_service) -> None:
        """Test the service stays up when the sync path fails to start."""
        sync_service.start.side_effect = KafkaConnectionError()
        app = FastAPI()
        with patched(_settings()):
            async with lifespan(app):
                assert app.state.sync_service is sync_service

    async def test_disabled_mode_not_started(self, patched, sync_service) -> None:
        """Test a disabled configured mode is not started."""
        app = FastAPI()
        with patched(_settings(sync_custom_enabled=False)):
            async with lifespan(app):
                sync_service.start.assert_not_awaited()


class TestCreateApp:
    """Tests for create_app."""

    def test_routes_mounted(self) -> None:
        """Test probes at the root and sync control under /v1."""
        paths = set(create_app().openapi()["paths"])

        assert {
            "/health",
            "/ready",
            "/metrics",
            "/v1/sync/mode",
            "/v1/categories",
            "/v1/categories/{category_id}",
        } <= paths
