"""Discovery Sync Service - FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from discovery_sync import __version__
from discovery_sync.api import probes, router
from discovery_sync.clients.elasticsearch import ElasticsearchConfig, IndexWriter
from discovery_sync.clients.kafka import ConsumerConfig, KafkaClient, SecurityConfig
from discovery_sync.config import Settings, get_settings
from discovery_sync.indexing.bulk import BulkBuffer, BulkConfig
from discovery_sync.indexing.consumer import ConsumerGroupRunner, RunnerConfig
from discovery_sync.indexing.dead_letter import DeadLetterPublisher
from discovery_sync.indexing.decoder import EventDecoder
from discovery_sync.indexing.dispatcher import OperationDispatcher
from discovery_sync.indexing.naming import IndexNamer
from discovery_sync.indexing.retry import RetryEngine, RetryPolicy
from discovery_sync.services.connector import ConnectorMonitor
from discovery_sync.services.provisioning import IndexProvisioner, ProvisioningConfig
from discovery_sync.services.sync import SyncService
from discovery_sync.utils.logging import configure_logging, get_logger
from discovery_sync.utils.metrics import MetricsCollector
from discovery_sync.utils.tracing import TracingMiddleware

# Configure structured logging
settings = get_settings()
configure_logging(
    level="DEBUG" if settings.debug else settings.log_level,
    json_format=settings.log_json and not settings.debug,
)
logger = get_logger(__name__)


def build_writer(settings: Settings) -> IndexWriter:
    return IndexWriter(
        ElasticsearchConfig(
            hosts=settings.es_hosts,
            username=settings.es_username,
            password=settings.es_password,
            max_retries=settings.es_max_retries,
            retry_on_timeout=settings.es_retry_on_timeout,
            request_timeout=settings.es_request_timeout,
            max_connections=settings.es_max_connections,
            gzip_enabled=settings.es_gzip_enabled,
        )
    )


def build_kafka(settings: Settings) -> KafkaClient:
    return KafkaClient(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        consumer_config=ConsumerConfig(
            group_id=settings.kafka_group_id,
            auto_offset_reset=settings.kafka_auto_offset_reset,
            session_timeout_ms=settings.kafka_session_timeout_ms,
            max_poll_interval_ms=settings.kafka_max_poll_interval_ms,
        ),
        security=SecurityConfig(
            enabled=settings.kafka_security_enabled,
            username=settings.kafka_sasl_username,
            password=settings.kafka_sasl_password,
        ),
    )


def build_namer(settings: Settings) -> IndexNamer:
    return IndexNamer(settings.app_environment, settings.es_service_name)


def build_provisioner(settings: Settings, writer: IndexWriter) -> IndexProvisioner:
    return IndexProvisioner(
        writer,
        build_namer(settings),
        ProvisioningConfig(
            policy_name=settings.es_lifecycle_policy,
            shards=settings.es_shard_count,
            replicas=settings.es_replica_count,
        ),
    )


def build_sync_service(
    settings: Settings,
    writer: IndexWriter,
    kafka: KafkaClient,
    metrics: MetricsCollector,
) -> SyncService:
    """Wire the change-event pipeline and connector monitor into a SyncService.

    Args:
        settings: Application settings.
        writer: Connected index writer.
        kafka: Kafka client owning the consumer and dead-letter producer.
        metrics: Metrics collector shared by every component.

    Returns:
        A SyncService with no mode started.
    """
    namer = build_namer(settings)
    retry = RetryEngine(
        RetryPolicy(
            max_attempts=settings.sync_max_retries,
            base_delay=settings.sync_retry_delay_s,
            max_delay=settings.sync_max_retry_delay_s,
            backoff_factor=settings.sync_backoff_factor,
        ),
        metrics=metrics,
    )

    bulk = None
    if settings.sync_bulk_enabled:
        bulk = BulkBuffer(
            writer,
            BulkConfig(
                batch_size=settings.sync_batch_size,
                flush_interval_ms=settings.sync_bulk_flush_interval_ms,
                request_timeout=settings.es_request_timeout,
            ),
            metrics=metrics,
        )

    dispatcher = OperationDispatcher(
        writer,
        namer,
        retry,
        metrics=metrics,
        bulk=bulk,
        write_timeout=settings.es_request_timeout,
    )

    dead_letter = None
    if settings.sync_dead_letter_enabled:
        dead_letter = DeadLetterPublisher(kafka, topic=settings.sync_failure_topic)

    runner = ConsumerGroupRunner(
        kafka,
        EventDecoder(),
        dispatcher,
        RunnerConfig(
            topics=settings.topics,
            group_id=settings.kafka_group_id,
            fetch_timeout_ms=settings.kafka_fetch_timeout_ms,
            max_pending_per_partition=settings.kafka_max_pending_per_partition,
            bulk_enabled=settings.sync_bulk_enabled,
            batch_size=settings.sync_batch_size,
            message_deadline_s=settings.sync_message_deadline_s,
        ),
        metrics=metrics,
        dead_letter=dead_letter,
    )

    monitor = ConnectorMonitor(
        settings.sync_connect_url,
        settings.sync_connect_name,
        poll_interval_s=settings.sync_connect_poll_interval_s,
    )

    return SyncService(
        writer,
        namer,
        runner,
        monitor,
        enabled_modes={
            "custom": settings.sync_custom_enabled,
            "kafka-connect": settings.sync_connect_enabled,
        },
        bulk=bulk,
    )


async def _shutdown(app: FastAPI) -> None:
    sync_service = getattr(app.state, "sync_service", None)
    if sync_service is not None:
        try:
            await sync_service.stop()
            logger.info("sync_service_stopped")
        except Exception as e:
            logger.error("sync_service_stop_failed", error=str(e))

    kafka = getattr(app.state, "kafka", None)
    if kafka is not None:
        try:
            await kafka.close()
            logger.info("kafka_client_closed")
        except Exception as e:
            logger.error("kafka_client_close_failed", error=str(e))

    writer = getattr(app.state, "writer", None)
    if writer is not None:
        try:
            await writer.close()
            logger.info("elasticsearch_client_closed")
        except Exception as e:
            logger.error("elasticsearch_client_close_failed", error=str(e))

    metrics = getattr(app.state, "metrics", None)
    if metrics is not None:
        metrics.cleanup()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Connects to Elasticsearch, provisions the index, then starts the
    configured sync mode. A provisioning failure aborts startup; everything
    started so far is released first.

    Args:
        app: FastAPI application instance.

    Yields:
        None after startup, before shutdown.
    """
    settings = get_settings()

    logger.info(
        "service_starting",
        environment=settings.app_environment,
        mode=settings.sync_mode,
        topics=settings.topics,
        es_hosts=settings.es_hosts,
    )

    metrics = MetricsCollector(service=settings.app_service_name, version=settings.app_version)
    app.state.metrics = metrics

    writer = build_writer(settings)
    app.state.writer = writer
    await writer.connect()
    if not await writer.check_health():
        logger.warning("elasticsearch_unhealthy_at_startup")

    try:
        report = await build_provisioner(settings, writer).provision()
    except Exception as e:
        logger.error("provisioning_failed", error=str(e))
        await _shutdown(app)
        raise
    logger.info("index_provisioned", index=report.index, alias=report.alias)

    kafka = build_kafka(settings)
    app.state.kafka = kafka

    sync_service = build_sync_service(settings, writer, kafka, metrics)
    app.state.sync_service = sync_service

    if settings.mode_enabled:
        try:
            await sync_service.start(settings.sync_mode)
        except Exception as e:
            # Stays reachable for probes and a later mode switch
            logger.error("sync_mode_start_failed", mode=settings.sync_mode, error=str(e))
    else:
        logger.warning("sync_mode_disabled", mode=settings.sync_mode)

    logger.info("service_started")

    yield

    logger.info("service_stopping")
    await _shutdown(app)
    logger.info("service_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    app_settings = get_settings()

    app = FastAPI(
        title="Discovery Sync Service",
        description=(
            "Keeps the category search index in step with the catalog database "
            "by applying change-capture events from Kafka"
        ),
        version=__version__,
        lifespan=lifespan,
        debug=app_settings.debug,
    )

    app.add_middleware(TracingMiddleware)

    app.include_router(probes)
    app.include_router(router)

    return app


# Create app instance for uvicorn
app = create_app()


def run() -> None:
    """Run the application with uvicorn."""
    settings = get_settings()

    logger.info("server_starting", host=settings.sync_host, port=settings.sync_port)

    uvicorn.run(
        "discovery_sync.main:app",
        host=settings.sync_host,
        port=settings.sync_port,
        reload=settings.debug,
        log_level="info",
    )


if __name__ == "__main__":
    run()
