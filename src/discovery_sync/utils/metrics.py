"""Prometheus metrics instrumentation for the sync engine.

Tracks:
- Per-operation latency, outcome and payload size
- Bulk batch sizes and buffer depth
- Retry attempts
- Consumed message outcomes per topic

The collector owns its own registry. It is built once by the application
wiring and handed to the components that record into it.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

DURATION_BUCKETS = [0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
PAYLOAD_BUCKETS = [64, 256, 1024, 4096, 16384, 65536, 262144, 1048576]
BATCH_BUCKETS = [1, 5, 10, 25, 50, 100, 250, 500, 1000]


class MetricsCollector:
    """Sync engine metrics bound to a private CollectorRegistry."""

    def __init__(
        self,
        service: str = "digital-discovery-sync",
        version: str = "0.1.0",
        registry: CollectorRegistry | None = None,
    ) -> None:
        self.registry = registry or CollectorRegistry()

        self.service_info = Info("sync_service", "Sync service information", registry=self.registry)
        self.service_info.info({"service": service, "version": version, "component": "cdc-sync"})

        # ==================== Operation Metrics ====================

        self.operation_duration = Histogram(
            "sync_operation_duration_seconds",
            "Duration of index operations in seconds",
            ["operation", "entity", "status"],
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.operations = Counter(
            "sync_operations_total",
            "Total index operations",
            ["operation", "entity", "status"],
            registry=self.registry,
        )
        self.operation_errors = Counter(
            "sync_operation_errors_total",
            "Total failed index operations",
            ["operation", "entity"],
            registry=self.registry,
        )
        self.payload_size = Histogram(
            "sync_payload_size_bytes",
            "Serialized document size in bytes",
            ["operation", "entity"],
            buckets=PAYLOAD_BUCKETS,
            registry=self.registry,
        )

        # ==================== Bulk Metrics ====================

        self.bulk_operations = Histogram(
            "sync_bulk_operations",
            "Number of operations per bulk request",
            ["entity", "status"],
            buckets=BATCH_BUCKETS,
            registry=self.registry,
        )
        self.buffer_size = Gauge(
            "sync_buffer_size",
            "Operations currently held in the bulk buffer",
            registry=self.registry,
        )

        # ==================== Retry / Consumer Metrics ====================

        self.retry_attempts = Counter(
            "sync_retry_attempts_total",
            "Retry engine attempts by outcome",
            ["operation", "outcome"],
            registry=self.registry,
        )
        self.messages = Counter(
            "sync_messages_total",
            "Consumed change messages by terminal status",
            ["topic", "status"],
            registry=self.registry,
        )

    def record_operation(
        self,
        operation: str,
        entity: str,
        success: bool,
        duration: float,
        payload_size: int = 0,
    ) -> None:
        """Record the outcome of a single index operation.

        Args:
            operation: CREATE, UPDATE or DELETE.
            entity: Entity type (e.g. category).
            success: Whether the write succeeded.
            duration: Write duration in seconds.
            payload_size: Serialized document size in bytes.
        """
        status = "success" if success else "error"
        self.operation_duration.labels(operation=operation, entity=entity, status=status).observe(
            duration
        )
        self.operations.labels(operation=operation, entity=entity, status=status).inc()
        if not success:
            self.operation_errors.labels(operation=operation, entity=entity).inc()
        if payload_size > 0:
            self.payload_size.labels(operation=operation, entity=entity).observe(payload_size)

    def record_bulk(self, entity: str, size: int, success: bool) -> None:
        status = "success" if success else "error"
        self.bulk_operations.labels(entity=entity, status=status).observe(size)

    def record_retry(self, operation: str, outcome: str) -> None:
        """Record one retry engine attempt.

        Args:
            operation: Operation being retried.
            outcome: success, retry, exhausted, fatal or cancelled.
        """
        self.retry_attempts.labels(operation=operation, outcome=outcome).inc()

    def record_message(self, topic: str, status: str) -> None:
        """Record a consumed message reaching its terminal status.

        Args:
            topic: Source topic.
            status: committed, decode_error, failed or dead_lettered.
        """
        self.messages.labels(topic=topic, status=status).inc()

    def set_buffer_size(self, size: int) -> None:
        self.buffer_size.set(size)

    def render(self) -> bytes:
        """Get metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)

    @staticmethod
    def content_type() -> str:
        return CONTENT_TYPE_LATEST

    def cleanup(self) -> None:
        """Unregister every collector from the registry."""
        for collector in list(self.registry._collector_to_names):
            self.registry.unregister(collector)
