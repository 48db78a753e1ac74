"""Dead-letter publishing for messages that could not be applied."""

import logging
from typing import Any

from aiokafka.structs import ConsumerRecord

from discovery_sync.clients.kafka import KafkaClient
from discovery_sync.errors import RetryExhaustedError, SyncError
from discovery_sync.indexing.models import utcnow

logger = logging.getLogger(__name__)


def failure_event(record: ConsumerRecord, error: SyncError) -> dict[str, Any]:
    """Describe a failed message for the dead-letter topic.

    The original value is carried as text so the event can be replayed
    once the cause is fixed.
    """
    value = record.value
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    event: dict[str, Any] = {
        "source": {
            "topic": record.topic,
            "partition": record.partition,
            "offset": record.offset,
            "timestamp": record.timestamp,
        },
        "value": value,
        "error": error.to_dict(),
        "failed_at": utcnow().isoformat(),
    }
    if isinstance(error, RetryExhaustedError):
        event["attempts"] = error.attempts
        event["last_error"] = str(error.last_error) if error.last_error is not None else None
    return event


class DeadLetterPublisher:
    """Publishes terminally failed messages to the failure topic under their original key."""

    def __init__(self, kafka: KafkaClient, topic: str = "failed-syncs") -> None:
        self.kafka = kafka
        self.topic = topic

    async def publish(self, record: ConsumerRecord, error: SyncError) -> None:
        """Publish a failed message.

        Delivery errors propagate so the source offset is not committed.
        """
        await self.kafka.send_event(
            self.topic,
            record.key,
            failure_event(record, error),
            headers=[("error_code", error.code.encode("utf-8"))],
        )
        logger.warning(
            f"Dead-lettered {record.topic}[{record.partition}]@{record.offset} "
            f"to {self.topic}: {error.code}"
        )
