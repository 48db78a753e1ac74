"""Kafka consumer group runner for change-capture topics."""

import asyncio
import contextlib
import logging
from enum import Enum

from aiokafka import AIOKafkaConsumer, ConsumerRebalanceListener, TopicPartition
from aiokafka.errors import CommitFailedError, ConsumerStoppedError, IllegalStateError, KafkaError
from aiokafka.structs import ConsumerRecord
from pydantic import BaseModel, Field

from discovery_sync.clients.kafka import KafkaClient
from discovery_sync.errors import DecodeError, OperationCancelledError, SyncError
from discovery_sync.indexing.dead_letter import DeadLetterPublisher
from discovery_sync.indexing.decoder import EventDecoder
from discovery_sync.indexing.dispatcher import OperationDispatcher
from discovery_sync.indexing.models import CategoryOperation
from discovery_sync.utils.logging import MESSAGE_CONTEXT_KEYS, bind_context, unbind_context
from discovery_sync.utils.metrics import MetricsCollector

logger = logging.getLogger(__name__)


class RunnerStatus(str, Enum):
    """Lifecycle of the consumer group runner.

    ``INITIALIZED -> STARTING -> RUNNING -> {ERROR | STOPPED | CLOSED}``.
    CLOSING is reported while a stop is in progress.
    """

    INITIALIZED = "initialized"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"
    CLOSING = "closing"
    STOPPED = "stopped"
    CLOSED = "closed"


class RunnerConfig(BaseModel):
    """Configuration for the consumer group runner."""

    topics: list[str] = Field(
        default=["postgres.digital_discovery.public.categories"], description="Topics to consume"
    )
    group_id: str = Field(default="digital-discovery-sync", description="Consumer group ID")
    fetch_timeout_ms: int = Field(default=1000, description="Max wait per fetch")
    fetch_max_records: int = Field(default=500, description="Max records per fetch")
    max_pending_per_partition: int = Field(
        default=500, ge=1, description="Queued messages that pause a partition"
    )
    bulk_enabled: bool = Field(default=False, description="Dispatch through the bulk buffer")
    batch_size: int = Field(default=100, ge=1, description="Messages per bulk dispatch")
    message_deadline_s: float | None = Field(
        default=None, description="Deadline per message (or bulk batch), None disables"
    )


class PartitionWorker:
    """Sequential processor for one assigned partition."""

    def __init__(self, tp: TopicPartition) -> None:
        self.tp = tp
        self.queue: asyncio.Queue[ConsumerRecord] = asyncio.Queue()
        self.task: asyncio.Task[None] | None = None
        self.paused = False
        self.committed: int | None = None


class _RebalanceListener(ConsumerRebalanceListener):
    def __init__(self, runner: "ConsumerGroupRunner") -> None:
        self._runner = runner

    async def on_partitions_revoked(self, revoked: set[TopicPartition]) -> None:
        await self._runner.revoke(revoked)

    async def on_partitions_assigned(self, assigned: set[TopicPartition]) -> None:
        self._runner.assign(assigned)


class ConsumerGroupRunner:
    """Consumes change events and applies them to the index, one worker per partition.

    Messages of a partition are processed strictly one after another,
    including any retries, while partitions run concurrently. An offset is
    committed only after its message reached a terminal outcome: applied,
    rejected as undecodable or invalid, or failed after exhausting retries
    (dead-lettered first when a publisher is configured). A message whose
    deadline passes is not committed; the runner moves to ERROR and a restart
    resumes from the last committed offset.

    Worker failures are reported through an error queue drained by a
    separate task, which updates the status without blocking processing on
    other partitions.
    """

    def __init__(
        self,
        kafka: KafkaClient,
        decoder: EventDecoder,
        dispatcher: OperationDispatcher,
        config: RunnerConfig | None = None,
        metrics: MetricsCollector | None = None,
        dead_letter: DeadLetterPublisher | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            kafka: Kafka client that owns the consumer.
            decoder: Decodes message values into operations.
            dispatcher: Applies operations to the index.
            config: Runner configuration.
            metrics: Metrics collector for message outcomes.
            dead_letter: Publisher for terminally failed messages, None disables.
        """
        self.kafka = kafka
        self.decoder = decoder
        self.dispatcher = dispatcher
        self.config = config or RunnerConfig()
        self.metrics = metrics
        self.dead_letter = dead_letter

        self._status = RunnerStatus.INITIALIZED
        self._consumer: AIOKafkaConsumer | None = None
        self._workers: dict[TopicPartition, PartitionWorker] = {}
        self._errors: asyncio.Queue[BaseException] = asyncio.Queue()
        self._fetch_task: asyncio.Task[None] | None = None
        self._drain_task: asyncio.Task[None] | None = None
        self._done = asyncio.Event()
        self._failure: BaseException | None = None

    @property
    def status(self) -> RunnerStatus:
        return self._status

    @property
    def failure(self) -> BaseException | None:
        """The error that moved the runner to ERROR, if any."""
        return self._failure

    @property
    def assignment(self) -> set[TopicPartition]:
        return set(self._workers)

    @property
    def consumer(self) -> AIOKafkaConsumer:
        if self._consumer is None:
            raise RuntimeError("Consumer runner not started. Call start() first.")
        return self._consumer

    def _set_status(self, status: RunnerStatus) -> None:
        if status is not self._status:
            logger.info(f"Consumer runner status: {self._status.value} -> {status.value}")
            self._status = status

    async def start(self) -> None:
        """Join the consumer group and start fetching."""
        if self._status in (RunnerStatus.STARTING, RunnerStatus.RUNNING):
            logger.warning("Consumer runner already started")
            return

        self._set_status(RunnerStatus.STARTING)
        self._failure = None
        self._done.clear()
        logger.info(
            f"Starting consumer runner for topics {self.config.topics} "
            f"(group: {self.config.group_id}, bulk: {self.config.bulk_enabled})"
        )

        try:
            self._consumer = await self.kafka.create_consumer(
                self.config.topics,
                group_id=self.config.group_id,
                listener=_RebalanceListener(self),
            )
        except KafkaError as e:
            self._failure = e
            self._set_status(RunnerStatus.ERROR)
            raise

        self._errors = asyncio.Queue()
        self._drain_task = asyncio.create_task(self._drain_errors())
        self._fetch_task = asyncio.create_task(self._fetch_loop())
        self._set_status(RunnerStatus.RUNNING)

    async def stop(self) -> None:
        """Stop fetching, cancel workers and leave the group.

        In-flight messages are not committed and will be redelivered.
        An ERROR status is kept so callers can still see why the runner ended.
        """
        if self._status in (RunnerStatus.INITIALIZED, RunnerStatus.STOPPED):
            return

        failed = self._status is RunnerStatus.ERROR
        closed = self._status is RunnerStatus.CLOSED
        if not (failed or closed):
            self._set_status(RunnerStatus.CLOSING)

        await self._halt()
        if self._drain_task is not None:
            self._drain_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._drain_task
            self._drain_task = None

        await self.kafka.close_consumer(self.config.topics, self.config.group_id)
        self._consumer = None

        if not (failed or closed):
            self._set_status(RunnerStatus.STOPPED)
        self._done.set()
        logger.info("Consumer runner stopped")

    async def wait(self) -> None:
        """Wait until the runner ends.

        Raises:
            BaseException: The error that moved the runner to ERROR.
        """
        await self._done.wait()
        if self._failure is not None:
            raise self._failure

    # ==================== Partition assignment ====================

    def assign(self, partitions: set[TopicPartition]) -> None:
        """Start a worker for each newly assigned partition."""
        for tp in partitions:
            self._worker_for(tp)
        if partitions:
            logger.info(f"Assigned partitions: {sorted(str(tp) for tp in partitions)}")

    async def revoke(self, partitions: set[TopicPartition]) -> None:
        """Cancel the workers of revoked partitions.

        Their in-flight and queued messages stay uncommitted, so the next
        owner receives them again.
        """
        workers = [self._workers.pop(tp) for tp in partitions if tp in self._workers]
        await self._cancel_workers(workers)
        if partitions:
            logger.info(f"Revoked partitions: {sorted(str(tp) for tp in partitions)}")

    def _worker_for(self, tp: TopicPartition) -> PartitionWorker:
        worker = self._workers.get(tp)
        if worker is None:
            worker = PartitionWorker(tp)
            worker.task = asyncio.create_task(self._run_worker(worker))
            self._workers[tp] = worker
        return worker

    @staticmethod
    async def _cancel_workers(workers: list[PartitionWorker]) -> None:
        tasks = [w.task for w in workers if w.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ==================== Fetching ====================

    async def _fetch_loop(self) -> None:
        consumer = self.consumer
        try:
            while True:
                batches = await consumer.getmany(
                    timeout_ms=self.config.fetch_timeout_ms,
                    max_records=self.config.fetch_max_records,
                )
                for tp, records in batches.items():
                    worker = self._worker_for(tp)
                    for record in records:
                        worker.queue.put_nowait(record)
                    if (
                        not worker.paused
                        and worker.queue.qsize() >= self.config.max_pending_per_partition
                    ):
                        consumer.pause(tp)
                        worker.paused = True
                        logger.info(f"Paused {tp}: {worker.queue.qsize()} messages pending")
        except ConsumerStoppedError:
            logger.warning("Consumer stopped underneath the runner")
            self._set_status(RunnerStatus.CLOSED)
            await self._cancel_workers(list(self._workers.values()))
            self._workers.clear()
            self._done.set()
        except KafkaError as e:
            self._errors.put_nowait(e)

    # ==================== Processing ====================

    async def _run_worker(self, worker: PartitionWorker) -> None:
        try:
            while True:
                record = await worker.queue.get()
                batch = [record]
                if self.config.bulk_enabled:
                    while len(batch) < self.config.batch_size and not worker.queue.empty():
                        batch.append(worker.queue.get_nowait())
                    await self._process_batch(batch)
                else:
                    await self._process(record)

                await self._commit(worker, batch[-1].offset + 1)
                low_water = self.config.max_pending_per_partition // 2
                if worker.paused and worker.queue.qsize() <= low_water:
                    self._resume(worker)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Worker for {worker.tp} failed: {e}")
            self._errors.put_nowait(e)

    def _deadline(self) -> float | None:
        if self.config.message_deadline_s is None:
            return None
        return asyncio.get_running_loop().time() + self.config.message_deadline_s

    async def _process(self, record: ConsumerRecord) -> None:
        """Take one message to a terminal outcome.

        Raises:
            OperationCancelledError: The message deadline passed; it must not be committed.
        """
        bind_context(topic=record.topic, partition=record.partition, offset=record.offset)
        try:
            op = await self._decode(record)
            if op is None:
                return
            try:
                await self.dispatcher.dispatch(op, self._deadline())
            except OperationCancelledError:
                raise
            except SyncError as e:
                logger.error(
                    f"Giving up on {op.operation.value} {op.entity} {op.document_id} "
                    f"at {record.topic}[{record.partition}]@{record.offset}: {e}"
                )
                await self._fail(record, e)
                return
            self._record(record.topic, "committed")
        finally:
            unbind_context(*MESSAGE_CONTEXT_KEYS)

    async def _process_batch(self, records: list[ConsumerRecord]) -> None:
        """Take a run of messages from one partition to terminal outcomes via bulk writes."""
        decoded: list[tuple[ConsumerRecord, CategoryOperation]] = []
        for record in records:
            op = await self._decode(record)
            if op is not None:
                decoded.append((record, op))
        if not decoded:
            return

        first = decoded[0][0]
        bind_context(topic=first.topic, partition=first.partition, offset=first.offset)
        try:
            outcomes = await self.dispatcher.dispatch_bulk(
                [op for _, op in decoded], self._deadline()
            )
            for (record, _), outcome in zip(decoded, outcomes, strict=True):
                if outcome.error is not None:
                    await self._fail(record, outcome.error)
                else:
                    self._record(record.topic, "committed")
        finally:
            unbind_context(*MESSAGE_CONTEXT_KEYS)

    async def _decode(self, record: ConsumerRecord) -> CategoryOperation | None:
        """Decode a message, handling tombstones and decode failures in place."""
        if record.value is None:
            # Tombstones follow deletes for log compaction; the delete already applied
            logger.debug(
                f"Skipping tombstone at {record.topic}[{record.partition}]@{record.offset}"
            )
            self._record(record.topic, "committed")
            return None
        try:
            return self.decoder.decode(record.value)
        except DecodeError as e:
            logger.error(
                f"Dropping undecodable message at {record.topic}[{record.partition}]"
                f"@{record.offset} ({len(record.value)} bytes): {e}"
            )
            self._record(record.topic, "decode_error")
            await self._publish_dead_letter(record, e)
            return None

    async def _fail(self, record: ConsumerRecord, error: SyncError) -> None:
        self._record(record.topic, "failed")
        await self._publish_dead_letter(record, error)

    async def _publish_dead_letter(self, record: ConsumerRecord, error: SyncError) -> None:
        if self.dead_letter is None:
            return
        await self.dead_letter.publish(record, error)
        self._record(record.topic, "dead_lettered")

    async def _commit(self, worker: PartitionWorker, offset: int) -> None:
        try:
            await self.consumer.commit({worker.tp: offset})
        except (CommitFailedError, IllegalStateError) as e:
            # Partition is being reassigned; the new owner redelivers from the last commit
            logger.warning(f"Commit of {worker.tp}@{offset} rejected: {e}")
            return
        worker.committed = offset

    def _resume(self, worker: PartitionWorker) -> None:
        if self._consumer is None:
            return
        self._consumer.resume(worker.tp)
        worker.paused = False
        logger.info(f"Resumed {worker.tp}")

    def _record(self, topic: str, status: str) -> None:
        if self.metrics is not None:
            self.metrics.record_message(topic, status)

    # ==================== Error handling ====================

    async def _drain_errors(self) -> None:
        while True:
            error = await self._errors.get()
            if self._failure is not None:
                logger.error(f"Additional consumer error after failure: {error!r}")
                continue

            self._failure = error
            self._set_status(RunnerStatus.ERROR)
            if isinstance(error, SyncError):
                logger.error(f"Consumer runner failed: {error}", extra=error.to_dict())
            else:
                logger.error(f"Consumer runner failed: {error!r}", exc_info=error)
            await self._halt()
            self._done.set()

    async def _halt(self) -> None:
        current = asyncio.current_task()
        if self._fetch_task is not None and self._fetch_task is not current:
            self._fetch_task.cancel()
            await asyncio.gather(self._fetch_task, return_exceptions=True)
            self._fetch_task = None
        workers = list(self._workers.values())
        self._workers.clear()
        await self._cancel_workers(workers)
