"""Task bus consumer pool: N workers sharing one Kafka subscription.

Delivery is at-least-once with manual commits. Each worker loops
fetch -> process -> commit on the shared consumer; a message is committed
only after its processing succeeded. A failed message rewinds its partition
so it is fetched again, and messages of that partition fetched before the
rewind are dropped and refetched in order.

Workers hold a per-partition lock while handling a message. Locks are
requested in fetch order, so one partition is worked on by one worker at a
time, in offset order, and a commit never covers an unprocessed offset.
"""
import asyncio
from typing import Dict, List, Optional

from aiokafka import AIOKafkaConsumer, ConsumerRebalanceListener, TopicPartition
from aiokafka.errors import KafkaError
from loguru import logger

from image_processor.settings import Settings
from image_processor.worker import TaskProcessor


class _RewindResetListener(ConsumerRebalanceListener):
    """Forget pending rewinds for partitions this consumer no longer owns."""

    def __init__(self, pool: "TaskConsumerPool"):
        self.pool = pool

    async def on_partitions_revoked(self, revoked):
        for tp in revoked:
            self.pool._rewind_to.pop(tp, None)
        if revoked:
            logger.info(f"Partitions revoked: {sorted(str(tp) for tp in revoked)}")

    async def on_partitions_assigned(self, assigned):
        if assigned:
            logger.info(f"Partitions assigned: {sorted(str(tp) for tp in assigned)}")


class TaskConsumerPool:
    """Fixed pool of fetch-dispatch-commit loops over one consumer group subscription."""

    def __init__(
        self,
        processor: TaskProcessor,
        bootstrap_servers: List[str],
        topic: str,
        group_id: str = "image-workers",
        worker_count: int = 5,
        shutdown_timeout: float = 30.0,
        error_backoff: float = 1.0,
        fetch_timeout_ms: int = 1000,
        consumer=None,
    ):
        self.processor = processor
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.group_id = group_id
        self.worker_count = worker_count
        self.shutdown_timeout = shutdown_timeout
        self.error_backoff = error_backoff
        self.fetch_timeout_ms = fetch_timeout_ms
        self.consumer = consumer

        self._stopping = asyncio.Event()
        self._workers: List[asyncio.Task] = []
        self._partition_locks: Dict[TopicPartition, asyncio.Lock] = {}
        self._rewind_to: Dict[TopicPartition, int] = {}

    @classmethod
    def from_settings(cls, settings: Settings, processor: TaskProcessor) -> "TaskConsumerPool":
        return cls(
            processor=processor,
            bootstrap_servers=settings.kafka_brokers,
            topic=settings.KAFKA_TASK_TOPIC,
            group_id=settings.KAFKA_CONSUMER_GROUP,
            worker_count=settings.WORKER_COUNT,
            shutdown_timeout=settings.WORKER_SHUTDOWN_TIMEOUT,
            error_backoff=settings.WORKER_FETCH_ERROR_BACKOFF,
        )

    def _make_consumer(self) -> AIOKafkaConsumer:
        return AIOKafkaConsumer(
            bootstrap_servers=self.bootstrap_servers,
            group_id=self.group_id,
            client_id="image-processor-worker",
            enable_auto_commit=False,  # Commit only after successful processing
            auto_offset_reset="earliest",
            max_partition_fetch_bytes=10 * 1024 * 1024,
        )

    async def start(self) -> None:
        """Open the subscription and launch the workers."""
        if self.consumer is None:
            self.consumer = self._make_consumer()
        self.consumer.subscribe([self.topic], listener=_RewindResetListener(self))
        await self.consumer.start()
        logger.info(
            f"Consuming {self.topic} as group '{self.group_id}' with {self.worker_count} workers"
        )

        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"image-worker-{i}")
            for i in range(self.worker_count)
        ]

    async def wait(self) -> None:
        """Block until every worker has returned. Workers only return on stop or on a crash."""
        if self._workers:
            # asyncio.wait leaves the workers running if this waiter is cancelled
            done, _ = await asyncio.wait(self._workers)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.opt(exception=task.exception()).error(f"{task.get_name()} crashed: {task.exception()}")

    async def stop(self) -> None:
        """Stop at the next fetch boundary; force-close after the shutdown timeout."""
        self._stopping.set()
        if self._workers:
            done, pending = await asyncio.wait(self._workers, timeout=self.shutdown_timeout)
            if pending:
                logger.warning(f"{len(pending)} workers still busy after {self.shutdown_timeout}s, cancelling")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            self._workers = []

        if self.consumer is not None:
            await self.consumer.stop()
            logger.info("Kafka consumer stopped")

    async def _worker(self, worker_id: int) -> None:
        logger.info(f"Worker {worker_id} started and waiting for messages")
        while not self._stopping.is_set():
            try:
                batch = await self.consumer.getmany(timeout_ms=self.fetch_timeout_ms, max_records=1)
            except asyncio.CancelledError:
                logger.info(f"Worker {worker_id}: cancelled")
                raise
            except KafkaError as e:
                logger.error(f"Worker {worker_id}: error fetching message: {e}")
                await asyncio.sleep(self.error_backoff)
                continue

            for tp, records in batch.items():
                for msg in records:
                    await self._handle(worker_id, tp, msg)
        logger.info(f"Worker {worker_id} stopped")

    async def _handle(self, worker_id: int, tp: TopicPartition, msg) -> None:
        lock = self._partition_locks.setdefault(tp, asyncio.Lock())
        async with lock:
            rewind = self._rewind_to.get(tp)
            if rewind is not None:
                if msg.offset > rewind:
                    logger.debug(f"Worker {worker_id}: dropping {tp}@{msg.offset}, partition rewound to {rewind}")
                    return
                if msg.offset == rewind:
                    del self._rewind_to[tp]

            logger.info(
                f"Worker {worker_id} received message: topic={msg.topic}, "
                f"partition={msg.partition}, offset={msg.offset}, key={msg.key!r}"
            )
            if not await self._process(worker_id, msg):
                await self._rewind(worker_id, tp, msg.offset)
                return

            try:
                await self.consumer.commit({tp: msg.offset + 1})
            except KafkaError as e:
                logger.error(f"Worker {worker_id}: failed to commit {tp}@{msg.offset}: {e}")
            else:
                logger.info(f"Worker {worker_id} processed and committed {tp}@{msg.offset}")

    async def _process(self, worker_id: int, msg) -> bool:
        try:
            await self.processor.process(msg.value)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Unexpected errors are treated like any failure: leave the message uncommitted
            logger.opt(exception=e).error(
                f"Worker {worker_id} failed to process {msg.topic}[{msg.partition}]@{msg.offset}: {e}"
            )
            return False
        return True

    async def _rewind(self, worker_id: int, tp: TopicPartition, offset: int) -> None:
        await asyncio.sleep(self.error_backoff)
        try:
            self.consumer.seek(tp, offset)
        except (KafkaError, AssertionError) as e:
            # Partition no longer assigned; its next owner starts from the committed offset
            logger.warning(f"Worker {worker_id}: could not rewind {tp} to {offset}: {e}")
            return
        self._rewind_to[tp] = offset
