"""Consumer pool delivery semantics over an in-memory consumer."""
import asyncio
from types import SimpleNamespace

from aiokafka import TopicPartition
from aiokafka.errors import KafkaConnectionError

from image_processor.consumer import TaskConsumerPool
from image_processor.worker_main import wait_for_shutdown

TOPIC = "image-tasks"
TP = TopicPartition(TOPIC, 0)


class FakeConsumer:
    """One partition, a list of values, a fetch position that `seek` moves."""

    def __init__(self, values, fetch_errors=0, fatal_error=None):
        self.messages = [
            SimpleNamespace(topic=TOPIC, partition=0, offset=i, key=b"img", value=v)
            for i, v in enumerate(values)
        ]
        self.position = 0
        self.fetch_errors = fetch_errors
        self.fatal_error = fatal_error
        self.commits = []
        self.seeks = []
        self.subscribed = None
        self.started = False
        self.stopped = False

    def subscribe(self, topics, listener=None):
        self.subscribed = (topics, listener)

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    async def getmany(self, timeout_ms=0, max_records=None):
        await asyncio.sleep(0)
        if self.fatal_error is not None:
            raise self.fatal_error
        if self.fetch_errors:
            self.fetch_errors -= 1
            raise KafkaConnectionError()
        if self.position >= len(self.messages):
            await asyncio.sleep(timeout_ms / 1000)
            return {}
        msg = self.messages[self.position]
        self.position += 1
        return {TP: [msg]}

    async def commit(self, offsets):
        self.commits.append(dict(offsets))

    def seek(self, tp, offset):
        self.seeks.append((tp, offset))
        self.position = offset


class FakeProcessor:
    def __init__(self, fail_once=(), hang=False):
        self.seen = []
        self.fail_once = set(fail_once)
        self.hang = hang

    async def process(self, value):
        self.seen.append(value)
        if self.hang:
            await asyncio.sleep(60)
        if value in self.fail_once:
            self.fail_once.discard(value)
            raise RuntimeError(f"cannot process {value!r}")


def _pool(processor, consumer, **kwargs) -> TaskConsumerPool:
    options = dict(worker_count=2, error_backoff=0, fetch_timeout_ms=5, shutdown_timeout=1.0)
    options.update(kwargs)
    return TaskConsumerPool(processor, ["localhost:9092"], TOPIC, consumer=consumer, **options)


async def _until(condition, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        assert loop.time() < deadline, "condition not met in time"
        await asyncio.sleep(0.01)


async def test_commits_after_each_success():
    consumer = FakeConsumer([b"m0", b"m1", b"m2"])
    processor = FakeProcessor()
    pool = _pool(processor, consumer)

    await pool.start()
    await _until(lambda: len(consumer.commits) == 3)
    await pool.stop()

    assert consumer.subscribed[0] == [TOPIC]
    assert processor.seen == [b"m0", b"m1", b"m2"]
    assert consumer.commits == [{TP: 1}, {TP: 2}, {TP: 3}]
    assert consumer.stopped


async def test_failed_message_is_redelivered_before_later_ones():
    consumer = FakeConsumer([b"m0", b"m1"])
    processor = FakeProcessor(fail_once={b"m0"})
    pool = _pool(processor, consumer)

    await pool.start()
    await _until(lambda: len(consumer.commits) == 2)
    await pool.stop()

    assert consumer.seeks == [(TP, 0)]
    assert processor.seen == [b"m0", b"m0", b"m1"]
    # Offset 0 is never skipped by a commit
    assert consumer.commits == [{TP: 1}, {TP: 2}]
    assert pool._rewind_to == {}


async def test_messages_past_rewind_point_are_dropped():
    consumer = FakeConsumer([])
    processor = FakeProcessor()
    pool = _pool(processor, consumer)
    pool._rewind_to[TP] = 3

    stale = SimpleNamespace(topic=TOPIC, partition=0, offset=5, key=b"img", value=b"m5")
    await pool._handle(0, TP, stale)

    assert processor.seen == []
    assert consumer.commits == []
    assert pool._rewind_to == {TP: 3}


async def test_fetch_errors_do_not_stop_workers():
    consumer = FakeConsumer([b"m0"], fetch_errors=2)
    processor = FakeProcessor()
    pool = _pool(processor, consumer, worker_count=1)

    await pool.start()
    await _until(lambda: consumer.commits == [{TP: 1}])
    await pool.stop()

    assert processor.seen == [b"m0"]


async def test_stop_cancels_stuck_workers():
    consumer = FakeConsumer([b"m0"])
    processor = FakeProcessor(hang=True)
    pool = _pool(processor, consumer, worker_count=1, shutdown_timeout=0.05)

    await pool.start()
    await _until(lambda: processor.seen == [b"m0"])
    await pool.stop()

    assert consumer.commits == []
    assert consumer.stopped
    assert pool._workers == []


async def test_revoked_partitions_forget_rewinds():
    consumer = FakeConsumer([])
    pool = _pool(FakeProcessor(), consumer)
    await pool.start()
    listener = consumer.subscribed[1]

    pool._rewind_to[TP] = 7
    await listener.on_partitions_revoked({TP})
    await pool.stop()

    assert pool._rewind_to == {}


async def test_wait_returns_when_every_worker_crashes():
    consumer = FakeConsumer([], fatal_error=RuntimeError("consumer closed"))
    pool = _pool(FakeProcessor(), consumer)
    await pool.start()

    await asyncio.wait_for(pool.wait(), timeout=2.0)
    assert all(task.done() for task in pool._workers)
    await pool.stop()


async def test_worker_exits_when_pool_dies():
    consumer = FakeConsumer([], fatal_error=RuntimeError("consumer closed"))
    pool = _pool(FakeProcessor(), consumer)
    await pool.start()

    crashed = await asyncio.wait_for(wait_for_shutdown(pool, asyncio.Event()), timeout=2.0)
    await pool.stop()

    assert crashed
    assert consumer.stopped


async def test_signal_stops_pool_gracefully():
    consumer = FakeConsumer([b"m0"])
    processor = FakeProcessor()
    pool = _pool(processor, consumer)
    await pool.start()
    await _until(lambda: consumer.commits == [{TP: 1}])

    stop = asyncio.Event()
    stop.set()
    crashed = await wait_for_shutdown(pool, stop)

    # Workers are still running until the pool is told to stop
    assert not crashed
    assert not any(task.done() for task in pool._workers)
    await pool.stop()
    assert consumer.stopped
