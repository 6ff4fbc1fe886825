"""Worker service entry point: consume tasks until SIGINT/SIGTERM."""
import asyncio
import signal

from loguru import logger

from image_processor.consumer import TaskConsumerPool
from image_processor.db import Database
from image_processor.exceptions import ServiceUnavailable
from image_processor.logging_config import setup_logger
from image_processor.repository import ImageRepository, RetryPolicy
from image_processor.settings import Settings
from image_processor.storage import get_blob_store
from image_processor.worker import TaskProcessor


async def wait_for_shutdown(pool: TaskConsumerPool, stop: asyncio.Event) -> bool:
    """
    Wait for a shutdown signal or for every worker to exit, whichever comes first.

    Returns:
        True when the workers exited on their own
    """
    signal_task = asyncio.create_task(stop.wait())
    workers_task = asyncio.create_task(pool.wait())
    done, pending = await asyncio.wait({signal_task, workers_task}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    if workers_task in done:
        logger.error("All workers exited, shutting down")
        return True
    logger.info("Shutdown signal received, stopping workers")
    return False


async def run_worker(settings: Settings) -> None:
    logger.info("Starting image worker")
    database = Database(settings.master_dsn, settings.slave_dsn)
    repository = ImageRepository(
        database,
        RetryPolicy(settings.DB_WRITE_ATTEMPTS, settings.DB_WRITE_DELAY, settings.DB_WRITE_BACKOFF),
    )
    storage = get_blob_store(settings)

    try:
        await repository.connect(settings.DB_CONNECT_ATTEMPTS, settings.DB_CONNECT_DELAY)
        await storage.init()
        logger.info("Blob store initialized")

        processor = TaskProcessor(repository, storage, settings.WATERMARK_TEXT)
        pool = TaskConsumerPool.from_settings(settings, processor)

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        await pool.start()
        await wait_for_shutdown(pool, stop)
        await pool.stop()
    finally:
        await database.dispose()
    logger.info("Image worker stopped")


def main():
    settings = Settings()
    setup_logger(settings.LOG_LEVEL)
    try:
        asyncio.run(run_worker(settings))
    except ServiceUnavailable as e:
        logger.critical(f"Startup failed: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
