"""Per-message processing for the worker service."""
import asyncio
import time
import uuid
from io import BytesIO

from loguru import logger
from pydantic import ValidationError

from image_processor.exceptions import BusConsumeError, ImageProcessorError, StorageReadError
from image_processor.image_utils import DEFAULT_WATERMARK_TEXT, apply_actions, sniff_content_type
from image_processor.repository import ImageRepository
from image_processor.schemas import TaskMessage
from image_processor.storage import BlobStore


def processed_object_key(image_id: str) -> str:
    """Fresh key for a processed object; unique even when a task is redelivered."""
    return f"processed/{image_id}/{uuid.uuid4()}_{int(time.time())}.jpg"


class TaskProcessor:
    """Turn one task message into a processed blob and a Done record.

    Every failure raises; the consumer pool leaves the message uncommitted so
    the broker delivers it again.
    """

    def __init__(
        self,
        repository: ImageRepository,
        storage: BlobStore,
        watermark_text: str = DEFAULT_WATERMARK_TEXT,
    ):
        self.repository = repository
        self.storage = storage
        self.watermark_text = watermark_text

    @staticmethod
    def parse_task(value: bytes) -> TaskMessage:
        """Decode a task payload. Raises BusConsumeError for malformed payloads."""
        try:
            return TaskMessage.model_validate_json(value)
        except ValidationError as exc:
            raise BusConsumeError(f"Malformed task payload: {exc.error_count()} errors") from exc

    async def _read_object(self, key: str) -> bytes:
        stream = await self.storage.get(key)
        try:
            return await asyncio.to_thread(stream.read)
        except OSError as exc:
            raise StorageReadError(f"Failed to read object {key}") from exc
        finally:
            stream.close()

    async def process(self, value: bytes) -> str:
        """
        Process one task payload.

        Returns:
            The processed object key now referenced by the image record

        Raises:
            ImageProcessorError: Any failure; nothing is marked Done in that case
        """
        task = self.parse_task(value)
        logger.info(f"Processing image {task.image_id} with actions {task.actions}")

        image = await self.repository.get_by_id(task.image_id)
        original = await self._read_object(image.raw_image_object_key)

        # Transformations are CPU-bound; keep the event loop free for the other workers
        processed = await asyncio.to_thread(apply_actions, task.actions, original, self.watermark_text)
        content_type = sniff_content_type(processed)

        key = processed_object_key(task.image_id)
        await self.storage.put(key, BytesIO(processed), len(processed), content_type)

        try:
            await self.repository.update_processed(task.image_id, key)
        except ImageProcessorError:
            try:
                await self.storage.remove(key)
            except ImageProcessorError as cleanup_exc:
                logger.critical(f"Failed to clean up {key} after metadata error: {cleanup_exc}")
            raise

        logger.info(
            f"Processed image {task.image_id}, size: {len(processed)} bytes, saved as {key}"
        )
        return key
