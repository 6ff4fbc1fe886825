"""Upload, retrieve and delete orchestration across the three gateways."""
import uuid
from typing import BinaryIO, List, Optional, Protocol

from loguru import logger

from image_processor.exceptions import (
    ImagePending,
    ImageProcessingFailed,
    ImageProcessorError,
    InvalidImage,
)
from image_processor.models import DEFAULT_ACTIONS, Action, Image, ImageStatus
from image_processor.repository import ImageRepository
from image_processor.storage import BlobStream, BlobStore


class TaskPublisher(Protocol):
    async def publish(self, image_id: str, actions: List[str]) -> None: ...


def parse_actions(raw: Optional[str]) -> List[str]:
    """
    Parse a comma-separated action list from an upload form.

    Segments are trimmed, empty segments and names outside the closed set are
    dropped. An empty result falls back to [Resize].
    """
    valid = {action.value for action in Action}
    actions = []
    for part in (raw or "").split(","):
        name = part.strip(" \t\r\n")
        if name and name in valid:
            actions.append(name)
    return actions or list(DEFAULT_ACTIONS)


def raw_object_key(image_id: str) -> str:
    return f"raw/{image_id}/{uuid.uuid4()}"


class ImageService:
    """Orchestrates the blob store, metadata store and task bus.

    A successful upload produces, in order: the raw blob, the metadata row
    and the published task. A metadata failure removes the raw blob again;
    a publish failure leaves the Pending row and raw blob in place.
    """

    def __init__(self, repository: ImageRepository, storage: BlobStore, producer: TaskPublisher):
        self.repository = repository
        self.storage = storage
        self.producer = producer

    async def create(
        self,
        filename: str,
        reader: BinaryIO,
        size: int,
        content_type: str,
        actions: Optional[List[str]] = None,
    ) -> str:
        """
        Ingest an upload and queue it for processing.

        Args:
            filename: Client-supplied file name, must be non-empty
            reader: Binary file-like object holding the upload
            size: Upload size in bytes, must be positive
            content_type: MIME type stored with the raw object
            actions: Ordered action names; defaults to [Resize]

        Returns:
            The new image id

        Raises:
            InvalidImage: Before any side effect, on empty filename or non-positive size
            StorageWriteError: Raw object could not be stored
            MetadataWriteError: Row could not be saved (raw object removed)
            BusPublishError: Task could not be published (row and raw object remain)
        """
        if not filename:
            raise InvalidImage("filename is required")
        if size <= 0:
            raise InvalidImage("file size must be positive")

        image_id = str(uuid.uuid4())
        image = Image(
            id=image_id,
            filename=filename,
            file_size=size,
            raw_image_object_key=raw_object_key(image_id),
            processed_image_object_key="",
            actions=list(actions or DEFAULT_ACTIONS),
            status=ImageStatus.PENDING.value,
        )

        logger.info(f"Uploading image to storage: {image.raw_image_object_key}")
        await self.storage.put(image.raw_image_object_key, reader, size, content_type)

        logger.info(f"Saving image metadata: {image_id}")
        try:
            await self.repository.save(image)
        except ImageProcessorError:
            try:
                await self.storage.remove(image.raw_image_object_key)
            except ImageProcessorError as cleanup_exc:
                logger.critical(
                    f"Failed to clean up object {image.raw_image_object_key} after metadata error: {cleanup_exc}"
                )
            raise

        logger.info(f"Sending task for image: {image_id}")
        await self.producer.publish(image_id, image.actions)

        logger.info(f"Image {image_id} queued for processing")
        return image_id

    async def get_status(self, image_id: str) -> Image:
        """Return the full image record."""
        return await self.repository.get_by_id(image_id)

    async def get_processed(self, image_id: str) -> BlobStream:
        """
        Open the processed object of a Done image. The caller closes the stream.

        Raises:
            ImageNotFound: Unknown id, or the processed object is missing
            ImagePending: Processing has not finished
            ImageProcessingFailed: Processing failed
        """
        image = await self.repository.get_by_id(image_id)
        if image.status == ImageStatus.PENDING.value:
            raise ImagePending(f"Image {image_id} is pending")
        if image.status == ImageStatus.FAILED.value:
            raise ImageProcessingFailed(f"Image {image_id} processing failed")
        return await self.storage.get(image.processed_image_object_key)

    async def remove(self, image_id: str) -> None:
        """
        Cascade-delete: metadata row, then processed object, then raw object.

        The first failing step aborts the cascade; nothing is rolled back.
        """
        image = await self.repository.get_by_id(image_id)
        await self.repository.delete_by_id(image_id)
        # Pending images have no processed object yet
        if image.processed_image_object_key:
            await self.storage.remove(image.processed_image_object_key)
        await self.storage.remove(image.raw_image_object_key)
        logger.info(f"Image {image_id} deleted")
