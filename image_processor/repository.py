"""Metadata store gateway: image records in the relational database."""
from dataclasses import dataclass
from typing import Optional

from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from image_processor.db import Database, create_tables
from image_processor.exceptions import (
    ImageNotFound,
    MetadataReadError,
    MetadataWriteError,
    ServiceUnavailable,
)
from image_processor.models import Image, ImageStatus


@dataclass
class RetryPolicy:
    """Bounded exponential retry for writes."""
    attempts: int = 3
    delay: float = 5.0
    backoff: float = 2.0

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.delay, exp_base=self.backoff),
            retry=retry_if_exception_type(SQLAlchemyError),
            reraise=True,
        )


class ImageRepository:
    """Persist and query image records.

    Writes go to the master engine; reads go to the replica when one is
    configured. `save` and `delete_by_id` retry on database errors,
    `update_processed` does not (redelivery makes it idempotent).
    """

    def __init__(self, database: Database, retry_policy: Optional[RetryPolicy] = None):
        self.database = database
        self.retry_policy = retry_policy or RetryPolicy()

    def _upsert(self, values: dict):
        dialect = self.database.master.dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert(Image).values(**values)
        return stmt.on_conflict_do_update(
            index_elements=[Image.id],
            set_={key: stmt.excluded[key] for key in values if key != "id"},
        )

    async def save(self, image: Image) -> None:
        """Insert the record, or replace all fields when the id already exists."""
        values = {
            "id": image.id,
            "filename": image.filename,
            "file_size": image.file_size,
            "raw_image_object_key": image.raw_image_object_key,
            "processed_image_object_key": image.processed_image_object_key or "",
            "actions": list(image.actions),
            "status": image.status,
        }
        try:
            async for attempt in self.retry_policy.retrying():
                with attempt:
                    async with self.database.write_session() as session:
                        await session.execute(self._upsert(values))
                        await session.commit()
        except SQLAlchemyError as exc:
            logger.error(f"Failed to save image {image.id}: {exc}")
            raise MetadataWriteError(f"Failed to save image {image.id}") from exc
        logger.info(f"Saved metadata for image {image.id}")

    async def get_by_id(self, image_id: str) -> Image:
        """Read one record. Raises ImageNotFound when no row matches."""
        try:
            async with self.database.read_session() as session:
                result = await session.execute(select(Image).where(Image.id == image_id))
                image = result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise MetadataReadError(f"Failed to get image {image_id}") from exc

        if image is None:
            raise ImageNotFound(f"Image {image_id} not found")
        return image

    async def delete_by_id(self, image_id: str) -> None:
        """Delete one record. Raises ImageNotFound when zero rows were affected."""
        try:
            async for attempt in self.retry_policy.retrying():
                with attempt:
                    async with self.database.write_session() as session:
                        result = await session.execute(delete(Image).where(Image.id == image_id))
                        await session.commit()
        except SQLAlchemyError as exc:
            logger.error(f"Failed to delete image {image_id}: {exc}")
            raise MetadataWriteError(f"Failed to delete image {image_id}") from exc

        if result.rowcount == 0:
            raise ImageNotFound(f"Image {image_id} not found")
        logger.info(f"Deleted metadata for image {image_id}")

    async def update_processed(self, image_id: str, processed_key: str) -> None:
        """Mark the image Done and point it at its processed object in one statement."""
        try:
            async with self.database.write_session() as session:
                await session.execute(
                    update(Image)
                    .where(Image.id == image_id)
                    .values(status=ImageStatus.DONE.value, processed_image_object_key=processed_key)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise MetadataWriteError(f"Failed to update image {image_id}") from exc

    async def ping(self) -> None:
        """Open a connection to the master; raises SQLAlchemyError when unreachable."""
        async with self.database.master.connect() as conn:
            await conn.execute(select(1))

    async def connect(self, attempts: int = 5, delay: float = 3.0) -> None:
        """Wait for the database to accept connections, then create missing tables."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_fixed(delay),
                retry=retry_if_exception_type((SQLAlchemyError, OSError)),
            ):
                with attempt:
                    n = attempt.retry_state.attempt_number
                    if n > 1:
                        logger.warning(f"Database not ready yet (attempt {n}/{attempts})")
                    await self.ping()
        except RetryError as exc:
            raise ServiceUnavailable(
                f"Database unreachable after {attempts} attempts"
            ) from exc.last_attempt.exception()

        await create_tables(self.database.master)
        logger.info("Database ready")
