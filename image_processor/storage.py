"""Blob store gateway interface and implementations."""
from abc import ABC, abstractmethod
import asyncio
from pathlib import Path
from typing import BinaryIO, Iterator

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_fixed

from image_processor.exceptions import (
    ObjectNotFound,
    ServiceUnavailable,
    StorageReadError,
    StorageWriteError,
)
from image_processor.settings import Settings

CHUNK_SIZE = 64 * 1024
NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


class BlobStream:
    """Readable stream over a stored object. The caller owns closing it."""

    def __init__(self, raw):
        self._raw = raw

    def read(self) -> bytes:
        return self._raw.read()

    def iter_chunks(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        while True:
            chunk = self._raw.read(chunk_size)
            if not chunk:
                break
            yield chunk

    def close(self) -> None:
        self._raw.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class BlobStore(ABC):
    """Abstract blob store (S3-style)."""

    async def init(self) -> None:
        """Prepare the store for use. Default: nothing to do."""

    @abstractmethod
    async def put(self, key: str, reader: BinaryIO, size: int, content_type: str) -> None:
        """
        Upload exactly `size` bytes read from `reader`.

        Args:
            key: Object key (e.g., "raw/<image_id>/<uuid>")
            reader: Binary file-like object positioned at the start of the content
            size: Content length in bytes
            content_type: MIME type stored with the object

        Raises:
            StorageWriteError: On transport or server errors
        """
        pass

    @abstractmethod
    async def get(self, key: str) -> BlobStream:
        """
        Open a readable stream on an object.

        Raises:
            ObjectNotFound: If the key does not exist
            StorageReadError: On transport or server errors
        """
        pass

    @abstractmethod
    async def remove(self, key: str) -> None:
        """
        Delete an object.

        Raises:
            ObjectNotFound: If the key does not exist
            StorageWriteError: On any other failure
        """
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if key exists in storage."""
        pass


class LocalBlobStore(BlobStore):
    """Local filesystem blob store (for development and tests)."""

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)

    async def init(self) -> None:
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, key: str) -> Path:
        """Get full filesystem path for a key."""
        # Sanitize key to prevent directory traversal
        key = key.lstrip("/")
        if ".." in Path(key).parts:
            raise ValueError(f"Invalid object key: {key}")
        return self.base_path / key

    async def put(self, key: str, reader: BinaryIO, size: int, content_type: str) -> None:
        full_path = self._get_full_path(key)
        try:
            data = reader.read(size)
            if len(data) != size:
                raise StorageWriteError(f"Short read for {key}: expected {size} bytes, got {len(data)}")
            full_path.parent.mkdir(parents=True, exist_ok=True)
            full_path.write_bytes(data)
        except OSError as exc:
            raise StorageWriteError(f"Failed to store object {key}") from exc
        logger.info(f"Object {key} stored, size: {size} bytes")

    async def get(self, key: str) -> BlobStream:
        full_path = self._get_full_path(key)
        if not key or not full_path.is_file():
            raise ObjectNotFound(f"Object {key} not found")
        try:
            return BlobStream(open(full_path, "rb"))
        except OSError as exc:
            raise StorageReadError(f"Failed to open object {key}") from exc

    async def remove(self, key: str) -> None:
        full_path = self._get_full_path(key)
        if not key or not full_path.is_file():
            raise ObjectNotFound(f"Object {key} not found")
        try:
            full_path.unlink()
        except OSError as exc:
            raise StorageWriteError(f"Failed to remove object {key}") from exc
        logger.info(f"Object {key} removed")

    async def exists(self, key: str) -> bool:
        return bool(key) and self._get_full_path(key).is_file()


class MinioBlobStore(BlobStore):
    """MinIO blob store over the S3 API (boto3).

    boto3 clients are thread-safe, so blocking calls run in worker threads
    via asyncio.to_thread and a single client serves the whole process.
    """

    def __init__(
        self,
        endpoint_url: str,
        bucket: str,
        access_key: str,
        secret_key: str,
        connect_attempts: int = 5,
        connect_delay: float = 3.0,
    ):
        self.endpoint_url = endpoint_url
        self.bucket = bucket
        self.access_key = access_key
        self.secret_key = secret_key
        self.connect_attempts = connect_attempts
        self.connect_delay = connect_delay
        self.client = None

    def _make_client(self):
        return boto3.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=self.access_key,
            aws_secret_access_key=self.secret_key,
            region_name="us-east-1",
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": "path"},
                connect_timeout=5,
                read_timeout=60,
                retries={"max_attempts": 0},
            ),
        )

    def _ensure_bucket(self) -> None:
        try:
            self.client.head_bucket(Bucket=self.bucket)
            logger.info(f"Bucket {self.bucket} already exists")
        except ClientError as exc:
            if _error_code(exc) not in {"404", "NoSuchBucket", "NotFound"}:
                raise
            self.client.create_bucket(Bucket=self.bucket)
            logger.info(f"Bucket {self.bucket} created")

    async def init(self) -> None:
        """Connect with bounded retry, then make sure the bucket exists."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.connect_attempts),
                wait=wait_fixed(self.connect_delay),
                retry=retry_if_exception_type((BotoCoreError, ClientError)),
            ):
                with attempt:
                    n = attempt.retry_state.attempt_number
                    if n > 1:
                        logger.warning(f"MinIO not ready yet (attempt {n}/{self.connect_attempts})")
                    if self.client is None:
                        self.client = self._make_client()
                    await asyncio.to_thread(self._ensure_bucket)
        except RetryError as exc:
            raise ServiceUnavailable(
                f"Could not connect to MinIO after {self.connect_attempts} attempts"
            ) from exc.last_attempt.exception()

    async def put(self, key: str, reader: BinaryIO, size: int, content_type: str) -> None:
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=reader.read(size),
                ContentLength=size,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error(f"Failed to upload object {key}: {exc}")
            raise StorageWriteError(f"Failed to upload object {key}") from exc
        logger.info(f"Object {key} uploaded to MinIO, size: {size} bytes")

    async def get(self, key: str) -> BlobStream:
        try:
            response = await asyncio.to_thread(self.client.get_object, Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in NOT_FOUND_CODES:
                raise ObjectNotFound(f"Object {key} not found") from exc
            raise StorageReadError(f"Failed to get object {key}") from exc
        except BotoCoreError as exc:
            raise StorageReadError(f"Failed to get object {key}") from exc
        return BlobStream(response["Body"])

    async def remove(self, key: str) -> None:
        if not key:
            raise ObjectNotFound("Object key cannot be empty")
        # S3 DeleteObject succeeds for missing keys, so check first
        if not await self.exists(key):
            raise ObjectNotFound(f"Object {key} not found")
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageWriteError(f"Failed to remove object {key}") from exc
        logger.info(f"Object {key} removed from MinIO")

    async def exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=key)
            return True
        except ClientError as exc:
            if _error_code(exc) in NOT_FOUND_CODES:
                return False
            raise StorageReadError(f"Failed to stat object {key}") from exc
        except BotoCoreError as exc:
            raise StorageReadError(f"Failed to stat object {key}") from exc


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def get_blob_store(settings: Settings) -> BlobStore:
    """Factory function to get the blob store based on settings."""
    if settings.STORAGE_TYPE == "local":
        return LocalBlobStore(settings.STORAGE_BASE_PATH)
    elif settings.STORAGE_TYPE == "minio":
        return MinioBlobStore(
            endpoint_url=settings.minio_endpoint_url,
            bucket=settings.BUCKET_NAME,
            access_key=settings.MINIO_ROOT_USER,
            secret_key=settings.MINIO_ROOT_PASSWORD,
            connect_attempts=settings.STORAGE_CONNECT_ATTEMPTS,
            connect_delay=settings.STORAGE_CONNECT_DELAY,
        )
    else:
        raise ValueError(f"Unknown storage type: {settings.STORAGE_TYPE}")
