"""Shared fixtures: SQLite metadata store, filesystem blob store, recording producer."""
from typing import List, Optional

import pytest
from httpx import ASGITransport, AsyncClient

from image_processor.app import create_app
from image_processor.db import Database, create_tables
from image_processor.exceptions import BusPublishError
from image_processor.repository import ImageRepository, RetryPolicy
from image_processor.schemas import TaskMessage
from image_processor.service import ImageService
from image_processor.settings import Settings
from image_processor.storage import LocalBlobStore
from image_processor.worker import TaskProcessor
from tests.fixtures.generate_sample import make_image_bytes


class RecordingProducer:
    """Stands in for TaskProducer; keeps published tasks in memory."""

    def __init__(self):
        self.published: List[TaskMessage] = []
        self.error: Optional[Exception] = None

    async def publish(self, image_id: str, actions: List[str]) -> None:
        if self.error is not None:
            raise self.error
        self.published.append(TaskMessage(image_id=image_id, actions=list(actions)))

    def fail_with(self, error: Exception = None) -> None:
        self.error = error or BusPublishError("broker unavailable")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        MASTER_DSN=f"sqlite+aiosqlite:///{tmp_path / 'images.db'}",
        STORAGE_TYPE="local",
        STORAGE_BASE_PATH=str(tmp_path / "blobs"),
        DB_WRITE_DELAY=0,
        MAX_UPLOAD_BYTES=1024 * 1024,
    )


@pytest.fixture
async def database(settings):
    db = Database(settings.master_dsn)
    await create_tables(db.master)
    yield db
    await db.dispose()


@pytest.fixture
def repository(database):
    return ImageRepository(database, RetryPolicy(attempts=3, delay=0, backoff=2))


@pytest.fixture
async def storage(settings):
    store = LocalBlobStore(settings.STORAGE_BASE_PATH)
    await store.init()
    return store


@pytest.fixture
def producer():
    return RecordingProducer()


@pytest.fixture
def service(repository, storage, producer):
    return ImageService(repository, storage, producer)


@pytest.fixture
def processor(repository, storage):
    return TaskProcessor(repository, storage, watermark_text="test")


@pytest.fixture
async def client(settings, service):
    app = create_app(settings, service=service)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
def sample_jpeg():
    return make_image_bytes()
