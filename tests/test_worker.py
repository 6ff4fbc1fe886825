"""Worker message processing against SQLite and the filesystem blob store."""
from io import BytesIO
from unittest.mock import AsyncMock, patch

import pytest
from PIL import Image as PILImage

from image_processor.exceptions import (
    BusConsumeError,
    ImageNotFound,
    MetadataWriteError,
    UnknownActionError,
)
from image_processor.models import Image, ImageStatus
from image_processor.schemas import TaskMessage
from image_processor.worker import processed_object_key


def _payload(image_id: str, actions) -> bytes:
    return TaskMessage(image_id=image_id, actions=actions).model_dump_json().encode("utf-8")


async def _pending_image(repository, storage, data: bytes, image_id: str = "img-1") -> Image:
    raw_key = f"raw/{image_id}/original"
    await storage.put(raw_key, BytesIO(data), len(data), "image/jpeg")
    image = Image(
        id=image_id,
        filename="photo.jpg",
        file_size=len(data),
        raw_image_object_key=raw_key,
        processed_image_object_key="",
        actions=["Resize"],
        status=ImageStatus.PENDING.value,
    )
    await repository.save(image)
    return image


def test_processed_key_is_unique():
    a = processed_object_key("img-1")
    b = processed_object_key("img-1")
    assert a.startswith("processed/img-1/")
    assert a.endswith(".jpg")
    assert a != b


async def test_process_marks_done(processor, repository, storage, sample_jpeg):
    await _pending_image(repository, storage, sample_jpeg)

    key = await processor.process(_payload("img-1", ["Resize", "Grayscale"]))

    image = await repository.get_by_id("img-1")
    assert image.status == ImageStatus.DONE.value
    assert image.processed_image_object_key == key
    with await storage.get(key) as stream:
        result = PILImage.open(BytesIO(stream.read()))
    assert result.format == "JPEG"
    assert result.mode == "L"
    assert result.size == (100, 100)  # Already within 1600x900
    # The raw object is left in place
    assert await storage.exists("raw/img-1/original")


async def test_malformed_payload(processor):
    with pytest.raises(BusConsumeError):
        await processor.process(b"{not json")
    with pytest.raises(BusConsumeError):
        await processor.process(b'{"actions": ["Resize"]}')


async def test_missing_record(processor):
    with pytest.raises(ImageNotFound):
        await processor.process(_payload("ghost", ["Resize"]))


async def test_unknown_action_leaves_image_pending(processor, repository, storage, sample_jpeg):
    await _pending_image(repository, storage, sample_jpeg)

    with pytest.raises(UnknownActionError):
        await processor.process(_payload("img-1", ["Resize", "Sepia"]))

    image = await repository.get_by_id("img-1")
    assert image.status == ImageStatus.PENDING.value
    assert image.processed_image_object_key == ""


async def test_metadata_failure_removes_processed_object(processor, repository, storage, sample_jpeg):
    await _pending_image(repository, storage, sample_jpeg)
    stored = []
    original_put = storage.put

    async def recording_put(key, reader, size, content_type):
        stored.append(key)
        await original_put(key, reader, size, content_type)

    with patch.object(storage, "put", side_effect=recording_put), patch.object(
        repository, "update_processed", AsyncMock(side_effect=MetadataWriteError("db down"))
    ):
        with pytest.raises(MetadataWriteError):
            await processor.process(_payload("img-1", ["Resize"]))

    assert len(stored) == 1
    assert not await storage.exists(stored[0])
    assert (await repository.get_by_id("img-1")).status == ImageStatus.PENDING.value


async def test_redelivery_replaces_processed_key(processor, repository, storage, sample_jpeg):
    await _pending_image(repository, storage, sample_jpeg)
    payload = _payload("img-1", ["Grayscale"])

    first = await processor.process(payload)
    second = await processor.process(payload)

    assert first != second
    image = await repository.get_by_id("img-1")
    assert image.status == ImageStatus.DONE.value
    assert image.processed_image_object_key == second
