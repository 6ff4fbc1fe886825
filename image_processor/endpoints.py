"""API endpoints for the image processing service."""
from io import BytesIO
from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, Request, UploadFile, status
from fastapi.responses import StreamingResponse

from image_processor.models import ImageStatus
from image_processor.schemas import ImageOut, MessageResponse, UploadResponse
from image_processor.service import ImageService, parse_actions

router = APIRouter()


def get_service(request: Request) -> ImageService:
    """Service built at startup and stored on the application state."""
    return request.app.state.service


@router.post("/upload", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_image(
    request: Request,
    image: Optional[UploadFile] = File(None),
    actions: Optional[str] = Form(None),
):
    """
    Upload an image and queue it for processing.

    `actions` is a comma-separated list of Resize, Miniature, Watermark and
    Grayscale. Unknown names are ignored; an empty list means [Resize].
    """
    if image is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Failed to get image file")

    max_bytes = request.app.state.settings.MAX_UPLOAD_BYTES
    file_bytes = await image.read(max_bytes + 1)
    if len(file_bytes) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File size exceeds maximum of {max_bytes} bytes"
        )

    image_id = await get_service(request).create(
        filename=image.filename or "",
        reader=BytesIO(file_bytes),
        size=len(file_bytes),
        content_type=image.content_type or "application/octet-stream",
        actions=parse_actions(actions),
    )
    return UploadResponse(
        id=image_id,
        status=ImageStatus.PENDING.value,
        message="Image uploaded successfully",
    )


@router.get("/image/{image_id}")
async def get_image(image_id: str, request: Request):
    """Stream the processed image once its status is Done."""
    stream = await get_service(request).get_processed(image_id)

    def chunks():
        try:
            yield from stream.iter_chunks()
        finally:
            stream.close()

    return StreamingResponse(chunks(), media_type="image/jpeg")


@router.get(
    "/image/{image_id}/status",
    response_model=ImageOut,
    response_model_exclude_none=True,
)
async def get_image_status(image_id: str, request: Request):
    """Get the image record."""
    image = await get_service(request).get_status(image_id)
    return ImageOut.model_validate(image)


@router.delete("/image/{image_id}", response_model=MessageResponse)
async def delete_image(image_id: str, request: Request):
    """Delete the record and both stored objects."""
    await get_service(request).remove(image_id)
    return MessageResponse(message="Image deleted successfully")
