"""Error kinds surfaced by the gateways and orchestrators.

Every error derives from ImageProcessorError. The API exception handler reads
status_code/error_code/message from the class to build the JSON response, so
callers only need to raise the right kind.
"""


class ImageProcessorError(Exception):
    """Base error. Subclasses override the class attributes."""

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"
    message: str = "Internal server error"

    def __init__(self, message: str = None):
        if message:
            self.message = message
        super().__init__(self.message)


# --- Client errors ---


class InvalidImage(ImageProcessorError):
    status_code = 400
    error_code = "VALIDATION_ERROR"
    message = "Invalid image data"


class ImageNotFound(ImageProcessorError):
    status_code = 404
    error_code = "NOT_FOUND"
    message = "Image not found"


class ImagePending(ImageProcessorError):
    status_code = 404
    error_code = "IMAGE_PENDING"
    message = "Image is still being processed"


class ImageProcessingFailed(ImageProcessorError):
    status_code = 404
    error_code = "PROCESSING_FAILED"
    message = "Image processing failed"


# --- Blob store ---


class ObjectNotFound(ImageNotFound):
    error_code = "OBJECT_NOT_FOUND"
    message = "Object not found in storage"


class StorageWriteError(ImageProcessorError):
    error_code = "STORAGE_WRITE_ERROR"
    message = "Failed to write object to storage"


class StorageReadError(ImageProcessorError):
    error_code = "STORAGE_READ_ERROR"
    message = "Failed to read object from storage"


# --- Metadata store ---


class MetadataWriteError(ImageProcessorError):
    error_code = "METADATA_WRITE_ERROR"
    message = "Failed to write image metadata"


class MetadataReadError(ImageProcessorError):
    error_code = "METADATA_READ_ERROR"
    message = "Failed to read image metadata"


# --- Message bus ---


class BusPublishError(ImageProcessorError):
    error_code = "BUS_PUBLISH_ERROR"
    message = "Failed to publish processing task"


class BusConsumeError(ImageProcessorError):
    error_code = "BUS_CONSUME_ERROR"
    message = "Failed to consume processing task"


# --- Pipeline ---


class TransformError(ImageProcessorError):
    error_code = "TRANSFORM_ERROR"
    message = "Failed to transform image"


class UnknownActionError(ImageProcessorError):
    error_code = "UNKNOWN_ACTION"
    message = "Unknown transformation action"


# --- Startup ---


class ServiceUnavailable(ImageProcessorError):
    error_code = "SERVICE_UNAVAILABLE"
    message = "Dependency could not be reached"
