"""FastAPI application for the API service."""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from image_processor.broker import TaskProducer
from image_processor.db import Database
from image_processor.endpoints import router
from image_processor.exceptions import ImageProcessorError
from image_processor.middleware import CORSHeadersMiddleware, RequestLoggingMiddleware
from image_processor.repository import ImageRepository, RetryPolicy
from image_processor.service import ImageService
from image_processor.settings import Settings
from image_processor.storage import get_blob_store


async def app_exception_handler(request: Request, exc: ImageProcessorError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.error_code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error_code": exc.error_code, "message": exc.message},
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error_code": "BAD_REQUEST", "message": "Failed to parse request"},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    if getattr(app.state, "service", None) is not None:
        # Injected by the caller (tests); nothing to build
        yield
        return

    database = Database(settings.master_dsn, settings.slave_dsn)
    repository = ImageRepository(
        database,
        RetryPolicy(settings.DB_WRITE_ATTEMPTS, settings.DB_WRITE_DELAY, settings.DB_WRITE_BACKOFF),
    )
    storage = get_blob_store(settings)
    producer = TaskProducer.from_settings(settings)

    await repository.connect(settings.DB_CONNECT_ATTEMPTS, settings.DB_CONNECT_DELAY)
    await storage.init()
    logger.info("Blob store initialized")
    await producer.ensure_topic()

    app.state.service = ImageService(repository, storage, producer)
    logger.info(f"API ready on {settings.HTTP_PORT}")

    yield

    logger.info("Shutting down")
    await producer.stop()
    await database.dispose()
    app.state.service = None


def create_app(settings: Optional[Settings] = None, service: Optional[ImageService] = None) -> FastAPI:
    """Build the application. Pass `service` to skip building the gateways at startup."""
    app = FastAPI(
        title="Image Processor",
        description="Asynchronous image transformation pipeline",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings or Settings()
    app.state.service = service

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CORSHeadersMiddleware)
    app.add_exception_handler(ImageProcessorError, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # Include API router
    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "Image Processor",
            "version": "1.0.0",
            "endpoints": {
                "upload": "POST /upload",
                "get": "GET /image/{id}",
                "status": "GET /image/{id}/status",
                "delete": "DELETE /image/{id}",
            },
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app
