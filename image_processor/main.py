"""API service entry point."""
import uvicorn

from image_processor.app import create_app
from image_processor.logging_config import setup_logger
from image_processor.settings import Settings


def main():
    settings = Settings()
    setup_logger(settings.LOG_LEVEL)
    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.http_host,
        port=settings.http_port_number,
        timeout_keep_alive=settings.HTTP_TIMEOUT_KEEP_ALIVE,
        access_log=False,
    )


if __name__ == "__main__":
    main()
