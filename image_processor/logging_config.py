"""Loguru setup shared by the API and worker entry points."""
import sys

from loguru import logger


def setup_logger(level: str = "INFO"):
    """Replace loguru's default sink with one stderr sink. Call once at process start."""
    logger.remove()
    logger.add(
        sys.stderr,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        ),
        level=level,
    )
    return logger
