"""Loguru sink setup shared by the CLI and the API server."""
from __future__ import annotations
import sys
from loguru import logger

from .config import TallySyncConfig

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - "
    "<level>{message}</level>"
)


def setup_logging(config: TallySyncConfig, level: str | None = None) -> None:
    """Replace the default sink with stderr (and an optional rotating file)."""
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level or config.log_level, colorize=True)

    if config.log_file:
        logger.add(
            config.log_file,
            format=LOG_FORMAT,
            level="DEBUG",
            rotation="10 MB",
            retention="30 days",
            compression="zip",
            enqueue=True,
        )
        logger.info(f"Logging to {config.log_file}")
