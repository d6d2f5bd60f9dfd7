"""Logging setup for the monitor (loguru)."""

import sys
from typing import Optional

from loguru import logger


LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level> | {extra}"
)


def configure_logging(level: str = "INFO", file: Optional[str] = None) -> None:
    """
    Replace loguru's default handler with the monitor's format.

    Called once at application startup. Poll cycles bind a ``poll``
    number through ``logger.contextualize`` which shows up in ``{extra}``.

    Args:
        level: Minimum level for the console sink
        file: Optional path for a rotating file sink
    """
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level.upper(), colorize=True)

    if file:
        logger.add(
            sink=file,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level} | {extra} | {name}:{function}:{line} | {message}",
            level="INFO",
            rotation="50 MB",
            retention="14 days",
            compression="zip",
        )
