"""loguru setup shared by the API, the CLI and scripts."""

from __future__ import annotations

import sys

from loguru import logger

FMT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | {message}"
)


def setup_logging(level: str = "INFO", *, serialize: bool = False) -> None:
    logger.remove()
    logger.add(sys.stderr, format=FMT, level=level.upper(), serialize=serialize, diagnose=False)
