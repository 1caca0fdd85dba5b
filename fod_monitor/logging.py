"""Logging helpers for the FOD monitor."""

from __future__ import annotations

import os
import sys
from collections import deque
from pathlib import Path

from loguru import logger


CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}:{function}:{line}</cyan> | <level>{message}</level>"
)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {process}:{thread.name} | "
    "{name}:{function}:{line} | {message}"
)


def configure_logging(
    log_level: str = "INFO",
    log_dir: str | None = "logs",
    *,
    json_logs: bool = False,
) -> None:
    """Configure loguru console and rotating file sinks."""
    log_level = os.getenv("FOD_MONITOR_LOG_LEVEL", log_level).upper()

    logger.remove()
    logger.add(sink=sys.stdout, format=CONSOLE_FORMAT, level=log_level)

    if log_dir is None:
        return

    Path(log_dir).mkdir(parents=True, exist_ok=True)
    log_path = Path(log_dir) / "fod_{time:YYYY-MM-DD}.log"
    logger.add(
        str(log_path),
        rotation="10 MB",
        retention="7 days",
        level=log_level,
        format=FILE_FORMAT,
        enqueue=True,
    )
    if json_logs:
        json_path = Path(log_dir) / "fod_{time:YYYY-MM-DD}.jsonl"
        logger.add(
            str(json_path),
            rotation="10 MB",
            retention="7 days",
            level=log_level,
            serialize=True,
            enqueue=True,
        )


def create_log_buffer(max_lines: int = 200) -> deque[str]:
    """Create a bounded log buffer for recent messages."""
    return deque(maxlen=max_lines)


def attach_log_buffer(buffer: deque[str], level: str = "INFO") -> int:
    """Attach a loguru sink that appends messages to a deque."""

    def _sink(message: object) -> None:
        buffer.append(str(message).rstrip("\n"))

    return logger.add(
        _sink,
        level=level,
        format="{time:HH:mm:ss} | {level: <8} | {message}",
    )
