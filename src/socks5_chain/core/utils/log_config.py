"""Logging configuration for the relay.

This module provides centralized logging configuration using Loguru.
It sets up logging to the console and, optionally, to a rotated file.
"""

import sys
from pathlib import Path

from loguru import logger

# Logs directory in user's home directory
LOG_DIR = Path.home() / ".socks5-chain" / "logs"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"


def setup_logging(level: str = "INFO", log_file: Path | str | None = None, console: bool = True) -> None:
    """Replace the default handler with the relay's sinks.

    Args:
        level: Minimum level for every sink
        log_file: File to log to with rotation, None to skip file logging.
            Relative paths are placed under ``LOG_DIR``
        console: Whether to log to stderr
    """
    logger.remove()

    if console:
        logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level, backtrace=True, diagnose=False)

    if log_file:
        path = LOG_DIR / Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            path,
            rotation="10 MB",
            retention="1 week",
            compression="zip",
            format=FILE_FORMAT,
            level=level,
            backtrace=True,
            diagnose=False,
        )


__all__ = ["logger", "LOG_DIR", "setup_logging"]
