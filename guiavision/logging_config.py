"""Logging configuration for the GuiaVision live assistant."""

import logging
import sys
from typing import Dict, List, Optional

from .config import settings

DEFAULT_FORMAT = '%(asctime)s.%(msecs)03d - %(levelname)s - %(name)s:%(funcName)s:%(lineno)d - %(message)s'

# Third-party loggers that are chatty at INFO during a live session
LIBRARY_LEVELS: Dict[str, int] = {
    "uvicorn.access": logging.WARNING,
    "uvicorn.error": logging.WARNING,
    "websockets": logging.WARNING,
    "aiortc": logging.INFO,
    "aioice": logging.WARNING,
    "av": logging.WARNING,
    "google_genai": logging.WARNING,
    "httpx": logging.WARNING,
}


def setup_logging(
    level: str = "INFO",
    format_string: Optional[str] = None,
    log_file: Optional[str] = None
) -> None:
    """Configure the root logger.

    Args:
        level: Level for the ``guiavision`` loggers and the console handler
        format_string: Custom format string for log messages
        log_file: Optional file that receives everything down to DEBUG

    Calling it again replaces the handlers installed by a previous call.
    """
    numeric_level = getattr(logging, level.upper())
    logging.basicConfig(
        level=min(numeric_level, logging.DEBUG if log_file else numeric_level),
        format=format_string or DEFAULT_FORMAT,
        datefmt='%H:%M:%S',
        handlers=_create_handlers(numeric_level, log_file),
        force=True,
    )
    _configure_specific_loggers(numeric_level)


def _create_handlers(console_level: int, log_file: Optional[str] = None) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    handlers.append(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)

    return handlers


def _configure_specific_loggers(app_level: int) -> None:
    for name, lib_level in LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(lib_level)
    logging.getLogger("guiavision").setLevel(app_level)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the specified name (usually ``__name__``)."""
    return logging.getLogger(name)


def setup_default_logging() -> None:
    """Setup logging from the global settings."""
    setup_logging(level=settings.log_level, log_file=settings.log_file)
