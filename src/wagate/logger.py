"""
Logging setup for wagate.

All modules log through loguru. Standard-library loggers (uvicorn, httpx,
websockets) are intercepted and re-emitted through the same sink so the
server produces a single, consistently formatted stream.
"""

import inspect
import logging
import os
import sys
from typing import Optional

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> - <level>{message}</level>"
)

logger.configure(extra={"name": "wagate"})


class InterceptHandler(logging.Handler):
    """Forward stdlib logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the caller that originated the record
        frame, depth = inspect.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.bind(name=record.name).opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Configure loguru sinks.

    Args:
        level: Minimum level for console (and file) output.
        log_file: Optional path of a rotating log file.
    """
    level = (os.getenv("LOGURU_LEVEL") or level).upper()

    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT, enqueue=False)

    if log_file:
        logger.add(
            log_file,
            level=level,
            format=LOG_FORMAT,
            rotation="10 MB",
            retention=5,
            encoding="utf-8",
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False


def get_logger(name: str):
    """Return a loguru logger bound to a module name."""
    return logger.bind(name=name)
