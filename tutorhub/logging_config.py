"""Logging setup for the API server.

Call ``setup_logging("Server")`` once at process startup; modules keep using
``logging.getLogger(__name__)``.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path

from tutorhub.config import settings

_STREAM_HANDLER_NAME = "_tutorhub_stream"


class RoleFormatter(logging.Formatter):
    """Produces lines like:

    2026-10-17 14:30:00 [Server][INFO] tutorhub.services.chat_service:88 - Message stored
    """

    def __init__(self, role: str, datefmt: str | None = None) -> None:
        super().__init__(datefmt=datefmt)
        self.role = role

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, self.datefmt)
        formatted = f"{timestamp} [{self.role}][{record.levelname}] {record.name}:{record.lineno} - {record.getMessage()}"
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            formatted += "\n" + record.exc_text
        if record.stack_info:
            formatted += "\n" + record.stack_info
        return formatted


def setup_logging(role: str = "Server") -> None:
    """Configure the root logger. Safe to call more than once."""
    root = logging.getLogger()
    if any(getattr(h, "name", None) == _STREAM_HANDLER_NAME for h in root.handlers):
        return

    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    formatter = RoleFormatter(role, datefmt="%Y-%m-%d %H:%M:%S")

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.name = _STREAM_HANDLER_NAME
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if settings.LOG_FILE:
        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=settings.LOG_MAX_BYTES,
            backupCount=settings.LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name in ("pymongo", "motor", "stripe", "httpx", "websockets"):
        logging.getLogger(name).setLevel(logging.WARNING)

    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True
