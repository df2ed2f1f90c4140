"""Process-wide logging for the chat API.

``setup_logging("Server")`` is called once from the app lifespan. Records
carry the current request id and user id, taken from the context vars the
request middleware and the auth dependency set, so service modules keep
using plain ``logging.getLogger(__name__)``.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from contextvars import ContextVar
from pathlib import Path

request_id_var: ContextVar[str] = ContextVar("request_id_var", default="")
user_id_var: ContextVar[str] = ContextVar("user_id_var", default="")

_STREAM_HANDLER = "_chat_stream"
_FILE_HANDLER = "_chat_file"
_QUIET_LOGGERS = ("httpx", "httpcore", "openai", "urllib3")


class ContextFilter(logging.Filter):
    """Attach ``role``, ``request_id`` and ``user_id`` to every record."""

    def __init__(self, role: str) -> None:
        super().__init__()
        self.role = role

    def filter(self, record: logging.LogRecord) -> bool:
        record.role = self.role  # type: ignore[attr-defined]
        record.request_id = request_id_var.get("")  # type: ignore[attr-defined]
        record.user_id = user_id_var.get("")  # type: ignore[attr-defined]
        return True


class ContextFormatter(logging.Formatter):
    """Render ``<time> [Server][Req 1f3a9c2e][User 7][WARNING] services.ledger:88 - ...``.

    Empty request or user context is left out of the prefix.
    """

    def format(self, record: logging.LogRecord) -> str:
        role = getattr(record, "role", "")
        request_id = getattr(record, "request_id", "")
        user_id = getattr(record, "user_id", "")

        tags = []
        if role:
            tags.append(role)
        if request_id:
            tags.append(f"Req {request_id[:8]}")
        if user_id:
            tags.append(f"User {user_id}")
        tags.append(record.levelname)
        prefix = "".join(f"[{tag}]" for tag in tags)

        line = (
            f"{self.formatTime(record, self.datefmt)} {prefix} "
            f"{record.name}:{record.lineno} - {record.getMessage()}"
        )
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            line = f"{line}\n{record.exc_text}"
        if record.stack_info:
            line = f"{line}\n{record.stack_info}"
        return line


def _attach(root: logging.Logger, handler: logging.Handler, name: str, role: str) -> None:
    handler.name = name
    handler.addFilter(ContextFilter(role))
    handler.setFormatter(ContextFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)


def setup_logging(role: str) -> None:
    """Install stderr (and optional rotating file) handlers on the root logger.

    A second call is a no-op.
    """
    from config import settings

    root = logging.getLogger()
    if any(getattr(h, "name", None) == _STREAM_HANDLER for h in root.handlers):
        return

    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    _attach(root, logging.StreamHandler(sys.stderr), _STREAM_HANDLER, role)

    if settings.LOG_FILE:
        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=settings.LOG_MAX_BYTES,
            backupCount=settings.LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        _attach(root, file_handler, _FILE_HANDLER, role)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # uvicorn installs its own handlers; route its records through root instead
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True
