"""Process-wide logging for the chat server.

Every record is tagged with the socket connection and the conversation it
belongs to, so one user's turn can be followed through the relay, the run
poller and the credit ledger by grepping a single prefix.  MessageRelay sets
the two context variables around each socket event; REST handlers leave them
empty.  Modules keep using plain ``logging.getLogger(__name__)``.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from contextvars import ContextVar
from pathlib import Path

STREAM_HANDLER_NAME = "_agentchat_stream"
FILE_HANDLER_NAME = "_agentchat_file"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Held at WARNING by setup_logging
NOISY_LOGGERS = ("httpx", "httpcore", "openai", "urllib3", "websockets", "sqlalchemy.engine")
UVICORN_LOGGERS = ("uvicorn", "uvicorn.access", "uvicorn.error")

connection_id_var: ContextVar[str] = ContextVar("connection_id_var", default="")
conversation_id_var: ContextVar[str] = ContextVar("conversation_id_var", default="")


class ContextFilter(logging.Filter):
    """Copies the process role and the current socket context onto records."""

    def __init__(self, role: str) -> None:
        super().__init__()
        self.role = role

    def filter(self, record: logging.LogRecord) -> bool:
        record.role = self.role  # type: ignore[attr-defined]
        record.connection_id = connection_id_var.get("")  # type: ignore[attr-defined]
        record.conversation_id = conversation_id_var.get("")  # type: ignore[attr-defined]
        return True


def _context_prefix(record: logging.LogRecord) -> str:
    role = getattr(record, "role", "")
    connection_id = getattr(record, "connection_id", "")
    conversation_id = getattr(record, "conversation_id", "")

    tags = [role] if role else []
    if connection_id:
        # First 8 hex chars of the socket id
        tags.append(f"Conn {connection_id[:8]}")
    if conversation_id:
        tags.append(f"Conv {conversation_id}")
    tags.append(record.levelname)
    return "".join(f"[{tag}]" for tag in tags)


class ContextFormatter(logging.Formatter):
    """``<time> [role][Conn id][Conv id][LEVEL] logger:line - message``

    The connection and conversation tags are omitted when unset, e.g. a
    payment callback logs ``[Server][INFO]`` while a socket turn on
    conversation 7 logs ``[Server][Conn 1a2b3c4d][Conv 7][INFO]``.
    """

    def format(self, record: logging.LogRecord) -> str:
        line = "{} {} {}:{} - {}".format(
            self.formatTime(record, self.datefmt),
            _context_prefix(record),
            record.name,
            record.lineno,
            record.getMessage(),
        )
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        for extra in (record.exc_text, record.stack_info):
            if extra:
                line += "\n" + extra
        return line


def _attach(root: logging.Logger, handler: logging.Handler, name: str, role: str) -> None:
    handler.name = name
    handler.addFilter(ContextFilter(role))
    handler.setFormatter(ContextFormatter(datefmt=DATE_FORMAT))
    root.addHandler(handler)


def setup_logging(role: str) -> None:
    """Install the chat server's handlers on the root logger.

    Logs always go to stderr, and also to a rotating ``LOG_FILE`` when one
    is configured.  In the server process uvicorn's own handlers are
    dropped so its access and error lines share the same prefix.  A second
    call is a no-op.
    """
    from config import settings

    root = logging.getLogger()
    if any(getattr(h, "name", None) == STREAM_HANDLER_NAME for h in root.handlers):
        return

    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    _attach(root, logging.StreamHandler(sys.stderr), STREAM_HANDLER_NAME, role)

    if settings.LOG_FILE:
        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=settings.LOG_MAX_BYTES,
            backupCount=settings.LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        _attach(root, rotating, FILE_HANDLER_NAME, role)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if "server" in role.lower():
        for name in UVICORN_LOGGERS:
            uvicorn_logger = logging.getLogger(name)
            uvicorn_logger.handlers.clear()
            uvicorn_logger.propagate = True
