"""Logging setup for sessions and the command line entry point.

Records go to stderr; stdout belongs to protocol traffic when the process
itself is driven over stdio. Session code logs through SessionLogAdapter so
every record carries the session name, which JsonFormatter emits as a field.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import UTC, datetime
from typing import Any, TextIO

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Logger receiving the server's stderr lines
SERVER_STDERR_LOGGER = "ls_session.server.stderr"

# Correlation fields emitted right after the message when present
CONTEXT_FIELDS: tuple[str, ...] = ("session", "request_id", "method")

_STANDARD_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}

_OUTPUT_KEYS: frozenset[str] = frozenset(
    {"timestamp", "level", "logger", "source", "message", "exception", "stack_info"}
)


class SessionLogAdapter(logging.LoggerAdapter):
    """Stamps the session name on every record.

    Per-call ``extra`` fields are merged over the session field.
    """

    def __init__(self, logger: logging.Logger, session: str) -> None:
        super().__init__(logger, {"session": session})

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs


class JsonFormatter(logging.Formatter):
    """Formats records as single-line JSON objects.

    Keys: UTC ``timestamp``, ``level``, ``logger``, ``source`` ("server" for
    forwarded server stderr, "client" otherwise), ``message``, then the
    correlation fields (session, request_id, method) and any other extras.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and key not in _OUTPUT_KEYS
        }
        obj: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname,
            "logger": record.name,
            "source": "server" if record.name.startswith(SERVER_STDERR_LOGGER) else "client",
            "message": record.message,
        }
        for key in CONTEXT_FIELDS:
            if key in extras:
                obj[key] = extras.pop(key)
        obj.update(extras)
        if record.exc_info and record.exc_info[1]:
            obj["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            obj["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(obj, default=str)


def configure_logging(
    level: str | int = "INFO", json_format: bool = False, stream: TextIO | None = None
) -> logging.Handler:
    """Install a single stderr handler on the ``ls_session`` logger.

    Calling again replaces the handler installed by the previous call.

    Args:
        level: Log level name or number.
        json_format: Emit JSON lines instead of plain text.
        stream: Destination stream (defaults to sys.stderr).

    Returns:
        The installed handler.
    """
    package_logger = logging.getLogger("ls_session")
    for existing in list(package_logger.handlers):
        if getattr(existing, "_ls_session_handler", False):
            package_logger.removeHandler(existing)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter() if json_format else logging.Formatter(PLAIN_FORMAT))
    handler._ls_session_handler = True  # type: ignore[attr-defined]
    package_logger.addHandler(handler)
    package_logger.setLevel(level.upper() if isinstance(level, str) else level)
    package_logger.propagate = False
    return handler
