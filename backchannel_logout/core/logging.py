"""Logging setup for the back-channel logout service.

Logout tokens are bearer credentials until they expire, so every handler
installed here masks anything shaped like a compact JWS before it is written.
"""

import json
import logging
import re
import sys
from typing import Literal

LOGGER_PREFIX = "backchannel_logout"

DEV_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# header.payload.signature, each base64url; headers always start with "eyJ"
_COMPACT_JWS = re.compile(r"eyJ[\w-]*\.[\w-]+\.[\w-]*")
REDACTED_TOKEN = "[redacted-token]"

# Fields publishers pass through ``extra=`` that structured output keeps
CONTEXT_FIELDS = ("event_type", "client_id", "issuer", "sid", "session_id", "token_id")

NOISY_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "httpx", "httpcore")


def redact_tokens(text: str) -> str:
    return _COMPACT_JWS.sub(REDACTED_TOKEN, text)


class TokenRedactingFilter(logging.Filter):
    """Rewrites the record's message and traceback text with any JWT masked.

    Formatters reuse ``record.exc_text`` when it is set, so the traceback is
    rendered once here and stored redacted.
    """

    _formatter = logging.Formatter()

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_tokens(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        if record.exc_info and not record.exc_text:
            record.exc_text = self._formatter.formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = redact_tokens(record.exc_text)
        if record.stack_info:
            record.stack_info = redact_tokens(record.stack_info)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line.

    Messages go through json.dumps, so quotes and newlines never break a line.
    Context fields given via ``extra=`` are emitted as top-level keys.
    """

    def __init__(self):
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = redact_tokens(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


def setup_logging(
    level: str = "INFO",
    format_type: Literal["structured", "dev"] = "dev",
) -> None:
    """
    Install a single stdout handler on the root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: 'structured' for JSON lines, 'dev' for readable text
    """
    level = level.upper()
    handler = logging.StreamHandler(sys.stdout)
    if format_type == "structured":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(DEV_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handler.addFilter(TokenRedactingFilter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if level == "DEBUG" else logging.WARNING
    )

    get_logger("logging").info(f"Logging configured: level={level}, format={format_type}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the backchannel_logout prefix."""
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")
