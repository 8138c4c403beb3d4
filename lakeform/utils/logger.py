"""
Logging setup.

Modules log through ``logging.getLogger(__name__)``; the CLI calls
``configure_logging`` once. Every handler it installs carries a
RedactingFilter, so values registered with ``register_secret`` are masked
before anything is written.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

REDACTED = "(sensitive)"

_secrets: Set[str] = set()
_secrets_lock = threading.Lock()


def register_secret(value: Optional[str]) -> None:
    """Mark a literal value as sensitive for all log output."""
    if value:
        with _secrets_lock:
            _secrets.add(str(value))


def clear_secrets() -> None:
    with _secrets_lock:
        _secrets.clear()


def redact(text: str) -> str:
    """Mask every registered secret inside ``text``."""
    with _secrets_lock:
        secrets = sorted(_secrets, key=len, reverse=True)
    for secret in secrets:
        text = text.replace(secret, REDACTED)
    return text


class RedactingFilter(logging.Filter):
    """Rewrites the rendered message with secrets masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """Format log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        address = getattr(record, "address", None)
        if address:
            entry["address"] = address
        if record.exc_info:
            entry["exception"] = redact(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str = "WARNING", fmt: str = "text") -> logging.Logger:
    """Install a single stderr handler on the ``lakeform`` logger."""
    if not isinstance(logging.getLevelName(level.upper()), int):
        raise ValueError(f"unknown log level '{level}'")

    root = logging.getLogger("lakeform")
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    handler.addFilter(RedactingFilter())

    root.addHandler(handler)
    root.setLevel(level.upper())
    root.propagate = False
    return root
