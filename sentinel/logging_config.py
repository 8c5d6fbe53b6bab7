"""
Logging setup: one stream handler on the root logger, plain text or
JSON lines, with secrets masked before they reach the output.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone


class SensitiveDataFilter(logging.Filter):
    """Mask bearer tokens, passwords and API keys in log messages."""

    SENSITIVE_PATTERNS = [
        (re.compile(r"Bearer\s+[^\s\"]+"), "Bearer ***"),
        (re.compile(r"(password\s*[:=]\s*)[^\s&\"']+", re.IGNORECASE), r"\1***"),
        (re.compile(r"(api[_-]?key\s*[:=]\s*)[^\s&\"']+", re.IGNORECASE), r"\1***"),
        (re.compile(r"(postgres(?:ql)?://[^:/\s]+:)[^@\s]+@"), r"\1***@"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = message
        for pattern, replacement in self.SENSITIVE_PATTERNS:
            masked = pattern.sub(replacement, masked)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Install the console handler. Safe to call more than once."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_sentinel", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler._sentinel = True
    handler.addFilter(SensitiveDataFilter())
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    root.addHandler(handler)
    root.setLevel(level.upper())
