"""Logging configuration for batchgate.

Library modules log through logging.getLogger(__name__) and never
configure handlers themselves. The CLI calls configure_logging() once
to emit one JSON object per line on stderr.
"""

from __future__ import annotations

import json
import logging
import sys
import time


class StructuredFormatter(logging.Formatter):
    """JSON formatter suitable for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def configure_logging(level: str = "WARNING") -> None:
    """Install the structured handler on the batchgate logger."""
    root = logging.getLogger("batchgate")
    root.setLevel(level.upper())
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter())
    root.addHandler(handler)
    root.propagate = False
