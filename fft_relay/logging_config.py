"""Logging setup: JSON lines in production, readable text elsewhere."""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Optional

PRODUCTION_ENVS = ("production", "prod", "staging")

# Connection context the hub attaches via ``extra=``
CONTEXT_FIELDS = ("remote", "role")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry)


def is_production() -> bool:
    return os.environ.get("FFT_RELAY_ENV", "development").lower() in PRODUCTION_ENVS


def configure_logging(level: Optional[str] = None) -> None:
    """Replace root handlers with a single stdout handler.

    ``level`` falls back to ``FFT_RELAY_LOG_LEVEL``, then INFO.
    """
    level_name = (level or os.environ.get("FFT_RELAY_LOG_LEVEL", "INFO")).upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        raise ValueError(f"Unknown log level: {level_name}")

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    if is_production():
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers.clear()
    root.addHandler(handler)

    # Handshake failures from port scanners are not interesting
    logging.getLogger("websockets").setLevel(logging.WARNING)
