"""Logging setup for the dispatch gateway.

Gateway log calls pass ``extra={"task_type", "model", "batch_index"}``;
the JSON formatter lifts those into top-level fields.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from llm_dispatch.core.config import Settings, settings

CONTEXT_FIELDS = ("task_type", "model", "batch_index")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, request context included when present."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for attr in CONTEXT_FIELDS:
            value = getattr(record, attr, None)
            if value is not None:
                log_data[attr] = value
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def setup_logging(config: Settings | None = None) -> None:
    """Install a single stdout handler on the root logger."""
    config = config or settings
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if config.log_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    root.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
