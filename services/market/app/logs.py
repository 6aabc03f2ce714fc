from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper().strip() or "INFO"
    logging.basicConfig(level=level, format="%(message)s")

    root = logging.getLogger()
    for h in root.handlers:
        h.setFormatter(JsonFormatter())
    # httpx logs every request at INFO; the poller would flood the output.
    logging.getLogger("httpx").setLevel(logging.WARNING)
