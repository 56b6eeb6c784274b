import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d - %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with exception text when present."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "func": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Configure the root logger once.

    - LOG_LEVEL picks the level (default INFO).
    - LOG_FORMAT=json switches to structured output.
    - Existing handlers are reused, only their level and formatter change.
    - uvicorn loggers follow the same level.
    """
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    numeric_level = getattr(logging, log_level, logging.INFO)
    use_json = (fmt or os.getenv("LOG_FORMAT", "text")).lower() == "json"
    formatter = JsonFormatter() if use_json else logging.Formatter(TEXT_FORMAT)

    root = logging.getLogger()
    if not root.handlers:
        root.addHandler(logging.StreamHandler())
    root.setLevel(numeric_level)
    for handler in root.handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(numeric_level)
