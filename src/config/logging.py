"""Process-wide logging configuration."""

import json
import logging
import sys

from src.config.settings import settings


class JsonFormatter(logging.Formatter):
    """One JSON object per line; a dict passed as ``extra={"extra": {...}}`` is merged in."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Install a single stream handler on the root logger.

    Safe to call more than once; previous handlers installed by this function are replaced.
    """
    resolved_level = (level or settings.log_level).upper()
    numeric_level = getattr(logging, resolved_level, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    if (log_format or settings.log_format).lower() == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    handler.set_name("campus-oidc")

    root = logging.getLogger()
    root.handlers = [h for h in root.handlers if h.get_name() != "campus-oidc"]
    root.addHandler(handler)
    root.setLevel(numeric_level)
