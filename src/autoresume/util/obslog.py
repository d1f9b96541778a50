from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, TextIO


# Correlation fields callers attach with `logger.info(..., extra={"event_id": ...})`.
CORRELATION_KEYS = ("event_id", "op", "tier", "target", "attempt", "state", "plugin", "hook")

_LOG_MAX_BYTES = 5 * 1024 * 1024
_LOG_BACKUPS = 3


class JsonlFormatter(logging.Formatter):
    """One JSON object per record: ts, level, logger, component, msg, then any
    correlation fields that are set, then `exc` when a traceback is attached."""

    def __init__(self, *, component: str):
        super().__init__()
        self.component = str(component or "").strip() or "autoresume"

    def format(self, record: logging.LogRecord) -> str:
        try:
            ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z")
        except (OverflowError, OSError, ValueError):
            ts = ""
        payload: Dict[str, Any] = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "component": self.component,
            "msg": record.getMessage(),
        }
        for key in CORRELATION_KEYS:
            value = getattr(record, key, None)
            if value is not None and str(value).strip():
                payload[key] = str(value).strip()
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        try:
            return json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError):
            return json.dumps({"component": self.component, "level": record.levelname, "msg": "(unserializable)"})


def parse_level(level: str, default: int = logging.INFO) -> int:
    name = str(level or "").strip().upper()
    if name == "WARN":
        name = "WARNING"
    value = logging.getLevelName(name) if name else default
    return value if isinstance(value, int) else default


def setup_root_json_logging(
    *,
    component: str,
    level: str = "INFO",
    stream: Optional[TextIO] = None,
    log_file: Optional[Path] = None,
    force: bool = False,
) -> logging.Handler:
    """Install the JSONL handler on the root logger and return it.

    With `log_file` the handler is a size-rotated file, which is what a
    background daemon wants; otherwise records go to `stream` (stderr).
    A second call reuses the installed handler unless `force` is set.
    """
    root = logging.getLogger()
    lvl = parse_level(level)
    root.setLevel(lvl)

    for h in list(root.handlers):
        if not isinstance(h.formatter, JsonlFormatter):
            continue
        if force:
            root.removeHandler(h)
            h.close()
        else:
            h.setLevel(lvl)
            return h

    handler: logging.Handler
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=_LOG_MAX_BYTES, backupCount=_LOG_BACKUPS, encoding="utf-8"
        )
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(lvl)
    handler.setFormatter(JsonlFormatter(component=component))
    root.addHandler(handler)
    return handler
