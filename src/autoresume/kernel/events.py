"""Daemon event feed (cross-process safe).

The daemon appends one JSONL line per status transition to a file under the
auto-resume home. Dashboards and `autoresume status --follow` style readers
tail it; nothing reads it back into the daemon.
"""
from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..paths import ensure_home
from ..util.file_lock import locked
from ..util.time import utc_now_iso

logger = logging.getLogger("autoresume.events")


def events_path(home: Optional[Path] = None) -> Path:
    h = home or ensure_home()
    return h / "daemon" / "autoresumed.events.jsonl"


def events_lock_path(home: Optional[Path] = None) -> Path:
    h = home or ensure_home()
    return h / "daemon" / "autoresumed.events.lock"


def publish_event(kind: str, data: Dict[str, Any] | None = None, *, home: Optional[Path] = None) -> Optional[Dict[str, Any]]:
    """Append an event to the feed; returns the written record, None on failure."""
    ev = {
        "v": 1,
        "id": uuid.uuid4().hex,
        "ts": utc_now_iso(),
        "kind": str(kind or "").strip(),
        "data": data if isinstance(data, dict) else {},
    }
    if not ev["kind"]:
        return None
    try:
        line = json.dumps(ev, ensure_ascii=False, default=str)
        path = events_path(home)
        path.parent.mkdir(parents=True, exist_ok=True)
        with locked(events_lock_path(home), timeout_s=2.0):
            with path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
    except OSError as e:
        # The feed is auxiliary; the resume pipeline keeps going.
        logger.warning(f"event feed write failed kind={ev['kind']}: {e}")
        return None
    return ev


def tail_events(limit: int = 50, *, home: Optional[Path] = None) -> List[Dict[str, Any]]:
    """Last `limit` well-formed events from the feed."""
    path = events_path(home)
    if not path.exists():
        return []
    out: List[Dict[str, Any]] = []
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return []
    if limit <= 0:
        return []
    for raw in lines[-int(limit):]:
        try:
            doc = json.loads(raw)
        except ValueError:
            continue
        if isinstance(doc, dict):
            out.append(doc)
    return out
