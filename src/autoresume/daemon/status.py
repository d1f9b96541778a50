from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..contracts.v1.queue import DetectionEvent
from ..kernel.events import publish_event
from ..util.time import utc_now_iso

logger = logging.getLogger("autoresume.status")

Listener = Callable[[str, Dict[str, Any]], None]


class StatusBridge:
    """Read-only view of the daemon for dashboards.

    Every broadcast goes to the JSONL event feed and to in-process listeners.
    Nothing flows back into the resume pipeline from here.
    """

    def __init__(self, *, home: Optional[Path] = None, feed: bool = True) -> None:
        self.home = home
        self.feed = feed
        self._listeners: List[Listener] = []
        self._snapshot: Dict[str, Any] = {
            "state": "IDLE",
            "rate_limited": False,
            "reset_time": None,
            "event_id": None,
            "updated_at": utc_now_iso(),
        }

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._snapshot)

    def add_listener(self, fn: Listener) -> None:
        self._listeners.append(fn)

    def remove_listener(self, fn: Listener) -> None:
        try:
            self._listeners.remove(fn)
        except ValueError:
            pass

    def _emit(self, kind: str, data: Dict[str, Any]) -> None:
        if self.feed:
            publish_event(kind, data, home=self.home)
        for fn in list(self._listeners):
            try:
                fn(kind, data)
            except Exception as e:
                logger.warning(f"status listener failed for {kind}: {type(e).__name__}: {e}")

    def broadcast_status(self, status: Dict[str, Any]) -> Dict[str, Any]:
        self._snapshot.update(status)
        self._snapshot["updated_at"] = utc_now_iso()
        snap = self.snapshot()
        self._emit("status", snap)
        return snap

    def broadcast_event(self, kind: str, data: Optional[Dict[str, Any]] = None) -> None:
        self._emit(kind, dict(data or {}))

    def set_rate_limited(self, event: DetectionEvent) -> None:
        self.broadcast_status({"rate_limited": True, "reset_time": event.reset_time, "event_id": event.id})

    def clear_rate_limit(self, event_id: Optional[str] = None) -> None:
        if event_id is not None and self._snapshot.get("event_id") not in (None, event_id):
            # A newer detection owns the flag now.
            return
        self.broadcast_status({"rate_limited": False, "reset_time": None, "event_id": None})
