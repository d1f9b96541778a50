"""File-backed rate-limit event queue.

The queue document is shared between the daemon and detector processes. Every
mutation is a read-modify-write under an exclusive lock, and every write goes
through write-to-temp + rename so a reader never sees a truncated file. A
missing or unreadable document is an empty queue: detectors re-report signals,
so availability wins over strict durability here.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from ..contracts.v1.queue import (
    LIVE_STATUSES,
    PENDING_STATUSES,
    Detection,
    DetectionEvent,
    EntryStatus,
    QueueState,
    migrate_queue_doc,
)
from ..util.file_lock import locked
from ..util.fs import atomic_write_json, read_json
from ..util.time import parse_utc_iso, utc_now, utc_now_iso, iso
from .staleness import is_stale

logger = logging.getLogger("autoresume.queue")

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


def _reset_sort_key(entry: DetectionEvent) -> Tuple[datetime, str]:
    return (parse_utc_iso(entry.reset_time) or _FAR_FUTURE, entry.detected_at)


class EventQueue:
    def __init__(self, path: Path, *, lock_path: Optional[Path] = None, lock_timeout_s: float = 10.0) -> None:
        self.path = path
        self.lock_path = lock_path or path.with_name(path.name + ".lock")
        # Mutations raise LockUnavailableError (an OSError) once this passes.
        self.lock_timeout_s = lock_timeout_s

    # -- storage -------------------------------------------------------------

    def load(self) -> QueueState:
        return migrate_queue_doc(read_json(self.path))

    def _save(self, state: QueueState) -> None:
        atomic_write_json(self.path, state.model_dump(mode="json"))

    # -- queries -------------------------------------------------------------

    def entries(self) -> List[DetectionEvent]:
        return list(self.load().queue)

    def get_entry(self, entry_id: str) -> Optional[DetectionEvent]:
        for entry in self.load().queue:
            if entry.id == entry_id:
                return entry
        return None

    def pending_entries(self) -> List[DetectionEvent]:
        pending = [e for e in self.load().queue if e.status in PENDING_STATUSES]
        pending.sort(key=_reset_sort_key)
        return pending

    def get_next_pending(self) -> Optional[DetectionEvent]:
        pending = self.pending_entries()
        return pending[0] if pending else None

    # -- mutations -----------------------------------------------------------

    def add_detection(self, detection: Union[Detection, Mapping[str, Any]]) -> Optional[DetectionEvent]:
        """Insert a new pending entry; None when its reset_time is already queued."""
        if not isinstance(detection, Detection):
            detection = Detection.model_validate(dict(detection))

        with locked(self.lock_path, timeout_s=self.lock_timeout_s):
            state = self.load()
            if any(e.reset_time == detection.reset_time for e in state.queue):
                logger.debug(f"duplicate detection ignored: reset_time={detection.reset_time}")
                return None

            entry = DetectionEvent(
                reset_time=detection.reset_time,
                timezone=detection.timezone,
                message=detection.message,
                source_pid=detection.source_pid,
                transcript_path=detection.transcript_path,
            )
            state.queue.append(entry)
            state.last_hook_run = utc_now_iso()
            self._save(state)

        logger.info(f"queued detection reset_time={entry.reset_time}", extra={"event_id": entry.id})
        return entry

    def update_entry_status(self, entry_id: str, status: EntryStatus) -> Optional[DetectionEvent]:
        with locked(self.lock_path, timeout_s=self.lock_timeout_s):
            state = self.load()
            entry = next((e for e in state.queue if e.id == entry_id), None)
            if entry is None:
                logger.warning(f"status update for unknown entry -> {status}", extra={"event_id": entry_id})
                return None
            entry.status = status
            if status == "completed":
                entry.completed_at = self._completion_stamp(entry)
            self._save(state)
        logger.debug(f"entry -> {status}", extra={"event_id": entry_id})
        return entry

    @staticmethod
    def _completion_stamp(entry: DetectionEvent) -> str:
        now = utc_now()
        detected = parse_utc_iso(entry.detected_at)
        if detected is not None and detected > now:
            # Migrated entries carry a detector-side timestamp.
            now = detected
        return iso(now)

    def recover_interrupted(self) -> int:
        """Return entries a crashed daemon left `active` to `pending`."""
        with locked(self.lock_path, timeout_s=self.lock_timeout_s):
            state = self.load()
            recovered = 0
            for entry in state.queue:
                if entry.status == "active":
                    entry.status = "pending"
                    recovered += 1
            if recovered:
                self._save(state)
        if recovered:
            logger.info(f"recovered {recovered} interrupted entr{'y' if recovered == 1 else 'ies'}")
        return recovered

    def reset_entries(self, *, stale_threshold_ms: Optional[float] = None, all_live: bool = False) -> List[str]:
        """Mark live entries failed: every live entry, or only the stale ones."""
        if not all_live and stale_threshold_ms is None:
            raise ValueError("reset_entries needs stale_threshold_ms or all_live=True")
        with locked(self.lock_path, timeout_s=self.lock_timeout_s):
            state = self.load()
            reset: List[str] = []
            for entry in state.queue:
                if entry.status not in LIVE_STATUSES:
                    continue
                if all_live or is_stale(entry.reset_time, float(stale_threshold_ms or 0)):
                    entry.status = "failed"
                    reset.append(entry.id)
            if reset:
                self._save(state)
        for entry_id in reset:
            logger.info("entry force-reset -> failed", extra={"event_id": entry_id})
        return reset

    def summary(self) -> Dict[str, Any]:
        state = self.load()
        counts: Dict[str, int] = {}
        for entry in state.queue:
            counts[entry.status] = counts.get(entry.status, 0) + 1
        nxt = self.get_next_pending()
        return {
            "path": str(self.path),
            "total": len(state.queue),
            "counts": counts,
            "next_pending": nxt.model_dump(mode="json") if nxt else None,
            "last_hook_run": state.last_hook_run,
        }


def parse_detection(raw: Mapping[str, Any]) -> Detection:
    """Validate detector input; raises ValueError with a readable message."""
    try:
        return Detection.model_validate(dict(raw))
    except ValidationError as e:
        raise ValueError(f"invalid detection: {e.errors()[0].get('msg', 'invalid')}") from e
