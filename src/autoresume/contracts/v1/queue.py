"""Persisted rate-limit queue contracts.

Document layout (v2):

    {"v": 2, "queue": [DetectionEvent, ...], "last_hook_run": "<iso>" | null}

Older writers produced either a bare `{"queue": [...]}` document (v1) or the
single-slot status file `{"detected": true, "reset_time": ..., ...}`.
`migrate_queue_doc` turns any of these into a `QueueState`.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from ...util.time import iso, parse_utc_iso, utc_now_iso

QUEUE_SCHEMA_VERSION = 2

EntryStatus = Literal["pending", "waiting", "active", "completed", "failed"]

LIVE_STATUSES = ("pending", "waiting", "active")
PENDING_STATUSES = ("pending", "waiting")

logger = logging.getLogger("autoresume.queue")


def new_entry_id() -> str:
    return uuid.uuid4().hex


class Detection(BaseModel):
    """What a detector reports for one observed rate-limit message."""

    reset_time: str = Field(min_length=1)
    timezone: Optional[str] = None
    message: str = ""
    source_pid: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("source_pid", "claude_pid")
    )
    transcript_path: Optional[str] = None

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("reset_time", mode="before")
    @classmethod
    def _epoch_ms_to_iso(cls, v: Any) -> Any:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            dt = parse_utc_iso(v)
            return iso(dt) if dt is not None else str(v)
        return v


class DetectionEvent(BaseModel):
    id: str = Field(default_factory=new_entry_id)
    reset_time: str
    timezone: Optional[str] = None
    message: str = ""
    detected_at: str = Field(default_factory=utc_now_iso)
    source_pid: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("source_pid", "claude_pid")
    )
    transcript_path: Optional[str] = None
    status: EntryStatus = "pending"
    completed_at: Optional[str] = None

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES


class QueueState(BaseModel):
    v: int = QUEUE_SCHEMA_VERSION
    queue: List[DetectionEvent] = Field(default_factory=list)
    last_hook_run: Optional[str] = None

    model_config = ConfigDict(extra="allow")


def _stable_id(*parts: Any) -> str:
    # Documents without ids are re-migrated on every load; the id must not change.
    return uuid.uuid5(uuid.NAMESPACE_URL, "autoresume:" + "|".join(str(p) for p in parts)).hex


def _opt_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _migrate_legacy_slot(raw: dict) -> QueueState:
    state = QueueState(last_hook_run=_opt_str(raw.get("last_hook_run")))
    if raw.get("detected") and raw.get("reset_time"):
        try:
            state.queue.append(
                DetectionEvent(
                    id=_stable_id(raw.get("reset_time"), raw.get("last_detected")),
                    reset_time=str(raw.get("reset_time")),
                    timezone=raw.get("timezone") or None,
                    message=str(raw.get("message") or ""),
                    detected_at=str(raw.get("last_detected") or utc_now_iso()),
                    source_pid=raw.get("claude_pid") or None,
                    status="pending",
                )
            )
        except ValidationError as e:
            logger.warning(f"legacy status document not migrated: {e}")
    return state


def migrate_queue_doc(raw: Any) -> QueueState:
    """Normalize any known queue document shape into the current schema.

    Pure: never touches disk. Unknown or broken documents become an empty queue;
    individually malformed entries are skipped.
    """
    if not isinstance(raw, dict):
        return QueueState()

    entries = raw.get("queue")
    if not isinstance(entries, list):
        return _migrate_legacy_slot(raw)

    state = QueueState(last_hook_run=_opt_str(raw.get("last_hook_run")))
    for item in entries:
        if not isinstance(item, dict):
            continue
        if not item.get("id"):
            item = dict(item, id=_stable_id(item.get("reset_time"), item.get("detected_at")))
        try:
            state.queue.append(DetectionEvent.model_validate(item))
        except ValidationError as e:
            logger.warning(f"skipping malformed queue entry: {e.error_count()} error(s)")
    return state
