"""Reset-time staleness guard.

Detectors re-scan persisted transcripts and can resurface a rate-limit message
whose reset passed hours ago. Such detections must not arm a countdown.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from ..errors import DetectionStale
from ..util.time import parse_utc_iso, utc_now

DEFAULT_STALE_THRESHOLD_MS = 2 * 60 * 60 * 1000


def is_stale(reset_time: Any, threshold_ms: float = DEFAULT_STALE_THRESHOLD_MS, *, now: Optional[datetime] = None) -> bool:
    """True when `reset_time` is unparsable or at least `threshold_ms` in the past."""
    dt = parse_utc_iso(reset_time)
    if dt is None:
        return True
    current = now or utc_now()
    age_ms = (current - dt).total_seconds() * 1000.0
    return age_ms >= float(threshold_ms)


def ensure_fresh(reset_time: Any, threshold_ms: float = DEFAULT_STALE_THRESHOLD_MS, *, now: Optional[datetime] = None) -> datetime:
    """Parsed reset time, or DetectionStale when `is_stale` would say so."""
    if is_stale(reset_time, threshold_ms, now=now):
        raise DetectionStale(f"stale reset_time: {reset_time!r}")
    dt = parse_utc_iso(reset_time)
    assert dt is not None
    return dt
