"""Rate-limit and resume history with simple statistics.

Records are kept as epoch milliseconds in <home>/analytics.json:

    {"version": "1.0.0", "rate_limits": [...], "resumes": [...]}

Buckets for peak hour/day are computed in UTC.
"""
from __future__ import annotations

import logging
import math
import time
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..util.file_lock import locked
from ..util.fs import atomic_write_json, read_json
from ..util.time import iso, parse_utc_iso

logger = logging.getLogger("autoresume.analytics")

ANALYTICS_VERSION = "1.0.0"
_DAY_MS = 24 * 60 * 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


def _to_ms(value: Any) -> Optional[int]:
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    dt = parse_utc_iso(value)
    return int(dt.timestamp() * 1000) if dt is not None else None


def _ms_iso(ms: float) -> str:
    return iso(datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc))


def _records(doc: Dict[str, Any], *keys: str) -> List[Dict[str, Any]]:
    for key in keys:
        v = doc.get(key)
        if isinstance(v, list):
            return [r for r in v if isinstance(r, dict) and isinstance(r.get("timestamp"), (int, float))]
    return []


class AnalyticsCollector:
    def __init__(self, path: Path, *, retention_days: int = 30) -> None:
        self.path = path
        self.lock_path = path.with_name(path.name + ".lock")
        self.retention_days = max(1, int(retention_days))

    def _load(self) -> Dict[str, Any]:
        doc = read_json(self.path)
        if not isinstance(doc, dict):
            doc = {}
        return {
            "version": str(doc.get("version") or ANALYTICS_VERSION),
            # camelCase keys come from files written by earlier releases
            "rate_limits": _records(doc, "rate_limits", "rateLimits"),
            "resumes": _records(doc, "resumes"),
        }

    def _append(self, key: str, record: Dict[str, Any]) -> None:
        with locked(self.lock_path):
            data = self._load()
            data[key].append(record)
            atomic_write_json(self.path, data)

    # -- recording -----------------------------------------------------------

    def record_rate_limit(self, reset_time: Any = None, *, session: str = "default", timestamp: Any = None) -> Dict[str, Any]:
        ts = _to_ms(timestamp) if timestamp is not None else _now_ms()
        if ts is None:
            ts = _now_ms()
        reset_ms = _to_ms(reset_time) if reset_time is not None else None
        record = {
            "timestamp": ts,
            "reset_time": reset_ms,
            "session": session or "default",
            "duration": (reset_ms - ts) if reset_ms is not None else None,
        }
        self._append("rate_limits", record)
        logger.debug(f"recorded rate limit session={record['session']}")
        return record

    def record_resume(self, *, success: bool = True, session: str = "default", timestamp: Any = None) -> Dict[str, Any]:
        ts = _to_ms(timestamp) if timestamp is not None else _now_ms()
        record = {
            "timestamp": ts if ts is not None else _now_ms(),
            "session": session or "default",
            "success": bool(success),
        }
        self._append("resumes", record)
        logger.debug(f"recorded resume session={record['session']} success={record['success']}")
        return record

    # -- analysis ------------------------------------------------------------

    @staticmethod
    def _since(records: List[Dict[str, Any]], days: int, now_ms: int) -> List[Dict[str, Any]]:
        cutoff = now_ms - days * _DAY_MS
        return [r for r in records if r["timestamp"] >= cutoff]

    @staticmethod
    def _bucket(ms: float, period: str) -> str:
        dt = datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
        return dt.strftime("%Y-%m-%d %H:00") if period == "hour" else dt.strftime("%Y-%m-%d")

    def _window_stats(self, data: Dict[str, Any], days: int, now_ms: int) -> Dict[str, Any]:
        limits = self._since(data["rate_limits"], days, now_ms)
        resumes = self._since(data["resumes"], days, now_ms)
        durations = [r["duration"] for r in limits if isinstance(r.get("duration"), (int, float))]
        avg_wait = sum(durations) / len(durations) if durations else 0.0

        hourly = Counter(self._bucket(r["timestamp"], "hour") for r in limits)
        daily = Counter(self._bucket(r["timestamp"], "day") for r in limits)
        peak_hour = hourly.most_common(1)
        peak_day = daily.most_common(1)

        return {
            "period": f"{days} days",
            "rate_limit_count": len(limits),
            "resume_count": len(resumes),
            "successful_resumes": sum(1 for r in resumes if r.get("success")),
            "avg_wait_ms": int(round(avg_wait)),
            "avg_wait_minutes": int(round(avg_wait / 60000)),
            "daily_average": len(limits) / days,
            "peak_hour": {"time": peak_hour[0][0], "count": peak_hour[0][1]} if peak_hour else None,
            "peak_day": {"date": peak_day[0][0], "count": peak_day[0][1]} if peak_day else None,
            "hourly_distribution": dict(hourly),
            "daily_distribution": dict(daily),
        }

    def statistics(self, *, now_ms: Optional[int] = None) -> Dict[str, Any]:
        now_ms = _now_ms() if now_ms is None else now_ms
        data = self._load()
        limits = data["rate_limits"]
        resumes = data["resumes"]
        oldest = min((r["timestamp"] for r in limits), default=None)
        return {
            "last_7_days": self._window_stats(data, 7, now_ms),
            "last_30_days": self._window_stats(data, 30, now_ms),
            "all_time": {
                "rate_limit_count": len(limits),
                "resume_count": len(resumes),
                "successful_resumes": sum(1 for r in resumes if r.get("success")),
                "oldest_record": _ms_iso(oldest) if oldest is not None else None,
            },
        }

    def prediction(self, *, now_ms: Optional[int] = None) -> Dict[str, Any]:
        """Guess the next rate limit from the mean interval of the last week.

        Confidence follows the coefficient of variation of the intervals:
        below 0.2 is high, below 0.5 medium, anything else low.
        """
        now_ms = _now_ms() if now_ms is None else now_ms
        recent = sorted(self._since(self._load()["rate_limits"], 7, now_ms), key=lambda r: r["timestamp"])
        if not recent:
            return {"confidence": "none", "message": "Insufficient data for prediction", "next_predicted_time": None}

        intervals = [b["timestamp"] - a["timestamp"] for a, b in zip(recent, recent[1:])]
        if not intervals:
            return {"confidence": "low", "message": "Only one rate limit event recorded", "next_predicted_time": None}

        avg = sum(intervals) / len(intervals)
        predicted = recent[-1]["timestamp"] + avg
        variance = sum((i - avg) ** 2 for i in intervals) / len(intervals)
        cv = math.sqrt(variance) / avg if avg > 0 else math.inf
        if cv < 0.2:
            confidence = "high"
        elif cv < 0.5:
            confidence = "medium"
        else:
            confidence = "low"

        if predicted > now_ms:
            message = f"Next rate limit predicted around {_ms_iso(predicted)}"
        else:
            message = "Pattern suggests rate limit may occur soon"
        return {
            "confidence": confidence,
            "next_predicted_time": _ms_iso(predicted),
            "avg_interval_ms": int(round(avg)),
            "avg_interval_hours": round(avg / 3_600_000, 1),
            "sample_size": len(intervals),
            "message": message,
        }

    # -- maintenance ---------------------------------------------------------

    def cleanup(self, *, now_ms: Optional[int] = None) -> Dict[str, Any]:
        """Drop records older than the retention window."""
        now_ms = _now_ms() if now_ms is None else now_ms
        cutoff = now_ms - self.retention_days * _DAY_MS
        with locked(self.lock_path):
            data = self._load()
            before_limits = len(data["rate_limits"])
            before_resumes = len(data["resumes"])
            data["rate_limits"] = [r for r in data["rate_limits"] if r["timestamp"] >= cutoff]
            data["resumes"] = [r for r in data["resumes"] if r["timestamp"] >= cutoff]
            removed_limits = before_limits - len(data["rate_limits"])
            removed_resumes = before_resumes - len(data["resumes"])
            if removed_limits or removed_resumes:
                atomic_write_json(self.path, data)
        if removed_limits or removed_resumes:
            logger.info(f"analytics cleanup removed {removed_limits} rate limit(s), {removed_resumes} resume(s)")
        return {
            "removed_rate_limits": removed_limits,
            "removed_resumes": removed_resumes,
            "retention_days": self.retention_days,
            "cutoff": _ms_iso(cutoff),
        }

    def export(self, *, now_ms: Optional[int] = None) -> Dict[str, Any]:
        now_ms = _now_ms() if now_ms is None else now_ms
        data = self._load()
        return {
            "exported": _ms_iso(now_ms),
            "retention_days": self.retention_days,
            "statistics": self.statistics(now_ms=now_ms),
            "prediction": self.prediction(now_ms=now_ms),
            "raw_data": {"rate_limits": data["rate_limits"], "resumes": data["resumes"]},
            "metadata": {
                "version": data["version"],
                "total_events": len(data["rate_limits"]) + len(data["resumes"]),
            },
        }

    def clear(self) -> None:
        with locked(self.lock_path):
            atomic_write_json(self.path, {"version": ANALYTICS_VERSION, "rate_limits": [], "resumes": []})
