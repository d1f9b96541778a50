from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from ..contracts.v1.queue import PENDING_STATUSES, DetectionEvent
from ..kernel.queue import EventQueue
from ..kernel.settings import Settings
from ..kernel.staleness import is_stale
from ..util.time import iso, parse_utc_iso, utc_now
from .status import StatusBridge

logger = logging.getLogger("autoresume.scheduler")


class ResumeScheduler:
    """Arms one countdown for the earliest fresh pending entry.

    Only an armed, not yet fired countdown is ever replaced, and only by an
    entry that fires earlier. Once the coordinator has started an attempt the
    scheduler stays out of the way until it reports idle.
    """

    def __init__(
        self,
        queue: EventQueue,
        coordinator: Any,
        *,
        settings: Optional[Settings] = None,
        status: Optional[StatusBridge] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.queue = queue
        self.coordinator = coordinator
        self.settings = settings or Settings()
        self.status = status
        self.clock = clock
        self._handle: Optional[asyncio.TimerHandle] = None
        self._armed_id: Optional[str] = None
        self._fire_at: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def armed_event_id(self) -> Optional[str]:
        return self._armed_id if self._handle is not None else None

    @property
    def fire_at(self) -> Optional[datetime]:
        return self._fire_at if self._handle is not None else None

    def fire_time(self, event: DetectionEvent) -> Optional[datetime]:
        reset = parse_utc_iso(event.reset_time)
        if reset is None:
            return None
        return reset + timedelta(seconds=self.settings.resume.post_reset_delay_sec)

    def _next_candidate(self, now: datetime) -> Optional[DetectionEvent]:
        threshold = self.settings.resume.stale_threshold_ms
        for entry in self.queue.pending_entries():
            if is_stale(entry.reset_time, threshold, now=now):
                logger.debug(f"stale entry skipped reset_time={entry.reset_time}", extra={"event_id": entry.id})
                continue
            return entry
        return None

    def reschedule(self) -> Optional[DetectionEvent]:
        """Arm the countdown for the next fresh entry.

        Returns the candidate when its countdown is (or stays) armed, None when
        nothing was armed for it.
        """
        if self.coordinator.is_resume_in_progress():
            logger.debug("coordinator busy; not arming")
            return None

        now = self.clock()
        candidate = self._next_candidate(now)
        if candidate is None:
            if self._handle is not None:
                logger.info("armed entry no longer pending; countdown cancelled", extra={"event_id": self._armed_id})
                self.cancel()
            return None

        fire_at = self.fire_time(candidate)
        if fire_at is None:
            return None

        if self._handle is not None and self._fire_at is not None:
            if self._armed_id == candidate.id:
                return candidate
            if self._fire_at <= fire_at:
                return None
            logger.info(f"earlier reset time replaces armed countdown for {self._armed_id}", extra={"event_id": candidate.id})
            self.cancel()

        self._arm(candidate, fire_at, now)
        return candidate

    def _arm(self, entry: DetectionEvent, fire_at: datetime, now: datetime) -> None:
        delay_s = max(0.0, (fire_at - now).total_seconds())
        # Status first: if the queue is locked nothing is armed and the next
        # reschedule tries again.
        if entry.status == "pending":
            self.queue.update_entry_status(entry.id, "waiting")
        self._handle = asyncio.get_running_loop().call_later(delay_s, self._fire, entry.id)
        self._armed_id = entry.id
        self._fire_at = fire_at

        logger.info(f"countdown armed: fires in {delay_s:.0f}s at {iso(fire_at)}", extra={"event_id": entry.id})
        if self.status is not None:
            self.status.broadcast_event(
                "countdown",
                {"event_id": entry.id, "reset_time": entry.reset_time, "fire_at": iso(fire_at), "seconds": round(delay_s, 1)},
            )

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._armed_id = None
        self._fire_at = None

    def _fire(self, entry_id: str) -> None:
        self._handle = None
        self._armed_id = None
        self._fire_at = None

        if self.coordinator.is_resume_in_progress():
            # The coordinator re-arms through on_idle.
            logger.info("countdown fired while busy; dropped", extra={"event_id": entry_id})
            return

        entry = self.queue.get_entry(entry_id)
        if entry is None or entry.status not in PENDING_STATUSES:
            self.reschedule()
            return
        if is_stale(entry.reset_time, self.settings.resume.stale_threshold_ms, now=self.clock()):
            logger.info("entry went stale before firing; skipped", extra={"event_id": entry_id})
            self.reschedule()
            return

        logger.info("countdown fired; resuming", extra={"event_id": entry_id})
        self._task = asyncio.get_running_loop().create_task(self.coordinator.attempt_resume(entry))
        self._task.add_done_callback(self._attempt_done)

    def trigger_now(self, entry: DetectionEvent) -> bool:
        """Start an attempt immediately, bypassing the countdown (manual trigger)."""
        if self.coordinator.is_resume_in_progress():
            return False
        if self._armed_id == entry.id:
            self.cancel()
        self._task = asyncio.get_running_loop().create_task(self.coordinator.attempt_resume(entry))
        self._task.add_done_callback(self._attempt_done)
        return True

    @staticmethod
    def _attempt_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"resume task failed: {type(exc).__name__}: {exc}")

    async def wait_idle(self) -> None:
        if self._task is not None and not self._task.done():
            await asyncio.gather(self._task, return_exceptions=True)
