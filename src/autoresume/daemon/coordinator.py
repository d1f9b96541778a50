"""Single-flight resume coordinator.

One coordinator owns the "resume in progress" flag. While it is set every
other trigger is dropped; the scheduler re-arms from the queue once the
coordinator reports idle.

A successful delivery commits the queue entry as `completed` before the
verification window starts. A detection that re-surfaces during verification
then dedups against a finished entry instead of starting a second attempt.
Retries after an unverified delivery work on the in-memory event only.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Set

from ..contracts.v1.delivery import DeliveryAttempt, ResumeOutcome, ResumeState, VerificationResult
from ..contracts.v1.queue import DetectionEvent
from ..delivery.base import DeliveryTier
from ..delivery.tiered import deliver_resume
from ..errors import DeliveryNoTargets, ResumeError, RetryExhausted, VerificationTimeout
from ..kernel.analytics import AnalyticsCollector
from ..kernel.queue import EventQueue
from ..kernel.settings import Settings
from ..verification.transcript import capture_baseline, resolve_transcript, verify_resume_by_transcript
from .notify import Notifier
from .plugins import PluginRegistry
from .retry import RetryPolicy
from .status import StatusBridge

logger = logging.getLogger("autoresume.coordinator")

DeliverFn = Callable[..., Awaitable[DeliveryAttempt]]
VerifyFn = Callable[..., Awaitable[VerificationResult]]


def session_label(event: DetectionEvent) -> str:
    if event.transcript_path:
        return Path(event.transcript_path).stem
    if event.source_pid:
        return f"pid-{event.source_pid}"
    return "default"


class ResumeCoordinator:
    def __init__(
        self,
        queue: EventQueue,
        *,
        settings: Optional[Settings] = None,
        retry: Optional[RetryPolicy] = None,
        tiers: Optional[Sequence[DeliveryTier]] = None,
        deliver: DeliverFn = deliver_resume,
        verify: VerifyFn = verify_resume_by_transcript,
        notifier: Optional[Notifier] = None,
        analytics: Optional[AnalyticsCollector] = None,
        status: Optional[StatusBridge] = None,
        plugins: Optional[PluginRegistry] = None,
        on_idle: Optional[Callable[[], None]] = None,
    ) -> None:
        self.queue = queue
        self.settings = settings or Settings()
        r = self.settings.resume
        self.retry = retry or RetryPolicy(
            max_retries=r.max_retries,
            base_delay_s=r.retry_base_delay_sec,
            max_delay_s=r.retry_max_delay_sec,
        )
        self.tiers = tiers
        self._deliver = deliver
        self._verify = verify
        self.notifier = notifier
        self.analytics = analytics
        self.status = status
        self.plugins = plugins
        self.on_idle = on_idle

        self._busy = False
        self._state: ResumeState = "IDLE"
        self._current: Optional[str] = None
        self._stop = asyncio.Event()
        self._background: Set[asyncio.Task] = set()

    # -- accessors -----------------------------------------------------------

    def is_resume_in_progress(self) -> bool:
        return self._busy

    @property
    def state(self) -> ResumeState:
        return self._state

    @property
    def current_event_id(self) -> Optional[str]:
        return self._current

    def stop(self) -> None:
        """End any verification window or retry wait early."""
        self._stop.set()

    # -- background work -----------------------------------------------------

    def _spawn(self, coro: Awaitable[Any], what: str) -> None:
        async def _guard() -> None:
            try:
                await coro
            except Exception as e:
                # Collaborators never change the outcome of an attempt.
                logger.warning(f"{what} failed: {type(e).__name__}: {e}")

        task = asyncio.get_running_loop().create_task(_guard())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain_background(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _set_state(self, state: ResumeState, event: DetectionEvent, **extra: Any) -> None:
        self._state = state
        logger.debug(f"state -> {state}", extra={"event_id": event.id, "state": state})
        if self.status is not None:
            data: Dict[str, Any] = {"state": state, "event_id": event.id, "reset_time": event.reset_time}
            data.update(extra)
            self.status.broadcast_event("resume_state", data)
            self.status.broadcast_status({"state": state})

    def _record_resume(self, event: DetectionEvent, success: bool) -> None:
        if self.analytics is None:
            return
        try:
            self.analytics.record_resume(success=success, session=session_label(event))
        except OSError as e:
            logger.warning(f"analytics write failed: {e}", extra={"event_id": event.id})

    def _notify_failure(self, event: DetectionEvent, reason: str) -> None:
        if self.notifier is not None:
            self._spawn(self.notifier.notify_failure(event.id, reason), "failure notification")

    async def _pause(self, delay_s: float) -> bool:
        """Wait up to `delay_s`; True when stop() cut the wait short."""
        if self._stop.is_set():
            return True
        if delay_s <= 0:
            return False
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay_s)
        except asyncio.TimeoutError:
            return False
        return True

    # -- the attempt ---------------------------------------------------------

    async def attempt_resume(self, event: DetectionEvent) -> Optional[ResumeOutcome]:
        if self._busy:
            logger.info("resume already in progress; trigger dropped", extra={"event_id": event.id})
            return None

        self._busy = True
        self._current = event.id
        outcome = ResumeOutcome(event_id=event.id, state="ATTEMPTING")
        try:
            self._set_state("ATTEMPTING", event)
            self.queue.update_entry_status(event.id, "active")
            outcome = await self._run_attempts(event, outcome)
        except Exception as e:
            logger.exception(f"resume attempt crashed: {type(e).__name__}: {e}", extra={"event_id": event.id})
            if not outcome.delivered:
                try:
                    self.queue.update_entry_status(event.id, "failed")
                except OSError as qe:
                    # Left as is; an `active` entry goes back to pending on restart.
                    logger.error(f"could not mark entry failed: {qe}", extra={"event_id": event.id})
            outcome.state = "FAILED"
            outcome.failure = e.code if isinstance(e, ResumeError) else "unexpected_error"
            self._record_resume(event, False)
            self._notify_failure(event, f"{type(e).__name__}: {e}")
        finally:
            self.retry.reset(event.id)
            self._busy = False
            self._current = None
            self._state = "IDLE"
            if self.status is not None:
                self.status.broadcast_status({"state": "IDLE"})
            logger.info(
                f"resume finished: {outcome.state} after {outcome.attempts} attempt(s)",
                extra={"event_id": event.id, "state": outcome.state, "attempt": outcome.attempts},
            )
            if self.on_idle is not None:
                try:
                    self.on_idle()
                except Exception as e:
                    logger.warning(f"on_idle callback failed: {type(e).__name__}: {e}")
        return outcome

    async def _run_attempts(self, event: DetectionEvent, outcome: ResumeOutcome) -> ResumeOutcome:
        s = self.settings
        while True:
            attempt = self.retry.record_attempt(event.id)
            outcome.attempts = attempt
            if attempt > 1:
                self._set_state("ATTEMPTING", event, attempt=attempt)

            transcript = resolve_transcript(event.transcript_path, s.delivery.transcripts_path)
            baseline = capture_baseline(transcript)
            delivery = await self._deliver(
                s.resume_prompt,
                source_pid=event.source_pid,
                menu_selection=s.menu_selection,
                tiers=self.tiers,
                timeout_s=s.delivery.tier_timeout_sec,
            )
            outcome.delivery = delivery

            if not delivery.success:
                err = DeliveryNoTargets(delivery.error or "no delivery targets")
                may_retry = outcome.delivered or s.resume.retry_on_no_targets
                if may_retry and self.retry.should_retry(attempt) and not self._stop.is_set():
                    delay = self.retry.next_delay(attempt)
                    logger.warning(
                        f"delivery failed ({err}); retry in {delay:g}s",
                        extra={"event_id": event.id, "attempt": attempt},
                    )
                    if not await self._pause(delay):
                        continue
                return self._give_up(event, outcome, err, attempt)

            if not outcome.delivered:
                outcome.delivered = True
                self.queue.update_entry_status(event.id, "completed")
                if self.status is not None:
                    self.status.clear_rate_limit(event.id)
            self._set_state("DELIVERED", event, tier=delivery.tier, attempt=attempt)
            self._announce_delivery(event, delivery)

            self._set_state("VERIFYING", event, attempt=attempt)
            verification = await self._verify(
                transcript,
                baseline,
                window_s=float(s.resume.verification_window_sec),
                poll_s=s.resume.verification_poll_ms / 1000.0,
                stop_event=self._stop,
            )
            outcome.verification = verification

            if verification.verified:
                outcome.verified = True
                outcome.state = "VERIFIED"
                self._set_state("VERIFIED", event, attempt=attempt, new_bytes=verification.new_bytes)
                self._record_resume(event, True)
                return outcome

            self._set_state("UNVERIFIED", event, attempt=attempt, method=verification.method)
            outcome.state = "UNVERIFIED"
            if verification.method in ("cancelled", "no_transcript"):
                # Nothing to observe, or shutting down: more keystrokes cannot help.
                logger.warning(f"resume unverified ({verification.method})", extra={"event_id": event.id})
                self._record_resume(event, False)
                return outcome

            if self.retry.should_retry(attempt) and not self._stop.is_set():
                delay = self.retry.next_delay(attempt)
                logger.warning(
                    f"no transcript activity within {s.resume.verification_window_sec}s; redelivering in {delay:g}s",
                    extra={"event_id": event.id, "attempt": attempt},
                )
                if not await self._pause(delay):
                    continue
            return self._give_up(event, outcome, VerificationTimeout("no transcript activity after delivery"), attempt)

    def _give_up(self, event: DetectionEvent, outcome: ResumeOutcome, cause: ResumeError, attempt: int) -> ResumeOutcome:
        err: ResumeError = RetryExhausted(f"gave up after {attempt} attempt(s): {cause}", cause=cause) if attempt > 1 else cause
        if not outcome.delivered:
            self.queue.update_entry_status(event.id, "failed")
        outcome.state = "FAILED"
        outcome.failure = err.code
        self._set_state("FAILED", event, attempt=attempt, failure=err.code)
        logger.error(f"resume failed: {err}", extra={"event_id": event.id, "attempt": attempt})
        self._record_resume(event, False)
        self._notify_failure(event, str(cause))
        return outcome

    def _announce_delivery(self, event: DetectionEvent, delivery: DeliveryAttempt) -> None:
        if self.notifier is not None:
            self._spawn(self.notifier.notify_resume(session_label(event)), "resume notification")
        if self.plugins is not None:
            payload = {
                "event_id": event.id,
                "reset_time": event.reset_time,
                "tier": delivery.tier,
                "targets": [t.target.target for t in delivery.targets if t.ok],
                "partial": delivery.partial,
            }
            self._spawn(self.plugins.call_hook("onResumeSent", payload), "onResumeSent hook")
