import asyncio
import tempfile
import unittest
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List


def _delivered(tier: str = "tmux"):
    from autoresume.contracts.v1 import DeliveryAttempt, DeliveryTarget, TargetOutcome

    return DeliveryAttempt(
        tiers_attempted=[tier],
        targets=[TargetOutcome(target=DeliveryTarget(target="work:0.0"), ok=True, tier=tier)],
        success=True,
        tier=tier,
    )


def _not_delivered():
    from autoresume.contracts.v1 import DeliveryAttempt

    return DeliveryAttempt(tiers_attempted=["tmux", "pty", "keystroke"], success=False, error="keystroke: xdotool not found")


class FakeDeliver:
    def __init__(self, results=None, *, gate: asyncio.Event = None, raises: Exception = None) -> None:
        self.results = list(results or [])
        self.gate = gate
        self.raises = raises
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, text, *, source_pid=None, menu_selection="1", tiers=None, timeout_s=5.0):
        self.calls.append({"text": text, "source_pid": source_pid, "menu_selection": menu_selection})
        if self.gate is not None:
            await self.gate.wait()
        if self.raises is not None:
            raise self.raises
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0] if self.results else _delivered()


class FakeVerify:
    def __init__(self, methods=("transcript_growth",), *, queue=None) -> None:
        self.methods = list(methods)
        self.queue = queue
        self.calls = 0
        self.status_seen: List[str] = []

    async def __call__(self, transcript, baseline, *, window_s, poll_s, stop_event=None):
        from autoresume.contracts.v1 import VerificationResult

        self.calls += 1
        if self.queue is not None:
            self.status_seen.extend(e.status for e in self.queue.entries())
        method = self.methods.pop(0) if len(self.methods) > 1 else self.methods[0]
        return VerificationResult(verified=method == "transcript_growth", method=method, new_bytes=12 if method == "transcript_growth" else 0)


class FakeNotifier:
    def __init__(self) -> None:
        self.resumes: List[str] = []
        self.failures: List[tuple] = []

    async def notify_resume(self, session: str) -> bool:
        self.resumes.append(session)
        return True

    async def notify_failure(self, event_id: str, reason: str) -> bool:
        self.failures.append((event_id, reason))
        return True


class TestResumeCoordinator(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        from autoresume.daemon.status import StatusBridge
        from autoresume.kernel.analytics import AnalyticsCollector
        from autoresume.kernel.queue import EventQueue
        from autoresume.kernel.settings import DeliverySettings, Settings

        self._td = tempfile.TemporaryDirectory()
        root = Path(self._td.name)
        self.transcript = root / "session.jsonl"
        self.transcript.write_text("{}\n", encoding="utf-8")
        self.queue = EventQueue(root / "status.json")
        self.settings = Settings(delivery=DeliverySettings(transcripts_dir=str(root)))
        self.analytics = AnalyticsCollector(root / "analytics.json")
        self.status = StatusBridge(feed=False)
        self.events: List[tuple] = []
        self.status.add_listener(lambda kind, data: self.events.append((kind, dict(data))))
        self.idle_calls = 0
        self.notifier = FakeNotifier()

    def tearDown(self) -> None:
        self._td.cleanup()

    def _entry(self, **delta):
        from autoresume.util.time import iso, utc_now

        entry = self.queue.add_detection(
            {"reset_time": iso(utc_now() + timedelta(**(delta or {"minutes": -1}))), "source_pid": 4242, "transcript_path": str(self.transcript)}
        )
        assert entry is not None
        return entry

    def _coordinator(self, deliver, verify, *, max_retries: int = 3, settings=None, queue=None):
        from autoresume.daemon.coordinator import ResumeCoordinator
        from autoresume.daemon.retry import RetryPolicy

        def on_idle() -> None:
            self.idle_calls += 1

        return ResumeCoordinator(
            queue or self.queue,
            settings=settings or self.settings,
            retry=RetryPolicy(max_retries=max_retries, base_delay_s=0),
            deliver=deliver,
            verify=verify,
            notifier=self.notifier,  # type: ignore[arg-type]
            analytics=self.analytics,
            status=self.status,
            on_idle=on_idle,
        )

    def _states(self) -> List[str]:
        return [d["state"] for kind, d in self.events if kind == "resume_state"]

    def _recorded(self) -> List[bool]:
        return [r["success"] for r in self.analytics.export()["raw_data"]["resumes"]]

    async def test_successful_resume_is_verified(self) -> None:
        entry = self._entry()
        deliver = FakeDeliver()
        verify = FakeVerify(queue=self.queue)
        c = self._coordinator(deliver, verify)

        outcome = await c.attempt_resume(entry)

        assert outcome is not None
        self.assertEqual(outcome.state, "VERIFIED")
        self.assertTrue(outcome.delivered)
        self.assertTrue(outcome.verified)
        self.assertEqual(outcome.attempts, 1)
        self.assertEqual(deliver.calls[0], {"text": "continue", "source_pid": 4242, "menu_selection": "1"})
        self.assertEqual(self._states(), ["ATTEMPTING", "DELIVERED", "VERIFYING", "VERIFIED"])

        stored = self.queue.get_entry(entry.id)
        assert stored is not None
        self.assertEqual(stored.status, "completed")
        self.assertIsNotNone(stored.completed_at)

        self.assertFalse(c.is_resume_in_progress())
        self.assertEqual(c.state, "IDLE")
        self.assertIsNone(c.current_event_id)
        self.assertEqual(self.idle_calls, 1)
        self.assertEqual(self._recorded(), [True])

        await c.drain_background()
        self.assertEqual(self.notifier.resumes, ["session"])
        self.assertEqual(self.notifier.failures, [])

    async def test_entry_completed_before_verification(self) -> None:
        entry = self._entry()
        verify = FakeVerify(queue=self.queue)
        await self._coordinator(FakeDeliver(), verify).attempt_resume(entry)
        self.assertEqual(verify.status_seen, ["completed"])

    async def test_concurrent_trigger_is_dropped(self) -> None:
        first = self._entry(minutes=-2)
        second = self._entry(minutes=-1)
        gate = asyncio.Event()
        deliver = FakeDeliver(gate=gate)
        c = self._coordinator(deliver, FakeVerify())

        task = asyncio.create_task(c.attempt_resume(first))
        for _ in range(10):
            await asyncio.sleep(0)
            if deliver.calls:
                break
        self.assertTrue(c.is_resume_in_progress())
        self.assertEqual(c.current_event_id, first.id)

        self.assertIsNone(await c.attempt_resume(second))

        gate.set()
        outcome = await task
        assert outcome is not None
        self.assertEqual(outcome.state, "VERIFIED")
        self.assertEqual(len(deliver.calls), 1)
        self.assertEqual(self.queue.get_entry(second.id).status, "pending")  # type: ignore[union-attr]

    async def test_unverified_retries_then_gives_up(self) -> None:
        entry = self._entry()
        deliver = FakeDeliver()
        verify = FakeVerify(methods=("timeout",))
        c = self._coordinator(deliver, verify, max_retries=3)

        outcome = await c.attempt_resume(entry)

        assert outcome is not None
        self.assertEqual(outcome.state, "FAILED")
        self.assertEqual(outcome.failure, "retry_exhausted")
        self.assertEqual(outcome.attempts, 3)
        self.assertEqual(len(deliver.calls), 3)
        self.assertEqual(verify.calls, 3)
        # delivery already committed the entry; giving up does not reopen it
        self.assertEqual(self.queue.get_entry(entry.id).status, "completed")  # type: ignore[union-attr]
        self.assertEqual(self._states()[-1], "FAILED")
        self.assertFalse(c.is_resume_in_progress())
        self.assertEqual(self._recorded(), [False])

        await c.drain_background()
        self.assertEqual(self.notifier.resumes, ["session"] * 3)
        self.assertEqual(len(self.notifier.failures), 1)
        self.assertEqual(self.notifier.failures[0][0], entry.id)
        self.assertIn("no transcript activity", self.notifier.failures[0][1])

    async def test_retry_then_verified(self) -> None:
        entry = self._entry()
        deliver = FakeDeliver()
        c = self._coordinator(deliver, FakeVerify(methods=("timeout", "transcript_growth")))

        outcome = await c.attempt_resume(entry)

        assert outcome is not None
        self.assertEqual(outcome.state, "VERIFIED")
        self.assertEqual(outcome.attempts, 2)
        self.assertEqual(len(deliver.calls), 2)

    async def test_single_attempt_timeout_reports_verification_timeout(self) -> None:
        entry = self._entry()
        outcome = await self._coordinator(FakeDeliver(), FakeVerify(methods=("timeout",)), max_retries=1).attempt_resume(entry)
        assert outcome is not None
        self.assertEqual(outcome.failure, "verification_timeout")

    async def test_no_targets_without_retry(self) -> None:
        from autoresume.kernel.settings import DeliverySettings, ResumeSettings, Settings

        settings = Settings(
            resume=ResumeSettings(retry_on_no_targets=False),
            delivery=DeliverySettings(transcripts_dir=self._td.name),
        )
        entry = self._entry()
        deliver = FakeDeliver([_not_delivered()])
        verify = FakeVerify()
        outcome = await self._coordinator(deliver, verify, settings=settings).attempt_resume(entry)

        assert outcome is not None
        self.assertEqual(outcome.state, "FAILED")
        self.assertEqual(outcome.failure, "delivery_no_targets")
        self.assertEqual(len(deliver.calls), 1)
        self.assertEqual(verify.calls, 0)
        self.assertEqual(self.queue.get_entry(entry.id).status, "failed")  # type: ignore[union-attr]

    async def test_no_targets_retried_until_delivered(self) -> None:
        entry = self._entry()
        deliver = FakeDeliver([_not_delivered(), _delivered("pty")])
        outcome = await self._coordinator(deliver, FakeVerify()).attempt_resume(entry)

        assert outcome is not None
        self.assertEqual(outcome.state, "VERIFIED")
        self.assertEqual(outcome.attempts, 2)
        self.assertEqual(outcome.delivery.tier, "pty")  # type: ignore[union-attr]

    async def test_cancelled_verification_is_not_retried(self) -> None:
        entry = self._entry()
        deliver = FakeDeliver()
        outcome = await self._coordinator(deliver, FakeVerify(methods=("cancelled",))).attempt_resume(entry)

        assert outcome is not None
        self.assertEqual(outcome.state, "UNVERIFIED")
        self.assertIsNone(outcome.failure)
        self.assertEqual(len(deliver.calls), 1)
        self.assertEqual(self.queue.get_entry(entry.id).status, "completed")  # type: ignore[union-attr]
        self.assertEqual(self._recorded(), [False])

    async def test_missing_transcript_is_recorded_unverified(self) -> None:
        entry = self._entry()
        deliver = FakeDeliver()
        c = self._coordinator(deliver, FakeVerify(methods=("no_transcript",)))

        outcome = await c.attempt_resume(entry)

        assert outcome is not None
        self.assertEqual(outcome.state, "UNVERIFIED")
        self.assertEqual(len(deliver.calls), 1)
        self.assertEqual(self._recorded(), [False])
        await c.drain_background()
        self.assertEqual(self.notifier.failures, [])

    async def test_flag_cleared_when_delivery_raises(self) -> None:
        entry = self._entry()
        c = self._coordinator(FakeDeliver(raises=RuntimeError("boom")), FakeVerify())

        outcome = await c.attempt_resume(entry)

        assert outcome is not None
        self.assertEqual(outcome.state, "FAILED")
        self.assertEqual(outcome.failure, "unexpected_error")
        self.assertFalse(c.is_resume_in_progress())
        self.assertEqual(c.state, "IDLE")
        self.assertEqual(self.idle_calls, 1)
        self.assertEqual(self.queue.get_entry(entry.id).status, "failed")  # type: ignore[union-attr]
        self.assertEqual(self._recorded(), [False])
        await c.drain_background()
        self.assertEqual([f[0] for f in self.notifier.failures], [entry.id])

        again = await self._coordinator(FakeDeliver(), FakeVerify()).attempt_resume(self._entry(minutes=-3))
        self.assertIsNotNone(again)

    async def test_queue_lock_timeout_does_not_escape(self) -> None:
        from autoresume.kernel.queue import EventQueue
        from autoresume.util.file_lock import acquire_lockfile, release_lockfile

        entry = self._entry()
        impatient = EventQueue(self.queue.path, lock_timeout_s=0.05)
        deliver = FakeDeliver()
        c = self._coordinator(deliver, FakeVerify(), queue=impatient)

        held = acquire_lockfile(self.queue.lock_path)
        try:
            outcome = await c.attempt_resume(entry)
        finally:
            release_lockfile(held)

        assert outcome is not None
        self.assertEqual(outcome.state, "FAILED")
        self.assertEqual(outcome.failure, "unexpected_error")
        self.assertEqual(deliver.calls, [])
        self.assertFalse(c.is_resume_in_progress())
        self.assertEqual(self.idle_calls, 1)
        # Neither write got through; the entry is untouched and can be retried.
        self.assertEqual(self.queue.get_entry(entry.id).status, "pending")  # type: ignore[union-attr]
        await c.drain_background()
        self.assertIn("LockUnavailableError", self.notifier.failures[0][1])

    async def test_stop_ends_retry_wait(self) -> None:
        from autoresume.daemon.coordinator import ResumeCoordinator
        from autoresume.daemon.retry import RetryPolicy

        entry = self._entry()
        deliver = FakeDeliver()
        c = ResumeCoordinator(
            self.queue,
            settings=self.settings,
            retry=RetryPolicy(max_retries=5, base_delay_s=60),
            deliver=deliver,
            verify=FakeVerify(methods=("timeout",)),
        )
        task = asyncio.create_task(c.attempt_resume(entry))
        await asyncio.sleep(0.05)
        c.stop()
        outcome = await asyncio.wait_for(task, timeout=2.0)

        assert outcome is not None
        self.assertEqual(outcome.state, "FAILED")
        self.assertEqual(len(deliver.calls), 1)


class TestSessionLabel(unittest.TestCase):
    def test_label_sources(self) -> None:
        from autoresume.contracts.v1 import DetectionEvent
        from autoresume.daemon.coordinator import session_label

        self.assertEqual(session_label(DetectionEvent(reset_time="x", transcript_path="/a/b/abc123.jsonl")), "abc123")
        self.assertEqual(session_label(DetectionEvent(reset_time="x", source_pid=7)), "pid-7")
        self.assertEqual(session_label(DetectionEvent(reset_time="x")), "default")


if __name__ == "__main__":
    unittest.main()
