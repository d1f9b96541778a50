import asyncio
import os
import tempfile
import unittest
from pathlib import Path


class TestTranscriptVerification(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)

    def tearDown(self) -> None:
        self._td.cleanup()

    async def test_growth_verifies(self) -> None:
        from autoresume.verification.transcript import capture_baseline, verify_resume_by_transcript

        path = self.root / "session.jsonl"
        path.write_text('{"type":"user"}\n', encoding="utf-8")
        baseline = capture_baseline(path)
        self.assertTrue(baseline.exists)

        async def append_later() -> None:
            await asyncio.sleep(0.05)
            with path.open("a", encoding="utf-8") as f:
                f.write('{"type":"assistant"}\n')

        writer = asyncio.create_task(append_later())
        result = await verify_resume_by_transcript(path, baseline, window_s=5.0, poll_s=0.01)
        await writer

        self.assertTrue(result.verified)
        self.assertEqual(result.method, "transcript_growth")
        self.assertEqual(result.new_bytes, len('{"type":"assistant"}\n'))

    async def test_quiet_transcript_times_out(self) -> None:
        from autoresume.verification.transcript import capture_baseline, verify_resume_by_transcript

        path = self.root / "session.jsonl"
        path.write_text("x\n", encoding="utf-8")
        result = await verify_resume_by_transcript(path, capture_baseline(path), window_s=0.05, poll_s=0.01)
        self.assertFalse(result.verified)
        self.assertEqual(result.method, "timeout")
        self.assertGreaterEqual(result.elapsed_ms, 40)

    async def test_transcript_created_after_baseline(self) -> None:
        from autoresume.verification.transcript import capture_baseline, verify_resume_by_transcript

        path = self.root / "new.jsonl"
        baseline = capture_baseline(path)
        self.assertFalse(baseline.exists)
        path.write_text("{}\n", encoding="utf-8")

        result = await verify_resume_by_transcript(path, baseline, window_s=1.0, poll_s=0.01)
        self.assertTrue(result.verified)
        self.assertEqual(result.new_bytes, 3)

    async def test_stop_event_cancels(self) -> None:
        from autoresume.verification.transcript import capture_baseline, verify_resume_by_transcript

        path = self.root / "session.jsonl"
        path.write_text("x\n", encoding="utf-8")
        stop = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, stop.set)

        result = await verify_resume_by_transcript(path, capture_baseline(path), window_s=30.0, poll_s=1.0, stop_event=stop)
        self.assertFalse(result.verified)
        self.assertEqual(result.method, "cancelled")
        self.assertLess(result.elapsed_ms, 5000)

    async def test_no_transcript(self) -> None:
        from autoresume.verification.transcript import capture_baseline, verify_resume_by_transcript

        result = await verify_resume_by_transcript(None, capture_baseline(None))
        self.assertEqual(result.method, "no_transcript")
        self.assertFalse(result.verified)


class TestTranscriptLookup(unittest.TestCase):
    def test_latest_transcript_picks_newest(self) -> None:
        from autoresume.verification.transcript import latest_transcript, resolve_transcript

        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "proj-a").mkdir()
            (root / "proj-b").mkdir()
            old = root / "proj-a" / "old.jsonl"
            new = root / "proj-b" / "new.jsonl"
            old.write_text("{}\n", encoding="utf-8")
            new.write_text("{}\n", encoding="utf-8")
            (root / "proj-b" / "notes.txt").write_text("x", encoding="utf-8")
            os.utime(old, (1_000_000, 1_000_000))
            os.utime(new, (2_000_000, 2_000_000))

            self.assertEqual(latest_transcript(root), new)
            self.assertEqual(resolve_transcript(None, root), new)
            self.assertEqual(resolve_transcript(str(old), root), old)
            self.assertIsNone(resolve_transcript(None, None))
            self.assertIsNone(latest_transcript(root / "missing"))


if __name__ == "__main__":
    unittest.main()
