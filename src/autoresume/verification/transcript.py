"""Post-delivery verification by transcript activity.

Claude Code appends to the session transcript (a JSONL file under
~/.claude/projects) as soon as it starts working again. Growth or a newer mtime
after the keys went out is taken as proof the resume landed.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from ..contracts.v1.delivery import VerificationResult

logger = logging.getLogger("autoresume.verification")

PathLike = Union[str, Path]


@dataclass(frozen=True)
class TranscriptBaseline:
    path: Optional[str]
    size: int = 0
    mtime_ns: int = 0
    exists: bool = False


def capture_baseline(path: Optional[PathLike]) -> TranscriptBaseline:
    """Size and mtime of the transcript right before delivery."""
    if not path:
        return TranscriptBaseline(path=None)
    try:
        st = os.stat(path)
    except OSError:
        return TranscriptBaseline(path=str(path))
    return TranscriptBaseline(path=str(path), size=int(st.st_size), mtime_ns=int(st.st_mtime_ns), exists=True)


def latest_transcript(transcripts_dir: PathLike) -> Optional[Path]:
    """Most recently modified *.jsonl below `transcripts_dir`."""
    root = Path(transcripts_dir).expanduser()
    if not root.is_dir():
        return None
    best: Optional[Path] = None
    best_mtime = -1
    for p in root.rglob("*.jsonl"):
        try:
            mtime = p.stat().st_mtime_ns
        except OSError:
            continue
        if mtime > best_mtime:
            best, best_mtime = p, mtime
    return best


def resolve_transcript(transcript_path: Optional[PathLike], transcripts_dir: Optional[PathLike]) -> Optional[Path]:
    if transcript_path:
        return Path(transcript_path).expanduser()
    if transcripts_dir:
        return latest_transcript(transcripts_dir)
    return None


def _advanced(path: str, baseline: TranscriptBaseline) -> Optional[int]:
    """Bytes appended since the baseline when the file moved on, else None."""
    try:
        st = os.stat(path)
    except OSError:
        return None
    if not baseline.exists:
        return int(st.st_size)
    if st.st_size > baseline.size or st.st_mtime_ns > baseline.mtime_ns:
        return max(0, int(st.st_size) - baseline.size)
    return None


async def verify_resume_by_transcript(
    transcript_path: Optional[PathLike],
    baseline: TranscriptBaseline,
    window_s: float = 15.0,
    poll_s: float = 1.0,
    stop_event: Optional[asyncio.Event] = None,
) -> VerificationResult:
    if not transcript_path:
        return VerificationResult(verified=False, method="no_transcript")

    path = str(transcript_path)
    poll_s = max(0.01, float(poll_s))
    started = time.monotonic()

    def elapsed_ms() -> int:
        return int((time.monotonic() - started) * 1000)

    while True:
        grown = _advanced(path, baseline)
        if grown is not None:
            logger.info(f"transcript advanced by {grown} byte(s)")
            return VerificationResult(verified=True, method="transcript_growth", new_bytes=grown, elapsed_ms=elapsed_ms())

        remaining = float(window_s) - (time.monotonic() - started)
        if remaining <= 0:
            return VerificationResult(verified=False, method="timeout", elapsed_ms=elapsed_ms())

        wait = min(poll_s, remaining)
        if stop_event is None:
            await asyncio.sleep(wait)
            continue
        if stop_event.is_set():
            return VerificationResult(verified=False, method="cancelled", elapsed_ms=elapsed_ms())
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=wait)
        except asyncio.TimeoutError:
            continue
        return VerificationResult(verified=False, method="cancelled", elapsed_ms=elapsed_ms())
