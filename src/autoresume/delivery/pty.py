from __future__ import annotations

import logging
import os
from typing import Optional

from ..contracts.v1.delivery import DeliveryTarget, TargetOutcome, TierOutcome
from .base import DeliveryContext

logger = logging.getLogger("autoresume.delivery")

ESC = b"\x1b"
CTRL_U = b"\x15"


def resolve_pty(pid: int, *, proc_root: str = "/proc") -> Optional[str]:
    """Terminal device behind the process's stdin, or None."""
    try:
        target = os.readlink(os.path.join(proc_root, str(int(pid)), "fd", "0"))
    except (OSError, ValueError):
        return None
    if target.startswith("/dev/pts/") or target.startswith("/dev/tty"):
        return target
    return None


def build_pty_payload(text: str, menu_selection: str = "1") -> bytes:
    # Same two phases as the tmux sequence, without the pauses. CR submits; LF does not.
    return (
        ESC
        + ESC
        + (menu_selection or "1").encode("utf-8")
        + ESC
        + ESC
        + CTRL_U
        + (text or "continue").encode("utf-8")
        + b"\r"
    )


def send_via_pty(path: str, text: str, *, menu_selection: str = "1") -> None:
    """Write the resume payload to `path` without ever blocking.

    A terminal stopped by flow control (XOFF) or with a full input buffer makes
    the write fail instead of stalling the event loop; a short write counts as
    a failure too.
    """
    payload = build_pty_payload(text, menu_selection)
    flags = os.O_WRONLY | os.O_NONBLOCK | getattr(os, "O_NOCTTY", 0)
    try:
        fd = os.open(path, flags)
    except OSError as e:
        raise RuntimeError(f"pty open failed for {path}: {e}") from e
    try:
        written = os.write(fd, payload)
    except BlockingIOError as e:
        raise RuntimeError(f"pty write would block for {path} (terminal stopped?)") from e
    except OSError as e:
        raise RuntimeError(f"pty write failed for {path}: {e}") from e
    finally:
        os.close(fd)
    if written != len(payload):
        raise RuntimeError(f"pty short write for {path}: {written}/{len(payload)} bytes")


class PtyTier:
    name = "pty"

    def __init__(self, *, proc_root: str = "/proc") -> None:
        self.proc_root = proc_root

    async def run(self, ctx: DeliveryContext) -> TierOutcome:
        if not ctx.source_pid:
            return TierOutcome(tier="pty", error="no source pid")
        path = resolve_pty(ctx.source_pid, proc_root=self.proc_root)
        if path is None:
            return TierOutcome(tier="pty", error=f"no terminal for pid {ctx.source_pid}")

        target = DeliveryTarget(target=path, pid=ctx.source_pid, command="claude")
        try:
            send_via_pty(path, ctx.resume_text, menu_selection=ctx.menu_selection)
        except RuntimeError as e:
            logger.warning(str(e), extra={"tier": "pty", "target": path})
            return TierOutcome(tier="pty", targets=[TargetOutcome(target=target, ok=False, error=str(e), tier="pty")], error=str(e))
        logger.info("pty: resume written", extra={"tier": "pty", "target": path})
        return TierOutcome(tier="pty", targets=[TargetOutcome(target=target, ok=True, tier="pty")])
