from __future__ import annotations

import logging
import math
import sys
from datetime import datetime
from typing import Any, Optional

from ..util.proc import run_command
from ..util.time import parse_utc_iso, utc_now

logger = logging.getLogger("autoresume.notify")

APP_NAME = "Claude Code Auto-Resume"


def _ps_quote(text: str) -> str:
    return text.replace("'", "''")


def _as_quote(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def format_remaining(reset_time: Any, *, now: Optional[datetime] = None) -> str:
    """Human countdown like `1h 5m`; `0m` for past or unparsable times."""
    dt = parse_utc_iso(reset_time)
    if dt is None:
        return "0m"
    remaining_s = (dt - (now or utc_now())).total_seconds()
    minutes = max(0, math.ceil(remaining_s / 60.0))
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if hours > 0 else f"{mins}m"


class Notifier:
    """Desktop notifications. Every send is bounded and never raises."""

    def __init__(self, *, enabled: bool = True, timeout_s: float = 10.0, platform: Optional[str] = None) -> None:
        self.enabled = bool(enabled)
        self.timeout_s = float(timeout_s)
        self.platform = platform or sys.platform

    def _argv(self, title: str, message: str) -> list:
        if self.platform.startswith("win"):
            script = (
                "Add-Type -AssemblyName System.Windows.Forms; "
                "$n = New-Object System.Windows.Forms.NotifyIcon; "
                "$n.Icon = [System.Drawing.SystemIcons]::Information; "
                "$n.Visible = $true; "
                f"$n.ShowBalloonTip({int(self.timeout_s * 1000)}, '{_ps_quote(title)}', '{_ps_quote(message)}', 'Info'); "
                "Start-Sleep -Milliseconds 500"
            )
            return ["powershell", "-NoProfile", "-NonInteractive", "-Command", script]
        if self.platform == "darwin":
            script = f'display notification "{_as_quote(message)}" with title "{_as_quote(APP_NAME)}" subtitle "{_as_quote(title)}"'
            return ["osascript", "-e", script]
        return ["notify-send", "-a", APP_NAME, "-t", str(int(self.timeout_s * 1000)), title, message]

    async def notify(self, title: str, message: str) -> bool:
        if not self.enabled:
            return False
        argv = self._argv(title, message)
        rc, _, err = await run_command(argv, timeout_s=self.timeout_s)
        if rc != 0:
            logger.warning(f"notification via {argv[0]} failed rc={rc}: {err.strip()}")
            return False
        logger.debug(f"notification sent: {title}")
        return True

    async def notify_rate_limit(self, reset_time: Any, *, now: Optional[datetime] = None) -> bool:
        remaining = format_remaining(reset_time, now=now)
        dt = parse_utc_iso(reset_time)
        when = dt.astimezone().strftime("%H:%M:%S") if dt is not None else str(reset_time)
        logger.info(f"rate limit notification: {remaining} remaining")
        return await self.notify("Rate Limit Detected", f"Claude Code will auto-resume in {remaining}\nReset time: {when}")

    async def notify_resume(self, session_id: Optional[str] = None) -> bool:
        message = "Rate limit reset - resuming Claude Code session"
        if session_id:
            message += f"\nSession: {session_id}"
        return await self.notify("Session Resuming", message)

    async def notify_failure(self, event_id: str, reason: str) -> bool:
        return await self.notify("Auto-Resume Failed", f"Could not confirm the session resumed ({reason}).\nEvent: {event_id}")
