"""OS-level keystroke injection, the last-resort delivery tier.

Unlike tmux and pty delivery this types into whatever terminal windows the
desktop exposes, so it cannot address a particular session.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
import sys
from typing import List, Optional

from ..contracts.v1.delivery import DeliveryTarget, TargetOutcome, TierOutcome
from ..util.proc import run_command
from .base import DeliveryContext

logger = logging.getLogger("autoresume.delivery")

TERMINAL_CLASSES = "gnome-terminal|konsole|xterm|terminator|alacritty|kitty"
MAC_TERMINAL_APPS = ("Terminal", "iTerm", "iTerm2")


def _applescript_quote(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def build_osascript(text: str) -> str:
    apps = ", ".join(f'"{a}"' for a in MAC_TERMINAL_APPS)
    return (
        'tell application "System Events"\n'
        f"  set terminalApps to {{{apps}}}\n"
        "  repeat with appName in terminalApps\n"
        "    if (exists process appName) then\n"
        "      tell process appName\n"
        "        set frontmost to true\n"
        f'        keystroke "{_applescript_quote(text)}"\n'
        "        keystroke return\n"
        "        delay 0.5\n"
        "      end tell\n"
        "    end if\n"
        "  end repeat\n"
        "end tell\n"
    )


def _sendkeys_escape(text: str) -> str:
    # SendKeys treats these as modifiers or grouping; braces make them literal.
    out = []
    for ch in text:
        out.append("{" + ch + "}" if ch in "+^%~(){}[]" else ch)
    return "".join(out).replace("'", "''")


def build_powershell(text: str) -> str:
    return "\n".join(
        [
            "Add-Type -AssemblyName System.Windows.Forms",
            '$windows = Get-Process | Where-Object { $_.MainWindowTitle -match "Claude" }',
            "if ($windows) {",
            "  foreach ($window in $windows) {",
            "    Start-Sleep -Milliseconds 500",
            f"    [System.Windows.Forms.SendKeys]::SendWait('{_sendkeys_escape(text)}')",
            "    Start-Sleep -Milliseconds 100",
            "    [System.Windows.Forms.SendKeys]::SendWait('{ENTER}')",
            "  }",
            '  Write-Output "Sent to $($windows.Count) window(s)"',
            "} else {",
            '  Write-Output "No Claude windows found"',
            "}",
        ]
    )


class KeystrokeTier:
    name = "keystroke"

    def __init__(self, *, platform: Optional[str] = None, delay_scale: float = 1.0) -> None:
        self.platform = platform or sys.platform
        self.delay_scale = delay_scale

    async def _pause(self, seconds: float) -> None:
        if self.delay_scale > 0:
            await asyncio.sleep(seconds * self.delay_scale)

    async def run(self, ctx: DeliveryContext) -> TierOutcome:
        if self.platform.startswith("win"):
            return await self._run_windows(ctx)
        if self.platform == "darwin":
            return await self._run_macos(ctx)
        return await self._run_xdotool(ctx)

    async def _run_xdotool(self, ctx: DeliveryContext) -> TierOutcome:
        if shutil.which("xdotool") is None:
            return TierOutcome(tier="keystroke", error="xdotool not found")
        code, out, _ = await run_command(["xdotool", "search", "--class", TERMINAL_CLASSES], timeout_s=ctx.timeout_s)
        window_ids = [w.strip() for w in out.splitlines() if w.strip()] if code == 0 else []
        if not window_ids:
            return TierOutcome(tier="keystroke", error="no terminal windows found")

        results: List[TargetOutcome] = []
        for wid in window_ids:
            target = DeliveryTarget(target=wid, command="xdotool")
            error = ""
            for argv in (
                ["xdotool", "windowactivate", "--sync", wid],
                ["xdotool", "type", "--clearmodifiers", "--", ctx.resume_text],
                ["xdotool", "key", "Return"],
            ):
                rc, _, err = await run_command(argv, timeout_s=ctx.timeout_s)
                if rc != 0:
                    error = f"{argv[1]} failed: {err.strip() or f'rc={rc}'}"
                    break
                if argv[1] == "windowactivate":
                    await self._pause(0.2)
            if error:
                logger.warning(f"xdotool: {error}", extra={"tier": "keystroke", "target": wid})
            results.append(TargetOutcome(target=target, ok=not error, error=error, tier="keystroke"))
            await self._pause(0.3)
        failed = [r.error for r in results if not r.ok]
        return TierOutcome(tier="keystroke", targets=results, error="; ".join(failed))

    async def _run_macos(self, ctx: DeliveryContext) -> TierOutcome:
        target = DeliveryTarget(target="System Events", command="osascript")
        rc, _, err = await run_command(["osascript", "-e", build_osascript(ctx.resume_text)], timeout_s=ctx.timeout_s)
        if rc != 0:
            error = f"osascript failed: {err.strip() or f'rc={rc}'}"
            return TierOutcome(tier="keystroke", targets=[TargetOutcome(target=target, ok=False, error=error, tier="keystroke")], error=error)
        return TierOutcome(tier="keystroke", targets=[TargetOutcome(target=target, ok=True, tier="keystroke")])

    async def _run_windows(self, ctx: DeliveryContext) -> TierOutcome:
        target = DeliveryTarget(target="Claude windows", command="powershell")
        rc, out, err = await run_command(
            ["powershell", "-NoProfile", "-NonInteractive", "-Command", build_powershell(ctx.resume_text)],
            timeout_s=ctx.timeout_s,
        )
        if rc != 0:
            error = f"powershell failed: {err.strip() or f'rc={rc}'}"
        elif "No Claude windows found" in out:
            return TierOutcome(tier="keystroke", error="no claude windows found")
        else:
            return TierOutcome(tier="keystroke", targets=[TargetOutcome(target=target, ok=True, tier="keystroke")])
        return TierOutcome(tier="keystroke", targets=[TargetOutcome(target=target, ok=False, error=error, tier="keystroke")], error=error)
