from __future__ import annotations

import asyncio
import logging
import re
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from ..contracts.v1.delivery import DeliveryTarget, TargetOutcome, TierOutcome
from ..util.proc import run_command
from .base import DeliveryContext

logger = logging.getLogger("autoresume.delivery")

PANE_FORMAT = "#{pane_pid} #{session_name}:#{window_index}.#{pane_index} #{pane_current_command}"

_CLAUDE_RE = re.compile(r"claude", re.IGNORECASE)
# Claude Code shows up as `claude`, as a node process, or as its bare version string.
_HOST_RE = re.compile(r"^(claude|node|2\.\d+\.\d+)$", re.IGNORECASE)


class KeyStep(NamedTuple):
    keys: Tuple[str, ...]
    delay_ms: int
    literal: bool = False


async def _run_tmux(args: List[str], *, timeout_s: float) -> Tuple[int, str, str]:
    return await run_command(["tmux", *args], timeout_s=timeout_s)


def parse_pane_line(line: str) -> Optional[DeliveryTarget]:
    parts = line.strip().split(" ")
    if len(parts) < 3:
        return None
    try:
        pid = int(parts[0])
    except ValueError:
        return None
    return DeliveryTarget(target=parts[1], pid=pid, command=" ".join(parts[2:]))


async def list_panes(*, timeout_s: float = 5.0) -> List[DeliveryTarget]:
    code, out, err = await _run_tmux(["list-panes", "-a", "-F", PANE_FORMAT], timeout_s=timeout_s)
    if code != 0:
        # No server running is the common case here.
        logger.debug(f"tmux list-panes rc={code}: {err.strip()}")
        return []
    panes: List[DeliveryTarget] = []
    for line in out.splitlines():
        pane = parse_pane_line(line)
        if pane is not None:
            panes.append(pane)
    return panes


async def has_claude_child(pid: int, *, timeout_s: float = 5.0) -> bool:
    code, out, _ = await run_command(["pgrep", "-P", str(pid), "-a"], timeout_s=timeout_s)
    return code == 0 and bool(_CLAUDE_RE.search(out))


async def find_claude_panes(*, timeout_s: float = 5.0) -> List[DeliveryTarget]:
    """Every tmux pane that appears to host a Claude Code session."""
    found: List[DeliveryTarget] = []
    for pane in await list_panes(timeout_s=timeout_s):
        if _CLAUDE_RE.search(pane.command):
            found.append(pane)
        elif pane.pid is not None and _HOST_RE.match(pane.command):
            if await has_claude_child(pane.pid, timeout_s=timeout_s):
                found.append(pane)
    return found


async def parent_pid(pid: int, *, timeout_s: float = 5.0) -> Optional[int]:
    code, out, _ = await run_command(["ps", "-o", "ppid=", "-p", str(pid)], timeout_s=timeout_s)
    if code != 0:
        return None
    try:
        return int(out.strip())
    except ValueError:
        return None


async def walk_process_tree(pid: int, panes: Dict[int, DeliveryTarget], *, timeout_s: float = 5.0) -> Optional[DeliveryTarget]:
    """Climb from `pid` through its ancestors to the pane whose shell hosts it."""
    current: Optional[int] = pid
    seen = set()
    while current is not None and current > 1 and current not in seen:
        seen.add(current)
        if current in panes:
            return panes[current]
        current = await parent_pid(current, timeout_s=timeout_s)
    return None


async def find_target_panes(source_pid: Optional[int], *, timeout_s: float = 5.0) -> List[DeliveryTarget]:
    """The pane hosting `source_pid` when it can be located, otherwise every Claude pane."""
    if source_pid:
        panes = {p.pid: p for p in await list_panes(timeout_s=timeout_s) if p.pid is not None}
        if panes:
            hit = await walk_process_tree(source_pid, panes, timeout_s=timeout_s)
            if hit is not None:
                return [hit]
        logger.debug(f"pid {source_pid} not under any tmux pane; scanning all panes")
    return await find_claude_panes(timeout_s=timeout_s)


def build_resume_sequence(resume_prompt: str = "continue", menu_selection: str = "1") -> List[KeyStep]:
    """Keys that resume a rate-limited session from any UI state.

    First dismiss whatever is open and pick the menu option the rate-limit
    dialog offers; then dismiss again, clear the input line and type the
    prompt in case no dialog was showing.
    """
    return [
        KeyStep(("Escape",), 500),
        KeyStep(("Escape",), 300),
        KeyStep((menu_selection or "1",), 1000),
        KeyStep(("Escape",), 500),
        KeyStep(("Escape",), 300),
        KeyStep(("C-u",), 200),
        KeyStep((resume_prompt or "continue",), 200, literal=True),
        KeyStep(("Enter",), 0),
    ]


async def send_keystroke_sequence(
    target: str,
    sequence: Sequence[KeyStep],
    *,
    timeout_s: float = 5.0,
    delay_scale: float = 1.0,
) -> None:
    for step in sequence:
        args = ["send-keys", "-t", target]
        if step.literal:
            args += ["-l", "--"]
        code, _, err = await _run_tmux([*args, *step.keys], timeout_s=timeout_s)
        if code != 0:
            raise RuntimeError(f"tmux send-keys failed: {(err or '').strip() or f'rc={code}'}")
        if step.delay_ms > 0 and delay_scale > 0:
            await asyncio.sleep(step.delay_ms / 1000.0 * delay_scale)


class TmuxTier:
    name = "tmux"

    def __init__(self, *, delay_scale: float = 1.0) -> None:
        self.delay_scale = delay_scale

    async def run(self, ctx: DeliveryContext) -> TierOutcome:
        panes = await find_target_panes(ctx.source_pid, timeout_s=ctx.timeout_s)
        if not panes:
            return TierOutcome(tier="tmux", error="no claude tmux panes")
        logger.info(f"tmux: {len(panes)} pane(s): {', '.join(p.target for p in panes)}", extra={"tier": "tmux"})

        sequence = build_resume_sequence(ctx.resume_text, ctx.menu_selection)
        results: List[TargetOutcome] = []
        for pane in panes:
            try:
                await send_keystroke_sequence(pane.target, sequence, timeout_s=ctx.timeout_s, delay_scale=self.delay_scale)
            except RuntimeError as e:
                logger.warning(f"tmux: send failed: {e}", extra={"tier": "tmux", "target": pane.target})
                results.append(TargetOutcome(target=pane, ok=False, error=str(e), tier="tmux"))
                continue
            results.append(TargetOutcome(target=pane, ok=True, tier="tmux"))
        failed = [r.error for r in results if not r.ok]
        return TierOutcome(tier="tmux", targets=results, error="; ".join(failed))
