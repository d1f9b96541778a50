from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Tuple

logger = logging.getLogger("autoresume.proc")


async def run_command(argv: List[str], *, timeout_s: float = 5.0, stdin: Optional[bytes] = None) -> Tuple[int, str, str]:
    """Run a command without a shell; (returncode, stdout, stderr).

    Timeouts report 124 and a missing binary 127, matching shell conventions,
    so callers only ever branch on the return code.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return 127, "", f"{argv[0]}: not found"
    except OSError as e:
        return 126, "", str(e)

    try:
        out, err = await asyncio.wait_for(proc.communicate(stdin), timeout=timeout_s)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        logger.debug(f"command timed out after {timeout_s}s: {argv[0]}")
        return 124, "", f"{argv[0]} timeout"

    return (
        int(proc.returncode if proc.returncode is not None else 1),
        (out or b"").decode("utf-8", errors="replace"),
        (err or b"").decode("utf-8", errors="replace"),
    )
