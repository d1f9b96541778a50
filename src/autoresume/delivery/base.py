from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from ..contracts.v1.delivery import TierOutcome


@dataclass(frozen=True)
class DeliveryContext:
    resume_text: str = "continue"
    source_pid: Optional[int] = None
    menu_selection: str = "1"
    timeout_s: float = 5.0


class DeliveryTier(Protocol):
    """One way of getting keystrokes into a terminal.

    `run` discovers its own targets each time it is called and reports one
    TargetOutcome per target. An empty outcome with `error` set means nothing
    was found to deliver to.
    """

    name: str

    async def run(self, ctx: DeliveryContext) -> TierOutcome: ...
