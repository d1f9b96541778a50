"""Tiered resume delivery: tmux, then direct pty write, then OS keystrokes.

Tiers are tried strictly in order and the chain stops at the first tier that
reaches at least one target. Nothing is cached between calls; panes and
terminals come and go while a session waits out its rate limit.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from ..contracts.v1.delivery import DeliveryAttempt, TargetOutcome, TierOutcome
from .base import DeliveryContext, DeliveryTier
from .keystroke import KeystrokeTier
from .pty import PtyTier
from .tmux import TmuxTier

logger = logging.getLogger("autoresume.delivery")


def default_tiers() -> List[DeliveryTier]:
    return [TmuxTier(), PtyTier(), KeystrokeTier()]


async def deliver_resume(
    resume_text: str = "continue",
    *,
    source_pid: Optional[int] = None,
    menu_selection: str = "1",
    tiers: Optional[Sequence[DeliveryTier]] = None,
    timeout_s: float = 5.0,
) -> DeliveryAttempt:
    ctx = DeliveryContext(
        resume_text=resume_text or "continue",
        source_pid=source_pid,
        menu_selection=menu_selection or "1",
        timeout_s=float(timeout_s),
    )
    chain = list(tiers) if tiers is not None else default_tiers()

    attempted: List[str] = []
    targets: List[TargetOutcome] = []
    last_error = ""

    for tier in chain:
        attempted.append(tier.name)
        try:
            outcome = await tier.run(ctx)
        except Exception as e:
            # A broken tier is just a failed tier; the next one still gets its turn.
            logger.warning(f"{tier.name}: tier raised {type(e).__name__}: {e}", extra={"tier": tier.name})
            outcome = TierOutcome(tier=tier.name, error=f"{type(e).__name__}: {e}")  # type: ignore[arg-type]

        targets.extend(outcome.targets)
        if outcome.success:
            attempt = DeliveryAttempt(
                tiers_attempted=attempted,  # type: ignore[arg-type]
                targets=targets,
                success=True,
                tier=tier.name,  # type: ignore[arg-type]
                error=outcome.error,
            )
            if attempt.partial:
                logger.warning(f"{tier.name}: partial delivery: {outcome.error}", extra={"tier": tier.name})
            logger.info(
                f"resume delivered via {tier.name} to {sum(1 for t in outcome.targets if t.ok)} target(s)",
                extra={"tier": tier.name},
            )
            return attempt

        if outcome.error:
            last_error = f"{tier.name}: {outcome.error}"
        logger.debug(f"{tier.name}: no delivery ({outcome.error or 'no targets'})", extra={"tier": tier.name})

    logger.warning(f"all delivery tiers failed: {', '.join(attempted)}")
    return DeliveryAttempt(
        tiers_attempted=attempted,  # type: ignore[arg-type]
        targets=targets,
        success=False,
        error=last_error or "all delivery tiers failed",
    )
