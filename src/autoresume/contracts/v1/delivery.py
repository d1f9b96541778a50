from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso

TierName = Literal["tmux", "pty", "keystroke"]

VerificationMethod = Literal["transcript_growth", "timeout", "no_transcript", "cancelled"]

ResumeState = Literal["IDLE", "ATTEMPTING", "DELIVERED", "VERIFYING", "VERIFIED", "UNVERIFIED", "FAILED"]


class DeliveryTarget(BaseModel):
    """One addressable endpoint for keystroke injection (a tmux pane, a pty, a window)."""

    target: str
    pid: Optional[int] = None
    command: str = ""

    model_config = ConfigDict(extra="forbid")


class TargetOutcome(BaseModel):
    target: DeliveryTarget
    ok: bool
    error: str = ""
    tier: Optional[TierName] = None

    model_config = ConfigDict(extra="forbid")


class TierOutcome(BaseModel):
    tier: TierName
    targets: List[TargetOutcome] = Field(default_factory=list)
    error: str = ""

    model_config = ConfigDict(extra="forbid")

    @property
    def success(self) -> bool:
        return any(t.ok for t in self.targets)


class DeliveryAttempt(BaseModel):
    tiers_attempted: List[TierName] = Field(default_factory=list)
    targets: List[TargetOutcome] = Field(default_factory=list)
    success: bool = False
    tier: Optional[TierName] = None
    error: str = ""
    attempted_at: str = Field(default_factory=utc_now_iso)

    model_config = ConfigDict(extra="forbid")

    @property
    def partial(self) -> bool:
        """At least one target got the keys while another in the winning tier did not."""
        if not self.success or self.tier is None:
            return False
        return any(not t.ok for t in self.targets if t.tier == self.tier)


class VerificationResult(BaseModel):
    verified: bool
    method: VerificationMethod
    checked_at: str = Field(default_factory=utc_now_iso)
    new_bytes: int = 0
    elapsed_ms: int = 0

    model_config = ConfigDict(extra="forbid")


class ResumeOutcome(BaseModel):
    event_id: str
    state: ResumeState
    attempts: int = 0
    delivered: bool = False
    verified: bool = False
    failure: Optional[str] = None
    delivery: Optional[DeliveryAttempt] = None
    verification: Optional[VerificationResult] = None

    model_config = ConfigDict(extra="forbid")
