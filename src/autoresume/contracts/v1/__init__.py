from __future__ import annotations

from .delivery import (
    DeliveryAttempt,
    DeliveryTarget,
    ResumeOutcome,
    ResumeState,
    TargetOutcome,
    TierName,
    TierOutcome,
    VerificationMethod,
    VerificationResult,
)
from .ipc import DAEMON_OPS, DaemonError, DaemonRequest, DaemonResponse, ErrorCode
from .queue import (
    LIVE_STATUSES,
    PENDING_STATUSES,
    QUEUE_SCHEMA_VERSION,
    Detection,
    DetectionEvent,
    EntryStatus,
    QueueState,
    migrate_queue_doc,
)

__all__ = [
    "DAEMON_OPS",
    "DaemonError",
    "DaemonRequest",
    "DaemonResponse",
    "DeliveryAttempt",
    "DeliveryTarget",
    "Detection",
    "DetectionEvent",
    "ErrorCode",
    "EntryStatus",
    "LIVE_STATUSES",
    "PENDING_STATUSES",
    "QUEUE_SCHEMA_VERSION",
    "QueueState",
    "ResumeOutcome",
    "ResumeState",
    "TargetOutcome",
    "TierName",
    "TierOutcome",
    "VerificationMethod",
    "VerificationResult",
    "migrate_queue_doc",
]
