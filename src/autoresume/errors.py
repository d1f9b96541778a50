"""Exception types for the resume pipeline.

All of these are recovered inside the daemon; they exist so each failure mode
travels with a name that ends up in logs, notifications and the status feed.
"""
from __future__ import annotations


class ResumeError(Exception):
    """Base exception for resume pipeline failures."""

    code = "resume_error"


class DetectionStale(ResumeError):
    """The detection's reset time is too far in the past to act on."""

    code = "detection_stale"


class DeliveryNoTargets(ResumeError):
    """Every delivery tier ran and none reached a target."""

    code = "delivery_no_targets"


class VerificationTimeout(ResumeError):
    """Delivery succeeded but no transcript activity showed up within the window."""

    code = "verification_timeout"


class RetryExhausted(ResumeError):
    """The retry budget for an event ran out."""

    code = "retry_exhausted"

    def __init__(self, message: str, *, cause: ResumeError) -> None:
        super().__init__(message)
        self.cause = cause


class ConfigError(ResumeError):
    """Settings could not be written."""

    code = "config_error"
