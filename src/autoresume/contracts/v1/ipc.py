from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Ops understood by autoresumed. Requests naming anything else still parse and
# are answered with `unknown_op`, so older CLIs get a readable error.
DAEMON_OPS: Tuple[str, ...] = ("ping", "shutdown", "status", "queue", "enqueue", "trigger", "reset")

ErrorCode = Literal[
    "invalid_request",
    "daemon_unavailable",
    "unknown_op",
    "invalid_detection",
    "no_pending",
    "stale",
    "busy",
    "internal_error",
]


class DaemonRequest(BaseModel):
    """One JSON line sent to the daemon socket: {"v": 1, "op": ..., "args": {...}}."""

    v: Literal[1] = 1
    op: str
    args: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @field_validator("op")
    @classmethod
    def _strip_op(cls, value: str) -> str:
        return value.strip()


class DaemonError(BaseModel):
    code: ErrorCode
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class DaemonResponse(BaseModel):
    v: Literal[1] = 1
    ok: bool
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[DaemonError] = None

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def success(cls, **result: Any) -> "DaemonResponse":
        return cls(ok=True, result=result)

    @classmethod
    def failure(cls, code: ErrorCode, message: str, **details: Any) -> "DaemonResponse":
        return cls(ok=False, error=DaemonError(code=code, message=message, details=details))
