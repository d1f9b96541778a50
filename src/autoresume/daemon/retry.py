from __future__ import annotations

from typing import Dict, Optional


class RetryPolicy:
    """Per-event attempt accounting with capped exponential backoff.

    `max_retries` is the total number of delivery attempts an event gets.
    """

    def __init__(
        self,
        *,
        max_retries: int = 4,
        base_delay_s: float = 15.0,
        factor: float = 2.0,
        max_delay_s: float = 300.0,
    ) -> None:
        self.max_retries = max(0, int(max_retries))
        self.base_delay_s = max(0.0, float(base_delay_s))
        self.factor = max(1.0, float(factor))
        self.max_delay_s = max(self.base_delay_s, float(max_delay_s))
        self._attempts: Dict[str, int] = {}

    def record_attempt(self, event_id: str) -> int:
        n = self._attempts.get(event_id, 0) + 1
        self._attempts[event_id] = n
        return n

    def attempts(self, event_id: str) -> int:
        return self._attempts.get(event_id, 0)

    def reset(self, event_id: str) -> None:
        self._attempts.pop(event_id, None)

    def next_delay(self, attempt: int) -> float:
        """Seconds to wait before attempt number `attempt + 1`."""
        n = min(max(1, int(attempt)), 64)
        return min(self.base_delay_s * (self.factor ** (n - 1)), self.max_delay_s)

    def should_retry(self, attempt: int, max_retries: Optional[int] = None) -> bool:
        limit = self.max_retries if max_retries is None else max(0, int(max_retries))
        return int(attempt) < limit
