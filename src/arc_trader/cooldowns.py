"""Per-member cooldowns for actions that post or change listings."""
from __future__ import annotations

from typing import Dict, Optional


class RateLimiter:
    """Remember when each actor last acted and throttle repeat actions.

    State lives in memory only, so a restart clears every cooldown. Times are
    epoch milliseconds supplied by the caller.
    """

    def __init__(self) -> None:
        self._last_acquire: Dict[str, int] = {}

    def try_acquire(self, actor_id: str, now: int, window_millis: int) -> bool:
        last = self._last_acquire.get(actor_id)
        if last is not None and now - last < window_millis:
            return False
        self._last_acquire[actor_id] = now
        return True

    def retry_after(self, actor_id: str, now: int, window_millis: int) -> int:
        """Milliseconds until ``actor_id`` may act again (0 when free)."""

        last = self._last_acquire.get(actor_id)
        if last is None:
            return 0
        return max(0, window_millis - (now - last))

    def reset(self, actor_id: Optional[str] = None) -> None:
        if actor_id is None:
            self._last_acquire.clear()
        else:
            self._last_acquire.pop(actor_id, None)

    def __len__(self) -> int:
        return len(self._last_acquire)
