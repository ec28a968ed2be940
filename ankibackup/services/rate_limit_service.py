"""In-memory sliding-window rate limiter for rollback requests. State is lost on restart."""

from __future__ import annotations

from collections import deque
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable


def _wall_clock() -> float:
    return datetime.now(UTC).timestamp()


class InMemoryRateLimiter:
    """Track accepted operations per key in an in-memory sliding window.

    Safe under asyncio's single-threaded cooperative model: each check and each
    record is synchronous, with no await point between read and mutation.
    """

    def __init__(self, clock: Callable[[], float] = _wall_clock) -> None:
        self._clock = clock
        self._events: dict[str, deque[float]] = {}

    def clear(self, key: str) -> None:
        """Forget every recorded event for a key."""
        self._events.pop(key, None)

    def _prune(self, key: str, window_seconds: float) -> deque[float] | None:
        events = self._events.get(key)
        if events is None:
            return None
        cutoff = self._clock() - window_seconds
        while events and events[0] <= cutoff:
            events.popleft()
        if not events:
            del self._events[key]
            return None
        return events

    def is_limited(self, key: str, limit: int, window_seconds: float) -> tuple[bool, int]:
        """Check if the key is rate-limited. Returns (is_limited, retry_after_seconds)."""
        if window_seconds <= 0:
            return False, 0
        events = self._prune(key, window_seconds)
        if events is None or len(events) < limit:
            return False, 0
        retry_after = int(events[0] + window_seconds - self._clock()) + 1
        return True, max(retry_after, 1)

    def record(self, key: str, window_seconds: float) -> None:
        """Record one accepted operation."""
        if window_seconds <= 0:
            return
        self._prune(key, window_seconds)
        self._events.setdefault(key, deque()).append(self._clock())
