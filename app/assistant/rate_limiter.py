import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict

logger = logging.getLogger(__name__)


@dataclass
class RateLimitEntry:
    caller_id: str
    count: int
    window_reset_at: float  # epoch seconds


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds
    limit: int

    @property
    def reset_at_iso(self) -> str:
        return datetime.fromtimestamp(self.reset_at, tz=timezone.utc).isoformat()

    def headers(self) -> Dict[str, str]:
        """X-RateLimit-* headers, sent on allowed and rejected responses alike."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }


class RateLimiter:
    """
    Fixed-window request counter per caller.

    One bucket per caller, opened on the first request after the previous
    window ran out. The ceiling is checked before incrementing, and the
    check-then-increment runs under a single lock so two concurrent requests
    can never both take the last slot.
    """

    def __init__(
        self,
        max_requests: int = 50,
        window_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = asyncio.Lock()

    async def check(self, caller_id) -> RateLimitDecision:
        key = str(caller_id)
        async with self._lock:
            now = self._clock()
            entry = self._entries.get(key)

            if entry is None or now > entry.window_reset_at:
                entry = RateLimitEntry(
                    caller_id=key, count=1, window_reset_at=now + self.window_seconds
                )
                self._entries[key] = entry
                return RateLimitDecision(
                    allowed=True,
                    remaining=self.max_requests - 1,
                    reset_at=entry.window_reset_at,
                    limit=self.max_requests,
                )

            if entry.count >= self.max_requests:
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_at=entry.window_reset_at,
                    limit=self.max_requests,
                )

            entry.count += 1
            return RateLimitDecision(
                allowed=True,
                remaining=self.max_requests - entry.count,
                reset_at=entry.window_reset_at,
                limit=self.max_requests,
            )

    async def sweep(self) -> int:
        """Drop buckets whose window has passed. Only bounds memory, never needed for correctness."""
        async with self._lock:
            now = self._clock()
            expired = [
                key
                for key, entry in self._entries.items()
                if now > entry.window_reset_at
            ]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.info(f"Rate limiter sweep removed {len(expired)} expired buckets")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
