import threading
import time
from typing import Callable, Dict, List, Tuple

from fastapi import HTTPException

from constants import LOGIN_RATE_LIMIT, OTP_VERIFY_RATE_LIMIT
from logging_config import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """Sliding-window counter keyed by an arbitrary string (client IP, identifier...).

    State lives in this process only. Instances are handed to routes through
    dependencies, so tests and multi-instance deployments can replace them.
    """

    def __init__(self, points: int, duration: int, clock: Callable[[], float] = time.monotonic):
        self.points = points
        self.duration = duration
        self._clock = clock
        self._hits: Dict[str, List[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def hit(self, key: str) -> Tuple[bool, int]:
        """Record a hit. Returns (allowed, seconds until the oldest hit leaves the window)."""
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.duration:
                self._sweep(now)
            hits = [t for t in self._hits.get(key, []) if now - t < self.duration]
            if len(hits) >= self.points:
                self._hits[key] = hits
                retry_after = int(self.duration - (now - hits[0])) + 1
                return False, retry_after
            hits.append(now)
            self._hits[key] = hits
            return True, 0

    def _sweep(self, now: float):
        # drop keys whose newest hit has left the window; caller holds the lock
        stale = [key for key, hits in self._hits.items() if not hits or now - hits[-1] >= self.duration]
        for key in stale:
            del self._hits[key]
        self._last_sweep = now

    def consume(self, key: str, message: str = "Too many requests"):
        allowed, retry_after = self.hit(key)
        if not allowed:
            logger.warning(f"Rate limit exceeded for {key}, retry after {retry_after}s")
            raise HTTPException(
                status_code=429,
                detail={"error": "Too many requests", "message": f"{message}. Try again in {retry_after} seconds", "retry_after": retry_after},
            )

    def reset(self, key: str):
        with self._lock:
            self._hits.pop(key, None)

    def clear(self):
        with self._lock:
            self._hits.clear()


login_limiter = RateLimiter(*LOGIN_RATE_LIMIT)
otp_verify_limiter = RateLimiter(*OTP_VERIFY_RATE_LIMIT)


def get_login_limiter() -> RateLimiter:
    return login_limiter


def get_otp_verify_limiter() -> RateLimiter:
    return otp_verify_limiter
