# app/x402/ratelimit.py
"""
Per-IP sliding window rate limiting for the facilitator service.

Configuration:
- FACILITATOR_RATE_LIMIT: Maximum requests per window per IP (default: 100)
- FACILITATOR_RATE_LIMIT_WINDOW_SECONDS: Window size (default: 900, 15 minutes)
"""
import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.core.config import settings

logger = logging.getLogger(__name__)

# Stale windows are swept at most this often
CLEANUP_INTERVAL_SECONDS = 300


@dataclass
class RateLimitWindow:
    """Request timestamps for a single IP within the sliding window."""
    requests: List[float] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)


class RateLimiter:
    """
    In-memory sliding window rate limiter.

    Thread-safe; one instance is shared by every request of an app.
    """

    def __init__(
        self,
        limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            limit: Max requests allowed per window. If None, uses config.
            window_seconds: Size of the sliding window. If None, uses config.
            clock: Time source, replaceable in tests.
        """
        self.limit = limit if limit is not None else settings.FACILITATOR_RATE_LIMIT
        self.window_seconds = (
            window_seconds if window_seconds is not None
            else settings.FACILITATOR_RATE_LIMIT_WINDOW_SECONDS
        )
        self._clock = clock
        self._windows: Dict[str, RateLimitWindow] = defaultdict(RateLimitWindow)
        self._cleanup_lock = threading.Lock()
        self._last_cleanup = clock()

    def hit(self, client_ip: str) -> Tuple[bool, int]:
        """
        Record one request from ``client_ip``.

        Returns:
            Tuple of (is_limited, requests_in_window). A limited request is
            not recorded.
        """
        if not client_ip or client_ip == "unknown":
            return (False, 0)

        now = self._clock()
        window_start = now - self.window_seconds
        self._maybe_cleanup(now)

        window = self._windows[client_ip]
        with window.lock:
            window.requests = [ts for ts in window.requests if ts > window_start]
            requests_in_window = len(window.requests)

            if requests_in_window >= self.limit:
                logger.warning(
                    f"Rate limit exceeded for {client_ip}: "
                    f"{requests_in_window}/{self.limit} requests in {self.window_seconds}s"
                )
                return (True, requests_in_window)

            window.requests.append(now)
            return (False, requests_in_window + 1)

    def check(self, client_ip: str) -> Tuple[bool, Optional[str], Dict[str, Any]]:
        """
        Returns:
            Tuple of (is_allowed, reason, stats) where stats feeds
            get_rate_limit_headers().
        """
        is_limited, requests_made = self.hit(client_ip)
        stats = {
            "requests_made": requests_made,
            "limit": self.limit,
            "remaining": max(0, self.limit - requests_made),
            "window_seconds": self.window_seconds,
        }
        if is_limited:
            return (
                False,
                f"Too many requests: {requests_made}/{self.limit} per {self.window_seconds}s",
                stats,
            )
        return (True, None, stats)

    def reset_all(self) -> None:
        self._windows.clear()
        logger.info("Reset all rate limits")

    def _maybe_cleanup(self, now: float) -> None:
        if now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
            return

        with self._cleanup_lock:
            # Double-check after acquiring lock
            if now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
                return

            self._last_cleanup = now
            window_start = now - self.window_seconds
            stale_ips = []

            for ip, window in list(self._windows.items()):
                with window.lock:
                    window.requests = [ts for ts in window.requests if ts > window_start]
                    if not window.requests:
                        stale_ips.append(ip)

            for ip in stale_ips:
                del self._windows[ip]

            if stale_ips:
                logger.debug(f"Cleaned up {len(stale_ips)} stale rate limit entries")


def get_rate_limit_headers(stats: Dict[str, Any]) -> Dict[str, str]:
    """HTTP headers describing the caller's rate limit state."""
    return {
        "X-RateLimit-Limit": str(stats.get("limit", 0)),
        "X-RateLimit-Remaining": str(stats.get("remaining", 0)),
        "X-RateLimit-Reset": str(stats.get("window_seconds", 0)),
    }
