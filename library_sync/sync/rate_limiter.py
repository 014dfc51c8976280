"""
Client-side request pacing for the Spotify Web API.

RateLimiter combines two mechanisms:

    Sliding window:  at most N requests in any T seconds. A request that
                     would exceed the cap waits until the oldest timestamp
                     in the window expires.

    Global backoff:  after a 429 the caller triggers a backoff of
                     min(60 x consecutive_hits, 180) seconds during which
                     no request is issued. The first successful call resets
                     the counter.

One RateLimiter belongs to one sync run. Clock and sleep are injectable so
tests run without real waiting; in production every sleep goes through the
run's CancellationToken.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from library_sync.core.logger import get_logger
from library_sync.sync.cancellation import CancellationToken, pause


logger = get_logger(__name__)

BACKOFF_STEP_SECONDS = 60.0
BACKOFF_CAP_SECONDS = 180.0


@dataclass
class BackoffState:
    """Consecutive rate-limit hits and the monotonic instant the backoff ends."""
    consecutive_hits: int = 0
    backoff_until: float | None = None


class RateLimiter:
    """
    Sliding-window limiter with escalating global backoff.

    Args:
        max_requests: Requests allowed per window (N).
        window_seconds: Window length in seconds (T).
        clock: Monotonic clock in seconds. Defaults to time.monotonic.
        sleep: Sleep function for tests. When omitted, waits go through the
               CancellationToken (or time.sleep without one).

    Example:
        limiter = RateLimiter(max_requests=30, window_seconds=60)
        limiter.await_slot(cancel)
        try:
            page = client.list_primary(offset, 50)
            limiter.reset_backoff()
        except SpotifyError as e:
            if e.is_rate_limit:
                limiter.trigger_backoff()
    """

    def __init__(
        self,
        max_requests: int = 30,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.backoff = BackoffState()
        self._clock = clock
        self._sleep = sleep
        self._timestamps: deque[float] = deque()
        self._lock = threading.Lock()

    def await_slot(self, cancel: Optional[CancellationToken] = None) -> None:
        """
        Block until one more request may be issued, then record it.

        Raises:
            SyncCancelledError: If the token is cancelled while waiting.
        """
        backoff_wait = self.backoff_remaining()
        if backoff_wait > 0:
            logger.info(f"Rate limit backoff active, waiting {backoff_wait:.0f}s")
            self._wait(backoff_wait, cancel)

        while True:
            with self._lock:
                now = self._clock()
                self._evict(now)
                if len(self._timestamps) < self.max_requests:
                    self._timestamps.append(now)
                    return
                wait_for = self._timestamps[0] + self.window_seconds - now

            if wait_for > 0:
                logger.debug(f"Request window full, waiting {wait_for:.1f}s")
                self._wait(wait_for, cancel)
            else:
                with self._lock:
                    if self._timestamps:
                        self._timestamps.popleft()

    def trigger_backoff(self) -> float:
        """
        Register a rate-limit hit and start the global backoff.

        Returns:
            The backoff duration in seconds (60, 120, then 180 onwards).
        """
        with self._lock:
            self.backoff.consecutive_hits += 1
            duration = min(
                BACKOFF_STEP_SECONDS * self.backoff.consecutive_hits,
                BACKOFF_CAP_SECONDS
            )
            self.backoff.backoff_until = self._clock() + duration

        logger.warning(
            f"Rate limit hit #{self.backoff.consecutive_hits}, backing off for {duration:.0f}s"
        )
        return duration

    def reset_backoff(self) -> None:
        """Clear the backoff after a successful call. No-op if none is active."""
        with self._lock:
            if self.backoff.consecutive_hits == 0:
                return
            self.backoff.consecutive_hits = 0
            self.backoff.backoff_until = None
        logger.debug("Rate limit backoff cleared")

    def backoff_remaining(self) -> float:
        """Seconds left in the current global backoff, 0 if none."""
        with self._lock:
            if self.backoff.backoff_until is None:
                return 0.0
            return max(0.0, self.backoff.backoff_until - self._clock())

    @property
    def requests_in_window(self) -> int:
        with self._lock:
            self._evict(self._clock())
            return len(self._timestamps)

    def _evict(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    def _wait(self, seconds: float, cancel: Optional[CancellationToken]) -> None:
        pause(seconds, cancel, self._sleep)
