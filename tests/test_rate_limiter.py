"""Test the sliding-window rate limiter and cancellation"""

import pytest

from library_sync.core.exceptions import SyncCancelledError
from library_sync.sync.cancellation import CancellationToken, pause
from library_sync.sync.rate_limiter import RateLimiter


class FakeMonotonic:
    """Monotonic clock advanced by the limiter's own sleeps"""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def monotonic():
    return FakeMonotonic()


def make_limiter(monotonic, max_requests=3, window_seconds=10.0):
    return RateLimiter(
        max_requests=max_requests,
        window_seconds=window_seconds,
        clock=monotonic,
        sleep=monotonic.sleep
    )


class TestSlidingWindow:
    """Test the request window"""

    def test_requests_under_cap_do_not_wait(self, monotonic):
        limiter = make_limiter(monotonic)

        for _ in range(3):
            limiter.await_slot()

        assert monotonic.sleeps == []
        assert limiter.requests_in_window == 3

    def test_request_over_cap_waits_for_oldest(self, monotonic):
        limiter = make_limiter(monotonic)

        for _ in range(4):
            limiter.await_slot()

        assert monotonic.sleeps == [10.0]
        assert limiter.requests_in_window == 1

    def test_wait_only_until_oldest_expires(self, monotonic):
        limiter = make_limiter(monotonic)
        limiter.await_slot()
        monotonic.now = 4.0
        limiter.await_slot()
        monotonic.now = 8.0
        limiter.await_slot()

        limiter.await_slot()

        assert monotonic.sleeps == [2.0]
        assert limiter.requests_in_window == 3

    def test_window_never_exceeded(self, monotonic):
        limiter = make_limiter(monotonic, max_requests=5, window_seconds=60.0)
        issued = []

        for _ in range(23):
            limiter.await_slot()
            issued.append(monotonic.now)

        for start in issued:
            in_window = [t for t in issued if start <= t < start + 60.0]
            assert len(in_window) <= 5

    def test_invalid_arguments(self, monotonic):
        with pytest.raises(ValueError):
            RateLimiter(max_requests=0)
        with pytest.raises(ValueError):
            RateLimiter(window_seconds=0)


class TestBackoff:
    """Test the escalating backoff after rate-limit hits"""

    def test_backoff_escalates_and_caps(self, monotonic):
        limiter = make_limiter(monotonic)

        durations = [limiter.trigger_backoff() for _ in range(4)]

        assert durations == [60.0, 120.0, 180.0, 180.0]
        assert limiter.backoff.consecutive_hits == 4

    def test_reset_restarts_escalation(self, monotonic):
        limiter = make_limiter(monotonic)
        limiter.trigger_backoff()
        limiter.trigger_backoff()

        limiter.reset_backoff()

        assert limiter.backoff_remaining() == 0
        assert limiter.trigger_backoff() == 60.0

    def test_await_slot_honours_backoff(self, monotonic):
        limiter = make_limiter(monotonic)
        limiter.trigger_backoff()
        monotonic.now = 15.0

        limiter.await_slot()

        assert monotonic.sleeps == [45.0]

    def test_expired_backoff_does_not_wait(self, monotonic):
        limiter = make_limiter(monotonic)
        limiter.trigger_backoff()
        monotonic.now = 61.0

        limiter.await_slot()

        assert monotonic.sleeps == []


class TestCancellation:
    """Test cancellation of waits"""

    def test_cancel_interrupts_window_wait(self, monotonic):
        limiter = RateLimiter(max_requests=1, window_seconds=10.0, clock=monotonic)
        token = CancellationToken()
        limiter.await_slot(token)
        token.cancel()

        with pytest.raises(SyncCancelledError):
            limiter.await_slot(token)

    def test_token_wait_returns_when_not_cancelled(self):
        token = CancellationToken()

        token.wait(0.01)

        assert not token.is_cancelled

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()

        token.cancel()

        assert token.is_cancelled
        with pytest.raises(SyncCancelledError):
            token.raise_if_cancelled()

    def test_pause_uses_injected_sleep(self):
        slept = []
        token = CancellationToken()

        pause(30, token, slept.append)

        assert slept == [30]

    def test_pause_checks_token_after_sleep(self):
        token = CancellationToken()

        with pytest.raises(SyncCancelledError):
            pause(30, token, lambda seconds: token.cancel())
