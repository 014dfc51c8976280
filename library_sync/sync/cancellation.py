"""
Cooperative cancellation for sync runs.

A CancellationToken is shared by the caller and one sync run. The caller
calls cancel() (the CLI does it on Ctrl-C); the run checks the token
between batches and every wait goes through wait(), so a pending cancel
interrupts even a 24 hour rate-limit pause immediately.
"""

import threading
import time
from typing import Callable, Optional

from library_sync.core.exceptions import SyncCancelledError


class CancellationToken:
    """Thread-safe cancel flag with interruptible sleeping."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """
        Raises:
            SyncCancelledError: If cancel() has been called.
        """
        if self._event.is_set():
            raise SyncCancelledError("Sync cancelled by user")

    def wait(self, seconds: float) -> None:
        """
        Sleep for up to `seconds`, waking early on cancel.

        Raises:
            SyncCancelledError: If the token is (or becomes) cancelled.
        """
        self.raise_if_cancelled()
        if seconds > 0 and self._event.wait(timeout=seconds):
            self.raise_if_cancelled()


def pause(
    seconds: float,
    cancel: Optional[CancellationToken] = None,
    sleep: Optional[Callable[[float], None]] = None
) -> None:
    """
    Sleep through the token when there is one.

    An explicit sleep function (tests) replaces the real wait; the token is
    still checked before and after it.
    """
    if sleep is not None:
        if cancel is not None:
            cancel.raise_if_cancelled()
        sleep(seconds)
        if cancel is not None:
            cancel.raise_if_cancelled()
    elif cancel is not None:
        cancel.wait(seconds)
    elif seconds > 0:
        time.sleep(seconds)
