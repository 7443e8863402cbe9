"""Idle signal between the event batcher and the git syncer.

The batcher calls signal() whenever it has nothing queued or in flight. The
git syncer calls wait() before pausing file sync. Each signal() sets the
current event and swaps in a fresh one under the lock, so an event is only
ever set once and a waiter that arrives late picks up the next signal.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dvsync.sync.cancel import CancelScope


class IdleSignal:
    """Resettable readiness handshake."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()

    def signal(self) -> None:
        """Wake every current waiter and start a new cycle."""
        with self._lock:
            self._event.set()
            self._event = threading.Event()

    def wait(
        self,
        cancel: CancelScope | None = None,
        poll: float = 0.05,
        timeout: float | None = None,
    ) -> bool:
        """Wait for the next idle signal.

        The current event is re-read every ``poll`` seconds so a waiter never
        sleeps on an event that has already been replaced.

        Returns:
            True when idle was signalled, False on cancellation or timeout.
        """
        waited = 0.0
        while True:
            with self._lock:
                event = self._event
            if event.wait(poll):
                return True
            if cancel is not None and cancel.cancelled:
                return False
            waited += poll
            if timeout is not None and waited >= timeout:
                return False
