"""Cancellation scopes shared by the sync loops.

A CancelScope is a threading.Event that also reports cancelled when any of
its ancestors is cancelled. The engine owns the root scope; each flush runs
in a child scope so it can be abandoned without stopping the engine.
"""

from __future__ import annotations

import threading
import time


class CancelScope:
    """Hierarchical cancellation token."""

    def __init__(self, parent: CancelScope | None = None) -> None:
        self._event = threading.Event()
        self._parent = parent

    def child(self) -> CancelScope:
        """Create a scope that is cancelled together with this one."""
        return CancelScope(parent=self)

    def cancel(self) -> None:
        """Cancel this scope and every child scope."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Check whether this scope or an ancestor was cancelled."""
        scope: CancelScope | None = self
        while scope is not None:
            if scope._event.is_set():
                return True
            scope = scope._parent
        return False

    def wait(self, timeout: float | None = None, poll: float = 0.05) -> bool:
        """Block until cancelled or the timeout expires.

        Returns:
            True if the scope is cancelled.
        """
        if self._parent is None:
            return self._event.wait(timeout)

        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.cancelled:
            remaining = poll
            if deadline is not None:
                remaining = min(poll, deadline - time.monotonic())
                if remaining <= 0:
                    return False
            self._event.wait(remaining)
        return True
