"""Bounded event queue between the watchers and the event batcher.

This module provides:
- EventQueue: Thread-safe FIFO with (source, path) deduplication

Two watchers produce into the queue and the batcher is the single consumer.
Events are deduplicated by (source, path) - a repeated event for a path that
is already queued does not take another slot. When the queue is full,
producers wait for space but give up as soon as their cancellation scope
fires, so a stuck consumer can never block shutdown.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING

from dvsync.sync.types import ChangeSource, PathChangeEvent

if TYPE_CHECKING:
    from collections.abc import Iterator

    from dvsync.sync.cancel import CancelScope

logger = logging.getLogger(__name__)

# How often a blocked producer re-checks its cancellation scope
PUT_POLL_INTERVAL = 0.05


class EventQueue:
    """Thread-safe bounded queue with path-based deduplication.

    Attributes:
        max_size: Maximum queue size (0 = unlimited)
    """

    def __init__(self, max_size: int = 256) -> None:
        """Initialize the event queue.

        Args:
            max_size: Maximum number of distinct pending events (0 = unlimited)
        """
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._not_full = threading.Condition(self._lock)
        # Insertion-ordered: (source, path) -> event
        self._events: dict[tuple[ChangeSource, str], PathChangeEvent] = {}
        self._max_size = max_size

    @property
    def max_size(self) -> int:
        return self._max_size

    def _full(self) -> bool:
        return self._max_size > 0 and len(self._events) >= self._max_size

    def put(self, event: PathChangeEvent, cancel: CancelScope | None = None) -> bool:
        """Add an event, waiting for space if the queue is full.

        Args:
            event: The event to add
            cancel: Scope that aborts the wait when cancelled

        Returns:
            True if the event was queued, False if cancelled while waiting
        """
        key = (event.source, event.path)
        with self._not_full:
            while key not in self._events and self._full():
                if cancel is not None and cancel.cancelled:
                    logger.debug("Dropping event on cancelled put: %s", event)
                    return False
                self._not_full.wait(timeout=PUT_POLL_INTERVAL)

            if cancel is not None and cancel.cancelled:
                return False

            self._events[key] = event
            self._not_empty.notify()
            return True

    def get(self, timeout: float | None = None) -> PathChangeEvent | None:
        """Remove and return the oldest event.

        Args:
            timeout: Maximum seconds to wait (None = wait forever)

        Returns:
            The event, or None if timeout expired
        """
        with self._not_empty:
            deadline = None if timeout is None else time.monotonic() + timeout

            while not self._events:
                if deadline is None:
                    self._not_empty.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._not_empty.wait(timeout=remaining)

            key = next(iter(self._events))
            event = self._events.pop(key)
            self._not_full.notify()
            return event

    def get_nowait(self) -> PathChangeEvent | None:
        """Get event without blocking."""
        return self.get(timeout=0)

    def clear(self) -> int:
        """Remove all events from the queue.

        Returns:
            Number of events removed
        """
        with self._lock:
            count = len(self._events)
            self._events.clear()
            self._not_full.notify_all()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def __bool__(self) -> bool:
        with self._lock:
            return bool(self._events)

    def __iter__(self) -> Iterator[PathChangeEvent]:
        """Iterate over pending events in arrival order (does not remove them)."""
        with self._lock:
            return iter(list(self._events.values()))
