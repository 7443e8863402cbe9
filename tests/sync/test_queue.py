"""Tests for the bounded event queue."""

from __future__ import annotations

import threading
import time

from dvsync.sync.cancel import CancelScope
from dvsync.sync.queue import EventQueue
from dvsync.sync.types import ChangeSource, PathChangeEvent


def host(path: str) -> PathChangeEvent:
    return PathChangeEvent(ChangeSource.HOST, path)


def remote(path: str) -> PathChangeEvent:
    return PathChangeEvent(ChangeSource.REMOTE, path)


class TestEventQueue:
    """Tests for EventQueue."""

    def test_fifo_order(self) -> None:
        """Events come out in arrival order."""
        queue = EventQueue()
        queue.put(host("a.txt"))
        queue.put(remote("b.txt"))
        queue.put(host("c.txt"))

        assert queue.get_nowait() == host("a.txt")
        assert queue.get_nowait() == remote("b.txt")
        assert queue.get_nowait() == host("c.txt")
        assert queue.get_nowait() is None

    def test_deduplicates_by_source_and_path(self) -> None:
        """The same path from the same side occupies a single slot."""
        queue = EventQueue()
        queue.put(host("a.txt"))
        queue.put(host("a.txt"))
        queue.put(remote("a.txt"))

        assert len(queue) == 2

    def test_get_times_out(self) -> None:
        """get returns None once the timeout expires."""
        queue = EventQueue()
        start = time.monotonic()
        assert queue.get(timeout=0.05) is None
        assert time.monotonic() - start >= 0.04

    def test_get_wakes_on_put(self) -> None:
        """A blocked consumer receives an event put from another thread."""
        queue = EventQueue()
        threading.Timer(0.05, queue.put, args=(host("late.txt"),)).start()
        assert queue.get(timeout=2.0) == host("late.txt")

    def test_full_queue_put_gives_up_on_cancel(self) -> None:
        """A producer blocked on a full queue returns False when cancelled."""
        queue = EventQueue(max_size=1)
        queue.put(host("a.txt"))
        scope = CancelScope()
        threading.Timer(0.1, scope.cancel).start()

        assert queue.put(host("b.txt"), scope) is False
        assert len(queue) == 1

    def test_full_queue_accepts_duplicate(self) -> None:
        """Re-queuing a path that is already queued never blocks."""
        queue = EventQueue(max_size=1)
        queue.put(host("a.txt"))
        assert queue.put(host("a.txt"), CancelScope()) is True

    def test_full_queue_put_resumes_when_drained(self) -> None:
        """A blocked producer proceeds once the consumer frees a slot."""
        queue = EventQueue(max_size=1)
        queue.put(host("a.txt"))
        threading.Timer(0.05, queue.get_nowait).start()

        assert queue.put(host("b.txt"), CancelScope()) is True
        assert list(queue) == [host("b.txt")]

    def test_clear_returns_count(self) -> None:
        """clear drops every event and reports how many."""
        queue = EventQueue()
        queue.put(host("a.txt"))
        queue.put(remote("b.txt"))

        assert queue.clear() == 2
        assert not queue
