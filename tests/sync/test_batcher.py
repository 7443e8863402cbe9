"""Tests for the event batcher."""

from __future__ import annotations

import logging
import threading
import time
from unittest.mock import MagicMock

import pytest

from dvsync.core.config import SyncConfig
from dvsync.core.errors import SyncError
from dvsync.sync.batcher import EventBatcher
from dvsync.sync.cancel import CancelScope
from dvsync.sync.idle import IdleSignal
from dvsync.sync.queue import EventQueue
from dvsync.sync.retry import RetryQueue
from dvsync.sync.types import BatcherState, ChangeSource, PathChangeEvent


def wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def reconciler() -> MagicMock:
    mock = MagicMock()
    mock.retries = RetryQueue()
    return mock


@pytest.fixture
def queue() -> EventQueue:
    return EventQueue()


@pytest.fixture
def idle() -> IdleSignal:
    return IdleSignal()


@pytest.fixture
def flags() -> tuple[threading.Event, threading.Event]:
    return threading.Event(), threading.Event()


@pytest.fixture
def batcher(
    queue: EventQueue,
    reconciler: MagicMock,
    idle: IdleSignal,
    flags: tuple[threading.Event, threading.Event],
    sync_config: SyncConfig,
) -> EventBatcher:
    pending, paused = flags
    return EventBatcher(queue, reconciler, idle, pending, paused, sync_config)


class RunningBatcher:
    """Runs a batcher loop in a background thread."""

    def __init__(self, batcher: EventBatcher) -> None:
        self.scope = CancelScope()
        self.error: BaseException | None = None
        self.thread = threading.Thread(target=self._run, daemon=True)
        self._batcher = batcher

    def _run(self) -> None:
        try:
            self._batcher.run(self.scope)
        except BaseException as e:
            self.error = e

    def __enter__(self) -> RunningBatcher:
        self.thread.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.scope.cancel()
        self.thread.join(timeout=5.0)


class TestEventBatcherLoop:
    """Tests for the batcher loop."""

    def test_flushes_after_settle_delay(
        self, batcher: EventBatcher, queue: EventQueue, reconciler: MagicMock
    ) -> None:
        """Events are grouped per source and flushed once the window settles."""
        with RunningBatcher(batcher):
            queue.put(PathChangeEvent(ChangeSource.HOST, "a.txt"))
            queue.put(PathChangeEvent(ChangeSource.HOST, "b.txt"))
            queue.put(PathChangeEvent(ChangeSource.REMOTE, "c.txt"))
            assert wait_for(lambda: reconciler.process.call_count == 2)

        host_call, remote_call = reconciler.process.call_args_list[:2]
        assert host_call.args[0] is ChangeSource.HOST
        assert sorted(host_call.args[1]) == ["a.txt", "b.txt"]
        assert remote_call.args[0] is ChangeSource.REMOTE
        assert remote_call.args[1] == ["c.txt"]

    def test_git_pending_drops_events_and_signals_idle(
        self,
        batcher: EventBatcher,
        queue: EventQueue,
        reconciler: MagicMock,
        idle: IdleSignal,
        flags: tuple[threading.Event, threading.Event],
    ) -> None:
        """While git sync is pending nothing is flushed and idle still fires."""
        pending, _ = flags
        pending.set()
        with RunningBatcher(batcher):
            queue.put(PathChangeEvent(ChangeSource.HOST, "a.txt"))
            assert wait_for(lambda: len(queue) == 0)
            assert idle.wait(timeout=2.0)
            time.sleep(0.2)
            assert batcher.pending_paths(ChangeSource.HOST) == []

        reconciler.process.assert_not_called()

    def test_paused_keeps_paths(
        self,
        batcher: EventBatcher,
        reconciler: MagicMock,
        flags: tuple[threading.Event, threading.Event],
    ) -> None:
        """A paused batcher skips the flush but keeps its paths."""
        _, paused = flags
        paused.set()
        batcher.add(ChangeSource.HOST, "a.txt")

        batcher.on_settled(CancelScope())

        reconciler.process.assert_not_called()
        assert batcher.pending_paths(ChangeSource.HOST) == ["a.txt"]

    def test_signals_idle_when_empty(self, batcher: EventBatcher, idle: IdleSignal) -> None:
        with RunningBatcher(batcher):
            assert idle.wait(timeout=2.0)

    def test_flush_error_stops_loop(
        self, batcher: EventBatcher, queue: EventQueue, reconciler: MagicMock
    ) -> None:
        """A non-transient flush error ends run() with that error."""
        reconciler.process.side_effect = SyncError("boom")
        runner = RunningBatcher(batcher)
        with runner:
            queue.put(PathChangeEvent(ChangeSource.HOST, "a.txt"))
            assert wait_for(lambda: not runner.thread.is_alive())

        assert isinstance(runner.error, SyncError)


class TestFlush:
    """Tests for a single flush."""

    def test_merges_retry_entries(self, batcher: EventBatcher, reconciler: MagicMock) -> None:
        """Paths awaiting a retry join the next flush on their own side."""
        reconciler.retries.record_failure("r.txt", ChangeSource.REMOTE)

        batcher.flush(CancelScope(), timeout=2.0)

        reconciler.process.assert_called_once()
        source, paths, _ = reconciler.process.call_args.args
        assert source is ChangeSource.REMOTE
        assert paths == ["r.txt"]

    def test_empty_flush_does_nothing(self, batcher: EventBatcher, reconciler: MagicMock) -> None:
        batcher.flush(CancelScope(), timeout=2.0)
        reconciler.process.assert_not_called()
        assert batcher.state is BatcherState.IDLE

    def test_timeout_abandons_flush(
        self,
        batcher: EventBatcher,
        reconciler: MagicMock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A hung flush is cancelled after its timeout without raising."""
        caplog.set_level(logging.WARNING)
        seen: list[CancelScope] = []

        def hang(source: ChangeSource, paths: list[str], scope: CancelScope) -> None:
            seen.append(scope)
            scope.wait(10.0)

        reconciler.process.side_effect = hang
        batcher.add(ChangeSource.HOST, "a.txt")

        start = time.monotonic()
        batcher.flush(CancelScope(), timeout=0.2)

        assert time.monotonic() - start < 3.0
        assert seen and seen[0].cancelled
        assert "flush timed out" in caplog.text

    def test_git_pending_aborts_running_flush(
        self,
        batcher: EventBatcher,
        reconciler: MagicMock,
        flags: tuple[threading.Event, threading.Event],
    ) -> None:
        """A flush gives way when a git sync becomes pending."""
        pending, _ = flags
        seen: list[CancelScope] = []

        def slow(source: ChangeSource, paths: list[str], scope: CancelScope) -> None:
            seen.append(scope)
            pending.set()
            scope.wait(10.0)

        reconciler.process.side_effect = slow
        batcher.add(ChangeSource.HOST, "a.txt")

        batcher.flush(CancelScope(), timeout=5.0)

        assert seen[0].cancelled

    def test_cancelled_parent_skips_flush(
        self, batcher: EventBatcher, reconciler: MagicMock
    ) -> None:
        scope = CancelScope()
        scope.cancel()
        batcher.add(ChangeSource.HOST, "a.txt")

        batcher.flush(scope, timeout=1.0)

        reconciler.process.assert_not_called()
