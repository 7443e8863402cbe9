"""Event batcher: the single consumer of the event queue.

This module provides:
- EventBatcher: Debounces watcher events into per-source path sets and
  hands them to the Content Reconciler

Loop, one iteration per queue poll:
    1. Announce idle when nothing is accumulated, or while a git sync is
       pending (so the git syncer is never starved)
    2. Take the next event, add its path and restart the settle timer
    3. When the timer expires:
       | Condition          | Action                                    |
       |--------------------|-------------------------------------------|
       | file sync paused   | Keep the paths, skip this flush           |
       | git sync pending   | Drop the paths (stale), signal idle       |
       | otherwise          | Flush with a timeout                      |

A flush merges in the retry queue, reconciles host paths and then remote
paths in a worker thread, and is abandoned (not failed) on timeout, on
cancellation, or when a git sync becomes pending while it runs.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING

from dvsync.core.config import SyncConfig
from dvsync.core.errors import OperationCancelled
from dvsync.sync.cancel import CancelScope
from dvsync.sync.types import BatcherState, ChangeSource

if TYPE_CHECKING:
    from dvsync.sync.idle import IdleSignal
    from dvsync.sync.queue import EventQueue
    from dvsync.sync.reconciler import Reconciler
    from dvsync.sync.retry import RetryQueue

logger = logging.getLogger(__name__)

# Granularity at which a running flush watches for cancellation
FLUSH_POLL = 0.05


class EventBatcher:
    """Debounces file events and flushes them through the reconciler.

    Usage:
        batcher = EventBatcher(queue, reconciler, idle, git_pending, paused)
        batcher.run(scope)  # blocks until scope is cancelled
    """

    def __init__(
        self,
        queue: EventQueue,
        reconciler: Reconciler,
        idle: IdleSignal,
        git_pending: threading.Event,
        paused: threading.Event,
        config: SyncConfig | None = None,
    ) -> None:
        """Initialize the batcher.

        Args:
            queue: Event queue fed by both watchers.
            reconciler: Applies flushed path sets.
            idle: Signal announced while the batcher has nothing to do.
            git_pending: Shared "git sync pending" flag.
            paused: Set by the git syncer while it rewrites the trees.
            config: Timing settings.
        """
        self._queue = queue
        self._reconciler = reconciler
        self._idle = idle
        self._git_pending = git_pending
        self._paused = paused
        self._config = config or SyncConfig()

        self._host_paths: dict[str, None] = {}
        self._remote_paths: dict[str, None] = {}
        self._deadline: float | None = None
        self._state = BatcherState.IDLE

    @property
    def state(self) -> BatcherState:
        """Get current batcher state."""
        return self._state

    @property
    def retries(self) -> RetryQueue:
        return self._reconciler.retries

    def pending_paths(self, source: ChangeSource) -> list[str]:
        """Paths accumulated for the next flush."""
        paths = self._host_paths if source is ChangeSource.HOST else self._remote_paths
        return list(paths)

    def _has_paths(self) -> bool:
        return bool(self._host_paths) or bool(self._remote_paths)

    def _clear_paths(self) -> None:
        self._host_paths = {}
        self._remote_paths = {}

    def add(self, source: ChangeSource, path: str) -> None:
        """Accumulate a path and restart the settle timer."""
        if source is ChangeSource.HOST:
            self._host_paths[path] = None
        else:
            self._remote_paths[path] = None
        self._deadline = time.monotonic() + self._config.settle_delay
        self._state = BatcherState.ACCUMULATING

    def run(self, cancel: CancelScope) -> None:
        """Consume events until ``cancel`` fires, then do a final flush.

        Raises:
            SyncError: If a flush fails with a non-transient error.
        """
        logger.debug("event batcher started")
        while True:
            idle = self._deadline is None and not self._has_paths()
            if idle or self._git_pending.is_set():
                self._idle.signal()

            if cancel.cancelled:
                self._deadline = None
                self._final_flush()
                logger.debug("event batcher stopped")
                return

            timeout = self._config.idle_tick
            if self._deadline is not None:
                timeout = max(0.0, min(timeout, self._deadline - time.monotonic()))

            event = self._queue.get(timeout=timeout)
            if event is not None:
                self.add(event.source, event.path)
                continue

            if self._deadline is None or time.monotonic() < self._deadline:
                continue
            self._deadline = None
            self.on_settled(cancel)

    def on_settled(self, cancel: CancelScope) -> None:
        """Handle expiry of the settle timer."""
        if self._paused.is_set():
            logger.debug("file sync paused, skipping flush")
            return
        if self._git_pending.is_set():
            logger.debug(
                "git sync pending, deferring file sync (clearing %d host, %d remote paths)",
                len(self._host_paths),
                len(self._remote_paths),
            )
            self._clear_paths()
            self._state = BatcherState.IDLE
            self._idle.signal()
            return
        self.flush(cancel, self._config.flush_timeout)

    def _final_flush(self) -> None:
        # The engine scope is already cancelled; the last flush gets its own
        try:
            self.flush(CancelScope(), self._config.shutdown_flush_timeout)
        except Exception as e:
            logger.debug("final flush failed: %s", e)

    def _take_batches(self) -> tuple[list[str], list[str]]:
        for path, entry in self.retries.snapshot().items():
            if entry.source is ChangeSource.HOST:
                self._host_paths[path] = None
            else:
                self._remote_paths[path] = None
        batches = list(self._host_paths), list(self._remote_paths)
        self._clear_paths()
        return batches

    def flush(self, parent: CancelScope, timeout: float) -> None:
        """Reconcile the accumulated paths, bounded by ``timeout`` seconds.

        Args:
            parent: Scope whose cancellation abandons the flush.
            timeout: Wall-clock budget of the flush.

        Raises:
            SyncError: If the reconciler fails with a non-transient error.
        """
        if parent.cancelled:
            return
        host_batch, remote_batch = self._take_batches()
        if not host_batch and not remote_batch:
            self._state = BatcherState.IDLE
            return

        self._state = BatcherState.FLUSHING
        scope = parent.child()
        done = threading.Event()
        failure: list[BaseException] = []

        def work() -> None:
            try:
                if host_batch:
                    self._reconciler.process(ChangeSource.HOST, host_batch, scope)
                if remote_batch:
                    self._reconciler.process(ChangeSource.REMOTE, remote_batch, scope)
            except BaseException as e:
                failure.append(e)
            finally:
                done.set()

        worker = threading.Thread(target=work, name="EventBatcherFlush", daemon=True)
        worker.start()

        started = time.monotonic()
        next_pending_check = started + self._config.git_pending_check_interval
        try:
            while not done.wait(FLUSH_POLL):
                now = time.monotonic()
                if parent.cancelled:
                    self._abandon(scope, done, "context cancellation")
                    return
                if now >= next_pending_check:
                    next_pending_check = now + self._config.git_pending_check_interval
                    if self._git_pending.is_set():
                        logger.debug("flush aborted: git sync pending (flush taking too long)")
                        self._abandon(scope, done, "git sync pending")
                        return
                if now - started >= timeout:
                    logger.warning("flush timed out after %.1fs", timeout)
                    self._abandon(scope, done, "timeout")
                    return
        finally:
            self._state = BatcherState.IDLE

        if failure and not isinstance(failure[0], OperationCancelled):
            raise failure[0]

    def _abandon(self, scope: CancelScope, done: threading.Event, reason: str) -> None:
        scope.cancel()
        if not done.wait(self._config.flush_stop_grace):
            logger.debug("flush did not stop after %s", reason)
