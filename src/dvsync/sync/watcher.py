"""Host Watcher: recursive watchdog observer over the local working tree.

This module provides:
- HostEventHandler: Translates watchdog events into PathChangeEvents
- HostWatcher: Owns the observer and runs until its scope is cancelled

Directory creation events are not queued since the files inside them
produce their own events. Deletions and moves are queued for directories
too, as git status reports the files that disappeared with them.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from watchdog.events import (
    DirCreatedEvent,
    DirModifiedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from dvsync.core.errors import WatcherError
from dvsync.sync.ignore import is_skippable
from dvsync.sync.types import ChangeSource, PathChangeEvent

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

    from dvsync.sync.cancel import CancelScope
    from dvsync.sync.queue import EventQueue
    from dvsync.sync.trees import HostTree

logger = logging.getLogger(__name__)

# How often the watcher checks that its observer is still alive
LIVENESS_POLL = 0.1


def _decode(path: str | bytes) -> str:
    if isinstance(path, bytes):
        return path.decode("utf-8", errors="replace")
    return path


class HostEventHandler(FileSystemEventHandler):
    """Feeds relative paths of host changes into the event queue."""

    def __init__(self, tree: HostTree, queue: EventQueue, cancel: CancelScope) -> None:
        """Initialize the handler.

        Args:
            tree: Local working tree, used for path translation.
            queue: Queue shared with the event batcher.
            cancel: Scope that aborts a put on a full queue.
        """
        super().__init__()
        self._tree = tree
        self._queue = queue
        self._cancel = cancel

    def _queue_path(self, pathname: str | bytes) -> None:
        rel = self._tree.relative(_decode(pathname))
        if rel is None or is_skippable(rel):
            return
        self._queue.put(PathChangeEvent(ChangeSource.HOST, rel), self._cancel)

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle created event."""
        if isinstance(event, DirCreatedEvent):
            return
        self._queue_path(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle modified event."""
        if isinstance(event, DirModifiedEvent):
            return
        self._queue_path(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        """Handle deleted event."""
        self._queue_path(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        """Handle moved event (both ends of a rename)."""
        self._queue_path(event.src_path)
        self._queue_path(event.dest_path)


class HostWatcher:
    """Watches the local working tree for file changes.

    Usage:
        watcher = HostWatcher(tree, queue)
        watcher.run(scope)  # blocks until scope is cancelled
    """

    def __init__(self, tree: HostTree, queue: EventQueue) -> None:
        self._tree = tree
        self._queue = queue
        self._observer: BaseObserver | None = None

    @property
    def is_running(self) -> bool:
        """Check if the observer is running."""
        return self._observer is not None and self._observer.is_alive()

    def start(self, cancel: CancelScope) -> None:
        """Establish the recursive watch.

        Raises:
            WatcherError: If the initial watch cannot be set up.
        """
        if self._observer is not None:
            return
        handler = HostEventHandler(self._tree, self._queue, cancel)
        observer = Observer()
        try:
            observer.schedule(handler, str(self._tree.root), recursive=True)
            observer.start()
        except OSError as e:
            raise WatcherError(f"watching {self._tree.root}: {e}") from e
        self._observer = observer
        logger.debug("host watcher started on %s", self._tree.root)

    def stop(self) -> None:
        """Stop the observer and wait for its threads."""
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._observer = None
        logger.debug("host watcher stopped")

    def run(self, cancel: CancelScope) -> None:
        """Watch until ``cancel`` fires.

        Raises:
            WatcherError: If the watch cannot be set up or the observer dies.
        """
        self.start(cancel)
        try:
            while not cancel.wait(LIVENESS_POLL):
                if not self.is_running:
                    raise WatcherError("host watcher stopped unexpectedly")
        finally:
            self.stop()
