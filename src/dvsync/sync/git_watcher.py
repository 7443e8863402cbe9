"""Git State Watcher: detects commits, checkouts and resets on the host.

Watches HEAD, logs/HEAD, packed-refs and refs/heads/ inside the host git
directory. Any write raises the shared "git sync pending" flag right away,
before any debounce, so the event batcher stops flushing stale file events,
then nudges the git syncer.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    DirModifiedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from dvsync.sync.ignore import METADATA_DIR

if TYPE_CHECKING:
    import threading

    from watchdog.observers.api import BaseObserver

    from dvsync.sync.cancel import CancelScope

logger = logging.getLogger(__name__)


class GitStateHandler(FileSystemEventHandler):
    """Raises the pending flag when a git state file changes."""

    def __init__(
        self,
        git_dir: Path,
        pending: threading.Event,
        notify: Callable[[], None],
    ) -> None:
        super().__init__()
        self._git_dir = os.path.abspath(git_dir)
        self._targets = {
            os.path.join(self._git_dir, "HEAD"),
            os.path.join(self._git_dir, "packed-refs"),
            os.path.join(self._git_dir, "logs", "HEAD"),
        }
        self._refs_heads = os.path.join(self._git_dir, "refs", "heads")
        self._pending = pending
        self._notify = notify

    def is_state_path(self, pathname: str | bytes) -> bool:
        if isinstance(pathname, bytes):
            pathname = pathname.decode("utf-8", errors="replace")
        pathname = os.path.abspath(pathname)
        if pathname in self._targets:
            return True
        return pathname.startswith(self._refs_heads + os.sep) and not pathname.endswith(
            ".lock"
        )

    def _changed(self, pathname: str | bytes) -> None:
        if not self.is_state_path(pathname):
            return
        logger.debug("git state change detected: %s", pathname)
        self._pending.set()
        self._notify()

    def on_created(self, event: FileSystemEvent) -> None:
        self._changed(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if isinstance(event, DirModifiedEvent):
            return
        self._changed(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # git writes refs through "<ref>.lock" and renames into place
        self._changed(event.dest_path)


class GitStateWatcher:
    """Watches the host git directory for state changes.

    Usage:
        watcher = GitStateWatcher(repo, pending, syncer.notify)
        watcher.run(scope)
    """

    def __init__(
        self,
        local_repo: Path,
        pending: threading.Event,
        notify: Callable[[], None],
    ) -> None:
        """Initialize the watcher.

        Args:
            local_repo: Root of the local working tree.
            pending: Shared "git sync pending" flag.
            notify: Non-blocking signal to the git syncer.
        """
        self._git_dir = Path(local_repo) / METADATA_DIR
        self._handler = GitStateHandler(self._git_dir, pending, notify)
        self._observer: BaseObserver | None = None

    @property
    def git_dir(self) -> Path:
        return self._git_dir

    def start(self) -> None:
        """Schedule the watches; each one is best effort."""
        if self._observer is not None:
            return
        observer = Observer()
        watches = [
            (self._git_dir, False),
            (self._git_dir / "logs", False),
            (self._git_dir / "refs" / "heads", True),
        ]
        # Scheduling on a running observer starts each watch on its own, so a
        # missing directory (refs/heads in a fresh repo) only loses that watch
        observer.start()
        self._observer = observer
        for path, recursive in watches:
            try:
                observer.schedule(self._handler, str(path), recursive=recursive)
            except OSError as e:
                logger.debug("could not watch %s: %s", path, e)

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._observer = None

    def run(self, cancel: CancelScope) -> None:
        """Watch until ``cancel`` fires."""
        self.start()
        try:
            cancel.wait()
        finally:
            self.stop()
