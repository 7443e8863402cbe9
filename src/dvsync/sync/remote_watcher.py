"""Remote Watcher: a managed inotifywait process inside the container.

This module provides:
- parse_inotify_line: Extract the changed path from one line of watch output
- build_watch_command: The recursive watch command line
- RemoteWatcher: Starts the watch process, streams its output into the
  event queue and owns its lifecycle (start, stream, kill, reap)

Architecture:
    inotifywait ─stdout─► reader thread ─► lines ─► RemoteWatcher ─► EventQueue
                ─stderr─► reader thread ─► kept for error reports

The remote watch is a precondition for correctness: if the process exits
or its stream breaks while the engine is not shutting down, the watcher
raises WatcherError and the whole session stops.
"""

from __future__ import annotations

import logging
import posixpath
import queue
import subprocess
import threading
from typing import TYPE_CHECKING

from dvsync.core.errors import WatcherError
from dvsync.sync.ignore import is_skippable
from dvsync.sync.types import ChangeSource, PathChangeEvent

if TYPE_CHECKING:
    from typing import IO

    from dvsync.bridge.base import RemoteProcess
    from dvsync.sync.cancel import CancelScope
    from dvsync.sync.queue import EventQueue
    from dvsync.sync.trees import RemoteTree

logger = logging.getLogger(__name__)

LINE_POLL = 0.05

# Marks the end of the stdout stream on the line queue
_EOF = object()


def build_watch_command(binary: str = "inotifywait") -> list[str]:
    """Recursive watch of the current directory, metadata directory excluded."""
    return [
        binary,
        "-m",
        "-r",
        "-e", "modify",
        "-e", "create",
        "-e", "delete",
        "-e", "move",
        "--format", "%w%f|%e",
        "--exclude", r"(^|/)\.git(/|$)",
        ".",
    ]


def parse_inotify_line(line: str) -> str | None:
    """Extract the changed path from a line of watch output.

    Accepts the ``path|EVENTS`` format produced by build_watch_command, and
    falls back to inotifywait's default ``dir EVENTS [name]`` layout.

    Returns:
        The cleaned path (absolute or relative to the watch root), or None
        if the line cannot be parsed.
    """
    idx = line.rfind("|")
    if idx != -1:
        path = line[:idx].strip()
        if not path:
            return None
        return posixpath.normpath(path)

    fields = line.split()
    if len(fields) < 2:
        return None
    directory = fields[0]
    name = " ".join(fields[2:])
    if name:
        return posixpath.normpath(posixpath.join(directory, name))
    return posixpath.normpath(directory)


def _pump_lines(stream: IO[str], lines: queue.Queue[object]) -> None:
    """Copy a text stream into a queue, ending with _EOF or the read error."""
    try:
        for line in stream:
            lines.put(line)
    except (OSError, ValueError) as e:
        lines.put(e)
        return
    lines.put(_EOF)


def _collect(stream: IO[str], sink: list[str]) -> None:
    try:
        for line in stream:
            line = line.rstrip("\n")
            sink.append(line)
            logger.debug("remote watcher: %s", line)
    except (OSError, ValueError):
        return


class RemoteWatcher:
    """Streams remote file changes into the event queue.

    Usage:
        watcher = RemoteWatcher(tree, queue)
        watcher.run(scope)  # blocks until scope is cancelled
    """

    def __init__(
        self,
        tree: RemoteTree,
        queue: EventQueue,
        binary: str = "inotifywait",
        reap_grace: float = 0.1,
    ) -> None:
        """Initialize the watcher.

        Args:
            tree: Remote working tree, used for path translation.
            queue: Queue shared with the event batcher.
            binary: Watch tool inside the container.
            reap_grace: Seconds to wait for the process after killing it.
        """
        self._tree = tree
        self._queue = queue
        self._binary = binary
        self._reap_grace = reap_grace
        self._stderr: list[str] = []

    def translate(self, line: str) -> str | None:
        """Turn one line of watch output into a relative path, or None."""
        line = line.strip()
        if not line:
            return None
        path = parse_inotify_line(line)
        if path is None:
            logger.debug("ignoring unrecognized inotify line: %s", line)
            return None
        if not posixpath.isabs(path):
            path = posixpath.normpath(posixpath.join(self._tree.workdir, path))
        rel = self._tree.relative(path)
        if rel is None or is_skippable(rel):
            logger.debug("ignoring remote event outside workdir: abs=%s rel=%s", path, rel)
            return None
        return rel

    def _stderr_text(self) -> str:
        return "\n".join(self._stderr).strip()

    def _failure(self, message: str) -> WatcherError:
        detail = self._stderr_text()
        if detail:
            message = f"{message}: {detail}"
        return WatcherError(message)

    def _reap(self, proc: RemoteProcess) -> None:
        proc.kill()
        try:
            proc.wait(timeout=self._reap_grace)
        except subprocess.TimeoutExpired:
            proc.kill()

    def run(self, cancel: CancelScope) -> None:
        """Run the watch process until ``cancel`` fires.

        Raises:
            WatcherError: If the process cannot start, its stream fails or
                it exits while the scope is still active.
        """
        argv = build_watch_command(self._binary)
        try:
            proc = self._tree.bridge.start_process(self._tree.workdir, argv)
        except OSError as e:
            raise WatcherError(f"starting remote watcher: {e}") from e

        lines: queue.Queue[object] = queue.Queue()
        readers = []
        if proc.stdout is not None:
            readers.append(
                threading.Thread(
                    target=_pump_lines,
                    args=(proc.stdout, lines),
                    name="RemoteWatcherStdout",
                    daemon=True,
                )
            )
        if proc.stderr is not None:
            readers.append(
                threading.Thread(
                    target=_collect,
                    args=(proc.stderr, self._stderr),
                    name="RemoteWatcherStderr",
                    daemon=True,
                )
            )
        for reader in readers:
            reader.start()

        try:
            while True:
                if cancel.cancelled:
                    return
                try:
                    item = lines.get(timeout=LINE_POLL)
                except queue.Empty:
                    continue

                if isinstance(item, BaseException):
                    if cancel.cancelled:
                        return
                    raise self._failure(f"remote watcher stream error: {item}")
                if item is _EOF:
                    returncode = proc.wait()
                    for reader in readers:
                        reader.join(timeout=1.0)
                    if cancel.cancelled:
                        return
                    raise self._failure(f"remote watcher exited: exit status {returncode}")

                rel = self.translate(str(item))
                if rel is None:
                    continue
                logger.debug("queueing remote event: %s", rel)
                if not self._queue.put(PathChangeEvent(ChangeSource.REMOTE, rel), cancel):
                    return
        finally:
            if proc.poll() is None:
                self._reap(proc)
