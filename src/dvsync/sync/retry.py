"""Retry bookkeeping for transient per-path failures.

This module provides:
- is_transient_error: Classify an exception as retryable
- RetryQueue: Mutex-guarded map of paths awaiting another attempt

A path that fails transiently is requeued and merged back into the next
flush by the event batcher. After ``max_attempts`` failures it is dropped
with a warning.
"""

from __future__ import annotations

import logging
import threading

from dvsync.core.errors import TransientError
from dvsync.sync.types import ChangeSource, RetryEntry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

TRANSIENT_MARKERS = (
    "Permission denied",
    "permission denied",
    "text file busy",
)


def is_transient_error(error: BaseException | None) -> bool:
    """Check whether an error is worth retrying on the next flush."""
    if error is None:
        return False
    if isinstance(error, (TransientError, PermissionError)):
        return True
    message = str(error)
    return any(marker in message for marker in TRANSIENT_MARKERS)


class RetryQueue:
    """Paths awaiting a retry, keyed by relative path."""

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, RetryEntry] = {}
        self._max_attempts = max_attempts

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def record_failure(self, path: str, source: ChangeSource) -> bool:
        """Count a failed attempt for a path.

        Returns:
            True if the path will be retried, False if it was dropped.
        """
        with self._lock:
            entry = self._entries.get(path) or RetryEntry(source=source)
            entry.source = source
            entry.attempts += 1
            if entry.attempts >= self._max_attempts:
                self._entries.pop(path, None)
                logger.warning(
                    "giving up on %s after %d attempts", path, entry.attempts
                )
                return False
            self._entries[path] = entry
            logger.warning(
                "%s failed, will retry (attempt %d/%d)",
                path,
                entry.attempts,
                self._max_attempts,
            )
            return True

    def discard(self, path: str) -> None:
        """Forget a path after it synchronized successfully."""
        with self._lock:
            self._entries.pop(path, None)

    def snapshot(self) -> dict[str, RetryEntry]:
        """Copy of the pending entries."""
        with self._lock:
            return {
                path: RetryEntry(source=e.source, attempts=e.attempts)
                for path, e in self._entries.items()
            }

    def clear(self) -> int:
        """Drop every entry.

        Returns:
            Number of entries removed
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._entries
