"""Translate raw path events into git-aware change records.

This module provides:
- parse_status_output: Parse ``git status --porcelain`` output
- unquote_path: Undo git's C-style quoting of unusual names
- build_changes: Turn status entries into ChangeRecords
- StatusTranslator: Scoped status query plus the fallback pass for paths
  that git did not report

Classification rules for porcelain entries:
    | XY contains | Record                                     |
    |-------------|--------------------------------------------|
    | R           | RENAME(path, old_path)                     |
    | D           | DELETE(old_path if present, else path)     |
    | anything    | MODIFY(path) - includes untracked (??)     |
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from dvsync.sync.ignore import should_ignore_relative
from dvsync.sync.types import ChangeKind, ChangeRecord, StatusEntry

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from dvsync.sync.cancel import CancelScope
    from dvsync.sync.types import ChangeSource

logger = logging.getLogger(__name__)

RENAME_SEPARATOR = " -> "


class WorkingTree(Protocol):
    """What the translator needs from a side of the sync."""

    source: ChangeSource

    def status(
        self, paths: Sequence[str] | None = None, cancel: CancelScope | None = None
    ) -> list[StatusEntry]: ...

    def exists(self, rel: str, cancel: CancelScope | None = None) -> bool: ...

    def is_ignored(self, rel: str, cancel: CancelScope | None = None) -> bool: ...

    def is_tracked(self, rel: str, cancel: CancelScope | None = None) -> bool: ...


# Escapes git uses when it quotes a path in porcelain output
C_ESCAPES = {
    "a": "\a",
    "b": "\b",
    "t": "\t",
    "n": "\n",
    "v": "\v",
    "f": "\f",
    "r": "\r",
    '"': '"',
    "\\": "\\",
}


def unquote_path(path: str) -> str:
    """Undo git's C-style quoting of a path.

    Even with ``core.quotePath=false`` git wraps names containing a double
    quote, a backslash or a control character in quotes and escapes them.
    Octal escapes are raw bytes of the UTF-8 encoded name.
    """
    if len(path) < 2 or path[0] != '"' or path[-1] != '"':
        return path
    body = path[1:-1]
    raw = bytearray()
    i = 0
    while i < len(body):
        ch = body[i]
        if ch != "\\" or i + 1 == len(body):
            raw += ch.encode("utf-8", "surrogateescape")
            i += 1
            continue
        nxt = body[i + 1]
        if nxt in "01234567":
            j = i + 1
            while j < min(i + 4, len(body)) and body[j] in "01234567":
                j += 1
            raw.append(int(body[i + 1 : j], 8) & 0xFF)
            i = j
        else:
            raw += C_ESCAPES.get(nxt, nxt).encode("utf-8", "surrogateescape")
            i += 2
    return raw.decode("utf-8", "surrogateescape")


def parse_status_output(out: str) -> list[StatusEntry]:
    """Parse porcelain v1 status lines into entries."""
    entries: list[StatusEntry] = []
    for line in out.splitlines():
        if not line.strip() or len(line) < 3:
            continue
        staged, unstaged = line[0], line[1]
        rest = line[3:]
        if RENAME_SEPARATOR in rest:
            old, new = rest.split(RENAME_SEPARATOR, 1)
            entries.append(
                StatusEntry(staged, unstaged, path=unquote_path(new), old_path=unquote_path(old))
            )
        else:
            entries.append(StatusEntry(staged, unstaged, path=unquote_path(rest)))
    return entries


def build_changes(entries: Iterable[StatusEntry]) -> list[ChangeRecord]:
    """Classify status entries into change records.

    Entries inside the metadata directory are dropped.
    """
    changes: list[ChangeRecord] = []
    for entry in entries:
        if not entry.path or should_ignore_relative(entry.path):
            continue
        codes = (entry.staged, entry.unstaged)
        if "R" in codes:
            changes.append(ChangeRecord(ChangeKind.RENAME, entry.path, entry.old_path))
        elif "D" in codes:
            changes.append(ChangeRecord(ChangeKind.DELETE, entry.old_path or entry.path))
        else:
            changes.append(ChangeRecord(ChangeKind.MODIFY, entry.path))
    return changes


def reported_paths(changes: Iterable[ChangeRecord]) -> set[str]:
    """Every path (old and new) mentioned by a set of change records."""
    seen: set[str] = set()
    for change in changes:
        seen.add(change.path)
        if change.old_path:
            seen.add(change.old_path)
    return seen


class StatusTranslator:
    """Turns candidate paths on one side into change records."""

    def __init__(self, source: WorkingTree, target: WorkingTree) -> None:
        """Initialize the translator.

        Args:
            source: The side the events came from.
            target: The opposite side.
        """
        self._source = source
        self._target = target

    def collect(
        self,
        paths: Sequence[str] | None = None,
        cancel: CancelScope | None = None,
    ) -> list[ChangeRecord]:
        """Query git status on the source side.

        Args:
            paths: Candidate paths, or None for the whole tree.
        """
        return build_changes(self._source.status(paths, cancel))

    def classify_unreported(
        self, rel: str, cancel: CancelScope | None = None
    ) -> ChangeRecord | None:
        """Decide what to do with a path that git status did not report.

        - Missing on the source but present on the target: DELETE, unless the
          source side ignores it.
        - Present on the source and tracked: MODIFY. The reconciler compares
          blob hashes, so a clean file that already matches is a no-op.
        - Anything else (untracked and ignored, or absent on both sides): None.
        """
        if should_ignore_relative(rel):
            return None

        if not self._source.exists(rel, cancel):
            if not self._target.exists(rel, cancel):
                return None
            if self._source.is_ignored(rel, cancel):
                logger.debug(
                    "skipping deletion of %s (gitignored on %s)",
                    rel,
                    self._source.source.label,
                )
                return None
            return ChangeRecord(ChangeKind.DELETE, rel)

        if not self._source.is_tracked(rel, cancel):
            logger.debug(
                "skipping %s (not tracked by git on %s)", rel, self._source.source.label
            )
            return None
        return ChangeRecord(ChangeKind.MODIFY, rel)
