"""Shared types and dataclasses for sync operations.

This module provides:
- ChangeSource: Which side of the sync produced an event
- PathChangeEvent: Raw watcher output fed to the event batcher
- ChangeKind, ChangeRecord: Git-aware change records
- StatusEntry: One parsed line of ``git status --porcelain``
- RetryEntry: Retry bookkeeping for transient failures
- GitSyncState: HEAD/branch of both sides for one git sync pass
- SyncSession: Immutable parameters of a sync engine
- EngineState, BatcherState: Lifecycle states
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from enum import IntEnum, auto
from pathlib import Path
from typing import TextIO


class ChangeSource(IntEnum):
    """Source of sync events."""

    HOST = auto()  # From the local working tree watcher
    REMOTE = auto()  # From the container watcher

    @property
    def label(self) -> str:
        return "host" if self is ChangeSource.HOST else "remote"

    @property
    def opposite(self) -> ChangeSource:
        return ChangeSource.REMOTE if self is ChangeSource.HOST else ChangeSource.HOST


@dataclass(frozen=True)
class PathChangeEvent:
    """A relative path that changed on one side."""

    source: ChangeSource
    path: str

    def __repr__(self) -> str:
        return f"PathChangeEvent({self.source.name}, path={self.path!r})"


class ChangeKind(IntEnum):
    """Kind of change reported by git."""

    MODIFY = auto()
    DELETE = auto()
    RENAME = auto()


@dataclass(frozen=True)
class ChangeRecord:
    """A change to reconcile, derived from git porcelain status.

    Attributes:
        kind: Modify, delete or rename
        path: Relative path (new path for renames)
        old_path: Previous path for renames, empty otherwise
    """

    kind: ChangeKind
    path: str
    old_path: str = ""


@dataclass(frozen=True)
class StatusEntry:
    """One line of ``git status --porcelain``."""

    staged: str
    unstaged: str
    path: str
    old_path: str = ""


@dataclass
class RetryEntry:
    """Retry bookkeeping for a path that failed transiently."""

    source: ChangeSource
    attempts: int = 0


@dataclass(frozen=True)
class GitSyncState:
    """Git position of both working trees.

    Attributes:
        host_head: SHA of host HEAD
        host_branch: Host branch name, or "HEAD" when detached
        remote_head: SHA of remote HEAD
        remote_branch: Remote branch name, or "HEAD" when detached
    """

    host_head: str
    host_branch: str
    remote_head: str
    remote_branch: str

    @property
    def in_sync(self) -> bool:
        return self.host_head == self.remote_head and self.host_branch == self.remote_branch


def short_sha(sha: str) -> str:
    """Abbreviate a commit SHA for log output."""
    return sha[:8]


@dataclass(frozen=True)
class SyncSession:
    """Parameters of one sync engine, fixed for its lifetime.

    Attributes:
        container: Remote environment identifier
        workdir: Working directory inside the remote environment
        local_repo: Local working-tree root
        log_out: Sink for informational output
        err_out: Sink for warnings and errors
        debug: Verbose logging
    """

    container: str
    workdir: str
    local_repo: Path
    log_out: TextIO = field(default=sys.stdout, compare=False)
    err_out: TextIO = field(default=sys.stderr, compare=False)
    debug: bool = False


class EngineState(IntEnum):
    """Git-level state of the engine."""

    IDLE = auto()
    GIT_PENDING = auto()
    SYNCING = auto()


class BatcherState(IntEnum):
    """State of the event batcher."""

    IDLE = auto()
    ACCUMULATING = auto()
    FLUSHING = auto()
