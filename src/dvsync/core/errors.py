"""Exception hierarchy for dvsync.

This module provides:
- SyncError: Base class for every error raised by the sync engine
- TransientError, SyncSkipped: Per-path outcomes handled inside a flush
- RemoteCommandError, GitError, HostGitError: Command failures
- WatcherError, PreconditionError: Engine-fatal failures
- OperationCancelled: A command was interrupted by its cancellation scope
- SessionConflictError: The session registry refused to start
"""

from __future__ import annotations

from collections.abc import Sequence


class SyncError(Exception):
    """Base exception for sync errors."""


class TransientError(SyncError):
    """A failure that is expected to clear up on its own.

    Permission errors and "text file busy" fall in this bucket. The path is
    requeued and retried on the next flush.
    """


class SyncSkipped(SyncError):
    """The source of a copy vanished before it could be transferred."""


class RemoteCommandError(SyncError):
    """A command exited with a non-zero status.

    Attributes:
        argv: The command that was run.
        returncode: Exit status of the command.
        output: Combined stdout/stderr of the command.
    """

    def __init__(self, argv: Sequence[str], returncode: int, output: str) -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output
        detail = output.strip()
        message = f"{' '.join(self.argv)}: exit status {returncode}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class GitError(SyncError):
    """A git invocation failed."""


class HostGitError(GitError):
    """A git invocation against the local working tree failed."""


class WatcherError(SyncError):
    """A watcher could not be started or stopped unexpectedly."""


class PreconditionError(SyncError):
    """A startup precondition of the engine is not met."""


class OperationCancelled(SyncError):
    """A command was interrupted because its scope was cancelled."""


class SessionConflictError(SyncError):
    """Another sync session owns the requested local path."""
