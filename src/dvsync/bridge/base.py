"""Command Bridge contract.

The sync engine never talks to docker directly. It consumes a CommandBridge
that can run commands and copy files against one remote environment.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import IO, TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from dvsync.sync.cancel import CancelScope


class RemoteProcess(Protocol):
    """A long-lived process started inside the remote environment.

    This is the subset of subprocess.Popen the remote watcher relies on.
    """

    stdout: IO[str] | None
    stderr: IO[str] | None

    def poll(self) -> int | None: ...

    def wait(self, timeout: float | None = None) -> int: ...

    def kill(self) -> None: ...


class CommandBridge(Protocol):
    """Protocol for executing commands and copying files remotely."""

    def exec(
        self,
        workdir: str,
        argv: Sequence[str],
        env: Mapping[str, str] | None = None,
        cancel: CancelScope | None = None,
    ) -> str:
        """Run argv as the application user, returning combined output.

        Raises:
            RemoteCommandError: If the command exits non-zero.
            OperationCancelled: If ``cancel`` fires while it runs.
        """
        ...

    def exec_as_root(
        self,
        workdir: str,
        argv: Sequence[str],
        env: Mapping[str, str] | None = None,
        cancel: CancelScope | None = None,
    ) -> str:
        """Run argv as the privileged user."""
        ...

    def copy_to_remote(
        self,
        host_path: str,
        remote_path: str,
        recursive: bool = False,
        cancel: CancelScope | None = None,
    ) -> None:
        """Copy a host file into the remote environment, owned by the app user."""
        ...

    def copy_from_remote(
        self,
        remote_path: str,
        host_path: str,
        cancel: CancelScope | None = None,
    ) -> None:
        """Copy a remote file onto the host."""
        ...

    def start_process(self, workdir: str, argv: Sequence[str]) -> RemoteProcess:
        """Start a long-lived process as the application user."""
        ...
