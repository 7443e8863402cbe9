"""Cancellable subprocess runner.

Every host git call and every docker call goes through run_command so that
cancelling the engine interrupts commands that are stuck in flight.
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from dvsync.core.errors import OperationCancelled, RemoteCommandError

if TYPE_CHECKING:
    from dvsync.sync.cancel import CancelScope

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


@dataclass
class CommandResult:
    """Outcome of a finished command."""

    argv: list[str]
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self) -> str:
        """Return the output, raising RemoteCommandError on failure."""
        if self.returncode != 0:
            raise RemoteCommandError(self.argv, self.returncode, self.output)
        return self.output


def run_command(
    argv: Sequence[str],
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    cancel: CancelScope | None = None,
    merge_stderr: bool = True,
) -> CommandResult:
    """Run a command to completion, killing it if ``cancel`` fires.

    Args:
        argv: Command and arguments.
        cwd: Working directory for the command.
        env: Extra environment variables layered over os.environ.
        cancel: Scope whose cancellation aborts the command.
        merge_stderr: Fold stderr into the captured output.

    Returns:
        The exit status and captured output.

    Raises:
        OperationCancelled: If the scope was cancelled before or during the run.
    """
    argv = [str(a) for a in argv]
    if cancel is not None and cancel.cancelled:
        raise OperationCancelled(f"cancelled before running {argv[0]}")

    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update(env)

    proc = subprocess.Popen(
        argv,
        cwd=str(cwd) if cwd is not None else None,
        env=full_env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT if merge_stderr else subprocess.DEVNULL,
        text=True,
        encoding="utf-8",
        errors="replace",
    )

    while True:
        try:
            out, _ = proc.communicate(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.cancelled:
                proc.kill()
                proc.communicate()
                logger.debug("Killed cancelled command: %s", " ".join(argv))
                raise OperationCancelled(f"cancelled: {' '.join(argv)}") from None

    return CommandResult(argv=argv, returncode=proc.returncode, output=out or "")
