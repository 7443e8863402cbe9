"""Sync command for dvsync CLI.

Commands:
- sync: Keep a container working tree and a local git tree in sync
"""

from __future__ import annotations

import logging
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from types import FrameType
from typing import TextIO

import click

from dvsync.bridge import DockerBridge
from dvsync.core.config import load_sync_config
from dvsync.core.errors import SyncError
from dvsync.registry import get_state_dir, normalize_local_repo, register_session
from dvsync.sync import SyncEngine, SyncSession

DEFAULT_WORKDIR = "/var/www/discourse"
PACKAGE_LOGGER = "dvsync"


class SessionLogHandler(logging.Handler):
    """Logging handler that writes to the session's output sinks.

    Records below WARNING go to the log sink, WARNING and above to the error
    sink. DEBUG records are prefixed with "[debug] ".
    """

    def __init__(self, log_out: TextIO, err_out: TextIO) -> None:
        super().__init__()
        self._log_out = log_out
        self._err_out = err_out

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            if record.levelno == logging.DEBUG:
                msg = "[debug] " + msg
            stream = self._log_out if record.levelno < logging.WARNING else self._err_out
            stream.write(msg + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


@contextmanager
def session_logging(session: SyncSession) -> Iterator[SessionLogHandler]:
    """Route the package logger to the session sinks for the duration of a run."""
    pkg_logger = logging.getLogger(PACKAGE_LOGGER)
    saved = (pkg_logger.handlers[:], pkg_logger.level, pkg_logger.propagate)

    handler = SessionLogHandler(session.log_out, session.err_out)
    handler.setFormatter(logging.Formatter("%(message)s"))
    for existing in pkg_logger.handlers[:]:
        pkg_logger.removeHandler(existing)
    pkg_logger.addHandler(handler)
    pkg_logger.setLevel(logging.DEBUG if session.debug else logging.INFO)
    # Prevent propagation to root logger
    pkg_logger.propagate = False
    try:
        yield handler
    finally:
        pkg_logger.removeHandler(handler)
        handlers, level, propagate = saved
        for existing in handlers:
            pkg_logger.addHandler(existing)
        pkg_logger.setLevel(level)
        pkg_logger.propagate = propagate


def is_git_work_tree(path: Path) -> bool:
    """Check whether a directory is the root of a git working tree."""
    return (path / ".git").exists()


@click.command()
@click.argument("container")
@click.option(
    "--workdir",
    default=DEFAULT_WORKDIR,
    show_default=True,
    help="Working directory inside the container.",
)
@click.option(
    "--local",
    "local_path",
    default=".",
    show_default=True,
    type=click.Path(file_okay=False, path_type=Path),
    help="Local git working tree to sync.",
)
@click.option("--debug", is_flag=True, help="Verbose logging for sync mode.")
def sync(container: str, workdir: str, local_path: Path, debug: bool) -> None:
    """Watch for changes and synchronize container <-> host.

    File edits on either side are copied to the other. Commits, checkouts
    and resets made locally are replicated into the container with the same
    commit hashes.
    """
    local_repo = Path(normalize_local_repo(local_path))
    if not is_git_work_tree(local_repo):
        click.echo(f"Error: {local_repo} is not a git working tree", err=True)
        sys.exit(1)

    config = load_sync_config()
    session = SyncSession(
        container=container,
        workdir=workdir,
        local_repo=local_repo,
        log_out=sys.stdout,
        err_out=sys.stderr,
        debug=debug,
    )

    try:
        release = register_session(
            container,
            workdir,
            local_repo,
            confirm=lambda prompt: click.confirm(prompt, default=False, err=True),
            state_dir=get_state_dir(),
        )
    except SyncError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    bridge = DockerBridge(container, user=config.remote_user, root_user=config.root_user)
    engine = SyncEngine(session, bridge, config)

    def handle_signal(signum: int, frame: FrameType | None) -> None:
        engine.stop()

    previous = {
        signum: signal.signal(signum, handle_signal)
        for signum in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        with session_logging(session):
            click.echo("Entering sync mode; press Ctrl+C to stop.")
            engine.run()
    except SyncError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
        release()

    click.echo("Sync stopped")
