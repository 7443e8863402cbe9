"""Tests for CLI commands - sync and sessions."""

from __future__ import annotations

import io
import logging
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from dvsync.cli import cli
from dvsync.cli.sync import SessionLogHandler, session_logging
from dvsync.core.config import SyncConfig
from dvsync.core.errors import PreconditionError, SessionConflictError
from dvsync.registry import SessionRecord
from dvsync.sync import SyncSession


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A directory that looks like a git working tree."""
    path = tmp_path / "project"
    (path / ".git").mkdir(parents=True)
    return path


class TestSyncCommand:
    """Tests for 'dvsync sync' command."""

    def test_rejects_non_git_directory(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["sync", "app", "--local", str(tmp_path)])
        assert result.exit_code == 1
        assert "is not a git working tree" in result.output

    def test_runs_engine(self, runner: CliRunner, repo: Path) -> None:
        """Sync should register, run the engine and release on exit."""
        release = MagicMock()
        with (
            patch("dvsync.cli.sync.load_sync_config", return_value=SyncConfig()),
            patch("dvsync.cli.sync.register_session", return_value=release) as register,
            patch("dvsync.cli.sync.DockerBridge") as bridge_cls,
            patch("dvsync.cli.sync.SyncEngine") as engine_cls,
        ):
            result = runner.invoke(
                cli, ["sync", "app", "--local", str(repo), "--workdir", "/srv/app"]
            )

        assert result.exit_code == 0, result.output
        assert "Entering sync mode" in result.output
        assert "Sync stopped" in result.output
        assert register.call_args.args[:3] == ("app", "/srv/app", repo)
        bridge_cls.assert_called_once_with("app", user="discourse", root_user="root")
        session = engine_cls.call_args.args[0]
        assert session.container == "app"
        assert session.workdir == "/srv/app"
        assert session.local_repo == repo
        assert session.debug is False
        engine_cls.return_value.run.assert_called_once()
        release.assert_called_once()

    def test_default_workdir_and_debug(self, runner: CliRunner, repo: Path) -> None:
        with (
            patch("dvsync.cli.sync.load_sync_config", return_value=SyncConfig()),
            patch("dvsync.cli.sync.register_session", return_value=MagicMock()),
            patch("dvsync.cli.sync.DockerBridge"),
            patch("dvsync.cli.sync.SyncEngine") as engine_cls,
        ):
            result = runner.invoke(cli, ["sync", "app", "--local", str(repo), "--debug"])

        assert result.exit_code == 0, result.output
        session = engine_cls.call_args.args[0]
        assert session.workdir == "/var/www/discourse"
        assert session.debug is True

    def test_engine_error(self, runner: CliRunner, repo: Path) -> None:
        """A fatal engine error exits 1 and still releases the registration."""
        release = MagicMock()
        with (
            patch("dvsync.cli.sync.load_sync_config", return_value=SyncConfig()),
            patch("dvsync.cli.sync.register_session", return_value=release),
            patch("dvsync.cli.sync.DockerBridge"),
            patch("dvsync.cli.sync.SyncEngine") as engine_cls,
        ):
            engine_cls.return_value.run.side_effect = PreconditionError(
                "inotifywait not found in container; install inotify-tools (provides inotifywait)"
            )
            result = runner.invoke(cli, ["sync", "app", "--local", str(repo)])

        assert result.exit_code == 1
        assert "Error: inotifywait not found in container" in result.output
        assert "Sync stopped" not in result.output
        release.assert_called_once()

    def test_session_conflict(self, runner: CliRunner, repo: Path) -> None:
        with (
            patch("dvsync.cli.sync.load_sync_config", return_value=SyncConfig()),
            patch(
                "dvsync.cli.sync.register_session",
                side_effect=SessionConflictError("sync already running for /x (pid 42)"),
            ),
            patch("dvsync.cli.sync.SyncEngine") as engine_cls,
        ):
            result = runner.invoke(cli, ["sync", "app", "--local", str(repo)])

        assert result.exit_code == 1
        assert "Error: sync already running" in result.output
        engine_cls.assert_not_called()

    def test_confirm_prompt(self, runner: CliRunner, repo: Path) -> None:
        """The registry's confirmation is answered from the terminal."""
        answers: list[bool] = []

        def fake_register(container, workdir, local_repo, confirm, state_dir=None):
            answers.append(confirm("Stop it now?"))
            return MagicMock()

        with (
            patch("dvsync.cli.sync.load_sync_config", return_value=SyncConfig()),
            patch("dvsync.cli.sync.register_session", side_effect=fake_register),
            patch("dvsync.cli.sync.DockerBridge"),
            patch("dvsync.cli.sync.SyncEngine"),
        ):
            result = runner.invoke(cli, ["sync", "app", "--local", str(repo)], input="y\n")

        assert result.exit_code == 0, result.output
        assert answers == [True]


class TestSessionsCommand:
    """Tests for 'dvsync sessions' command."""

    def test_none_running(self, runner: CliRunner, tmp_path: Path) -> None:
        with patch("dvsync.cli.sessions.get_state_dir", return_value=tmp_path / "none"):
            result = runner.invoke(cli, ["sessions"])
        assert result.exit_code == 0
        assert "No sync sessions running." in result.output

    def test_lists_sessions(self, runner: CliRunner) -> None:
        record = SessionRecord(
            pid=4242,
            container_name="app",
            container_workdir="/var/www/discourse",
            local_repo="/home/me/project",
            started_at="2026-01-01T00:00:00Z",
        )
        with patch("dvsync.cli.sessions.list_sessions", return_value=[record]):
            result = runner.invoke(cli, ["sessions"])

        assert result.exit_code == 0
        assert "pid 4242: app (/var/www/discourse) -> /home/me/project" in result.output
        assert "started 2026-01-01T00:00:00Z" in result.output


class TestSessionLogging:
    """Tests for routing log records to the session sinks."""

    def test_handler_routes_by_level(self) -> None:
        out, err = io.StringIO(), io.StringIO()
        handler = SessionLogHandler(out, err)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger = logging.getLogger("dvsync.test.routing")
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        try:
            logger.debug("details")
            logger.info("host → remote: updated a.txt")
            logger.warning("giving up on a.txt after 3 attempts")
        finally:
            logger.removeHandler(handler)

        assert out.getvalue() == "[debug] details\nhost → remote: updated a.txt\n"
        assert err.getvalue() == "giving up on a.txt after 3 attempts\n"

    def test_session_logging_level(self, tmp_path: Path) -> None:
        out, err = io.StringIO(), io.StringIO()
        session = SyncSession("app", "/w", tmp_path, log_out=out, err_out=err)
        package_logger = logging.getLogger("dvsync")
        before = package_logger.handlers[:]

        with session_logging(session):
            logging.getLogger("dvsync.sync.reconciler").debug("hidden")
            logging.getLogger("dvsync.sync.reconciler").info("shown")

        assert out.getvalue() == "shown\n"
        assert package_logger.handlers == before

    def test_session_logging_debug(self, tmp_path: Path) -> None:
        out, err = io.StringIO(), io.StringIO()
        session = SyncSession("app", "/w", tmp_path, log_out=out, err_out=err, debug=True)

        with session_logging(session):
            logging.getLogger("dvsync.sync.batcher").debug("flushing")

        assert out.getvalue() == "[debug] flushing\n"
