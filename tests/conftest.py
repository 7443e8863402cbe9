"""Shared fixtures: real git repositories and a local Command Bridge.

The "remote" side of a sync is a second clone on the local disk. LocalBridge
runs remote commands directly in that clone, so remote paths and host paths
share one filesystem and reconciliation is tested against real git.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest

from dvsync.bridge.process import run_command
from dvsync.core.config import SyncConfig
from dvsync.core.errors import RemoteCommandError
from dvsync.sync.cancel import CancelScope
from dvsync.sync.reconciler import Reconciler
from dvsync.sync.retry import RetryQueue
from dvsync.sync.trees import HostTree, RemoteTree


def git(cwd: Path, *args: str) -> str:
    """Run git in a repository and return its trimmed stdout."""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def commit_file(repo: Path, rel: str, content: str, message: str | None = None) -> str:
    """Write, stage and commit one file; returns the new HEAD."""
    path = repo / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(repo, "add", "--", rel)
    git(repo, "commit", "-q", "-m", message or f"update {rel}")
    return git(repo, "rev-parse", "HEAD")


class LocalBridge:
    """Command Bridge whose remote environment is a local directory."""

    def __init__(self) -> None:
        self.copies: list[tuple[str, str]] = []
        self.root_commands: list[list[str]] = []
        # Output of a simulated copy failure, e.g. "Permission denied"
        self.copy_error: str | None = None
        # Delete the source right before a copy fails
        self.vanish_on_copy = False

    def exec(
        self,
        workdir: str,
        argv: Sequence[str],
        env: Mapping[str, str] | None = None,
        cancel: CancelScope | None = None,
    ) -> str:
        result = run_command(argv, cwd=workdir, env=env, cancel=cancel)
        if not result.ok:
            raise RemoteCommandError(list(argv), result.returncode, result.output)
        return result.output

    def exec_as_root(
        self,
        workdir: str,
        argv: Sequence[str],
        env: Mapping[str, str] | None = None,
        cancel: CancelScope | None = None,
    ) -> str:
        self.root_commands.append(list(argv))
        return self.exec(workdir, argv, env, cancel)

    def _copy(self, src: str, dest: str) -> None:
        if self.vanish_on_copy:
            os.unlink(src)
            raise RemoteCommandError(["cp", src, dest], 1, "no such file")
        if self.copy_error is not None:
            raise RemoteCommandError(["cp", src, dest], 1, self.copy_error)
        if os.path.isdir(dest):
            dest = os.path.join(dest, os.path.basename(src))
        try:
            shutil.copy2(src, dest)
        except OSError as e:
            raise RemoteCommandError(["cp", src, dest], 1, str(e)) from e

    def copy_to_remote(
        self,
        host_path: str,
        remote_path: str,
        recursive: bool = False,
        cancel: CancelScope | None = None,
    ) -> None:
        self.copies.append((host_path, remote_path))
        self._copy(host_path, remote_path)

    def copy_from_remote(
        self,
        remote_path: str,
        host_path: str,
        cancel: CancelScope | None = None,
    ) -> None:
        self.copies.append((remote_path, host_path))
        self._copy(remote_path, host_path)

    def start_process(self, workdir: str, argv: Sequence[str]) -> subprocess.Popen[str]:
        return subprocess.Popen(
            list(argv),
            cwd=workdir,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )


@pytest.fixture(autouse=True)
def git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Isolate git and XDG lookups from the developer's machine."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(home / ".local" / "share"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test Author")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "author@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test Committer")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "committer@example.com")


@pytest.fixture
def host_repo(tmp_path: Path) -> Path:
    """A host repository on branch main with a few tracked files."""
    repo = tmp_path / "host"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    (repo / ".gitignore").write_text("build/\n*.log\n")
    (repo / "README.md").write_text("# demo\n")
    (repo / "a.txt").write_text("alpha\n")
    (repo / "config").mkdir()
    (repo / "config" / "old.yml").write_text("old: true\n")
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture
def remote_repo(tmp_path: Path, host_repo: Path) -> Path:
    """A clone of host_repo standing in for the container working tree."""
    repo = tmp_path / "remote"
    git(tmp_path, "clone", "-q", str(host_repo), str(repo))
    return repo


@pytest.fixture
def bridge() -> LocalBridge:
    return LocalBridge()


@pytest.fixture
def host_tree(host_repo: Path) -> HostTree:
    return HostTree(host_repo)


@pytest.fixture
def remote_tree(bridge: LocalBridge, remote_repo: Path) -> RemoteTree:
    return RemoteTree(bridge, str(remote_repo))


@pytest.fixture
def retries() -> RetryQueue:
    return RetryQueue()


@pytest.fixture
def reconciler(host_tree: HostTree, remote_tree: RemoteTree, retries: RetryQueue) -> Reconciler:
    return Reconciler(host_tree, remote_tree, retries)


@pytest.fixture
def sync_config(tmp_path: Path) -> SyncConfig:
    """Fast timings and a bundle path inside the test directory."""
    return SyncConfig(
        settle_delay=0.05,
        flush_timeout=5.0,
        shutdown_flush_timeout=1.0,
        flush_stop_grace=0.5,
        git_pending_check_interval=0.05,
        git_sync_delay=0.05,
        idle_tick=0.01,
        idle_poll=0.01,
        remote_bundle_path=str(tmp_path / "remote-gitsync.bundle"),
    )


@pytest.fixture
def run_git():
    """Helper running git in a repository."""
    return git


@pytest.fixture
def commit():
    """Helper committing one file in a repository."""
    return commit_file
