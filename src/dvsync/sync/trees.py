"""Host and remote working-tree adapters.

HostTree and RemoteTree expose the same git-aware operations so that the
status translator and the reconciler can treat both sides alike:

- exists / blob_hash: content identity of a path
- status: ``git status --porcelain`` for a set of paths (or the whole tree)
- is_ignored / is_tracked: gitignore and index membership
- remove: delete a path, tolerating absence
- git: run an arbitrary git command, used by the git syncer

Host commands run through the local git CLI; remote commands go through the
Command Bridge.
"""

from __future__ import annotations

import logging
import os
import posixpath
import shlex
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from dvsync.bridge.process import run_command
from dvsync.core.errors import (
    GitError,
    HostGitError,
    RemoteCommandError,
    SyncError,
    TransientError,
)
from dvsync.sync.git_status import parse_status_output
from dvsync.sync.retry import is_transient_error
from dvsync.sync.types import ChangeSource, StatusEntry

if TYPE_CHECKING:
    from collections.abc import Sequence

    from dvsync.bridge.base import CommandBridge
    from dvsync.sync.cancel import CancelScope

logger = logging.getLogger(__name__)

STATUS_ARGS = ["-c", "core.quotePath=false", "status", "--porcelain", "--untracked-files=all"]


def shell_quote(value: str) -> str:
    return shlex.quote(value)


class HostTree:
    """The local working tree."""

    source = ChangeSource.HOST

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def abspath(self, rel: str) -> Path:
        return self._root / Path(*rel.split("/"))

    def relative(self, pathname: str | Path) -> str | None:
        """Translate an absolute host path into a slash-separated relative path."""
        try:
            rel = os.path.relpath(os.fspath(pathname), os.fspath(self._root))
        except ValueError:
            return None
        if rel == ".." or rel.startswith(".." + os.sep):
            return None
        return rel.replace(os.sep, "/")

    def git(self, *args: str, cancel: CancelScope | None = None) -> str:
        """Run git in the working tree and return its trimmed output.

        Raises:
            HostGitError: If git exits non-zero.
        """
        result = run_command(["git", *args], cwd=self._root, cancel=cancel)
        if not result.ok:
            raise HostGitError(
                f"host git {' '.join(args)}: exit status {result.returncode}: "
                f"{result.output.strip()}"
            )
        return result.output.strip()

    def has_commit(self, sha: str, cancel: CancelScope | None = None) -> bool:
        """Check whether a commit object exists in the host repository."""
        result = run_command(
            ["git", "cat-file", "-e", f"{sha}^{{commit}}"], cwd=self._root, cancel=cancel
        )
        return result.ok

    def exists(self, rel: str, cancel: CancelScope | None = None) -> bool:
        return os.path.lexists(self.abspath(rel))

    def blob_hash(self, rel: str, cancel: CancelScope | None = None) -> str:
        """Git blob hash of a host file, or "" if it does not exist."""
        try:
            os.stat(self.abspath(rel))
        except FileNotFoundError:
            return ""
        except OSError as e:
            if is_transient_error(e):
                raise TransientError(str(e)) from e
            raise

        result = run_command(
            ["git", "-C", str(self._root), "hash-object", "--", rel], cancel=cancel
        )
        if result.ok:
            return result.output.strip()
        message = result.output.strip()
        if "does not exist" in message:
            return ""
        if is_transient_error(SyncError(message)):
            raise TransientError(message)
        raise HostGitError(f"git hash-object (host): {message}")

    def status(
        self, paths: Sequence[str] | None = None, cancel: CancelScope | None = None
    ) -> list[StatusEntry]:
        args = ["git", *STATUS_ARGS]
        if paths:
            args.append("--")
            args.extend(paths)
        result = run_command(args, cwd=self._root, cancel=cancel, merge_stderr=False)
        if not result.ok:
            raise HostGitError(f"git status (host): exit status {result.returncode}")
        return parse_status_output(result.output)

    def is_ignored(self, rel: str, cancel: CancelScope | None = None) -> bool:
        result = run_command(
            ["git", "check-ignore", "-q", "--", rel], cwd=self._root, cancel=cancel
        )
        return result.returncode == 0

    def is_tracked(self, rel: str, cancel: CancelScope | None = None) -> bool:
        if self.is_ignored(rel, cancel):
            return False
        result = run_command(
            ["git", "ls-files", "--", rel],
            cwd=self._root,
            cancel=cancel,
            merge_stderr=False,
        )
        return result.ok and result.output.strip() != ""

    def remove(self, rel: str, cancel: CancelScope | None = None) -> None:
        target = self.abspath(rel)
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            else:
                target.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            if is_transient_error(e):
                raise TransientError(f"host remove {rel}: {e}") from e
            raise SyncError(f"host remove {rel}: {e}") from e


class RemoteTree:
    """The working tree inside the remote environment."""

    source = ChangeSource.REMOTE

    def __init__(self, bridge: CommandBridge, workdir: str) -> None:
        self._bridge = bridge
        self._workdir = workdir

    @property
    def bridge(self) -> CommandBridge:
        return self._bridge

    @property
    def workdir(self) -> str:
        return self._workdir

    def abspath(self, rel: str) -> str:
        return posixpath.join(self._workdir, rel)

    def relative(self, abs_path: str) -> str | None:
        """Translate an absolute remote path into a path relative to workdir."""
        if not abs_path:
            return None
        clean = posixpath.normpath(abs_path)
        work = posixpath.normpath(self._workdir)
        if work == "/":
            return clean.lstrip("/")
        if clean != work and not clean.startswith(work + "/"):
            return None
        return clean[len(work):].lstrip("/")

    def _exec(self, argv: Sequence[str], cancel: CancelScope | None) -> str:
        return self._bridge.exec(self._workdir, argv, cancel=cancel)

    def git(self, *args: str, cancel: CancelScope | None = None) -> str:
        """Run git in the remote working tree and return its trimmed output.

        Raises:
            GitError: If git exits non-zero.
        """
        try:
            return self._exec(["git", *args], cancel).strip()
        except RemoteCommandError as e:
            raise GitError(f"remote git {' '.join(args)}: {e.output.strip()}") from e

    def exists(self, rel: str, cancel: CancelScope | None = None) -> bool:
        check = ["bash", "-lc", f"test -e {shell_quote(rel)} && echo exists"]
        try:
            out = self._exec(check, cancel)
        except RemoteCommandError as e:
            out = e.output
        return "exists" in out

    def blob_hash(self, rel: str, cancel: CancelScope | None = None) -> str:
        """Git blob hash of a remote file, or "" if it does not exist."""
        if not self.exists(rel, cancel):
            return ""
        try:
            return self._exec(["git", "hash-object", "--", rel], cancel).strip()
        except RemoteCommandError as e:
            message = e.output.strip()
            if "does not exist" in message or "No such file" in message:
                return ""
            if is_transient_error(e):
                raise TransientError(message) from e
            raise GitError(f"git hash-object (remote): {message}") from e

    def status(
        self, paths: Sequence[str] | None = None, cancel: CancelScope | None = None
    ) -> list[StatusEntry]:
        args = ["git", *STATUS_ARGS]
        if paths:
            args.append("--")
            args.extend(paths)
        try:
            out = self._exec(args, cancel)
        except RemoteCommandError as e:
            raise GitError(f"git status (remote): {e.output.strip()}") from e
        return parse_status_output(out)

    def is_ignored(self, rel: str, cancel: CancelScope | None = None) -> bool:
        try:
            self._exec(["git", "check-ignore", "-q", "--", rel], cancel)
        except RemoteCommandError:
            return False
        return True

    def is_tracked(self, rel: str, cancel: CancelScope | None = None) -> bool:
        if self.is_ignored(rel, cancel):
            return False
        try:
            out = self._exec(["git", "ls-files", "--", rel], cancel)
        except RemoteCommandError:
            return False
        return out.strip() != ""

    def remove(self, rel: str, cancel: CancelScope | None = None) -> None:
        try:
            self._exec(["bash", "-lc", "rm -rf -- " + shell_quote(rel)], cancel)
        except RemoteCommandError as e:
            if is_transient_error(e):
                raise TransientError(f"remote remove {rel}: {e.output.strip()}") from e
            raise SyncError(f"remote remove {rel}: {e}") from e

    def ensure_dir(self, rel_dir: str, cancel: CancelScope | None = None) -> None:
        if rel_dir in ("", "."):
            return
        try:
            self._exec(["bash", "-lc", "mkdir -p " + shell_quote(rel_dir)], cancel)
        except RemoteCommandError as e:
            if is_transient_error(e):
                raise TransientError(f"remote mkdir {rel_dir}: {e.output.strip()}") from e
            raise SyncError(f"remote mkdir {rel_dir}: {e}") from e

    def chmod(self, rel: str, mode: int, cancel: CancelScope | None = None) -> None:
        try:
            self._bridge.exec_as_root(
                self._workdir, ["chmod", f"{mode:04o}", rel], cancel=cancel
            )
        except RemoteCommandError as e:
            if is_transient_error(e):
                raise TransientError(f"remote chmod {rel}: {e.output.strip()}") from e
            raise SyncError(f"remote chmod {rel}: {e}") from e
