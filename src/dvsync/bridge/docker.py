"""Docker-backed Command Bridge."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

from dvsync.bridge.process import run_command
from dvsync.core.errors import RemoteCommandError

if TYPE_CHECKING:
    from dvsync.sync.cancel import CancelScope

logger = logging.getLogger(__name__)


class DockerBridge:
    """Runs commands in a container through the docker CLI.

    Usage:
        bridge = DockerBridge("my-container")
        out = bridge.exec("/var/www/discourse", ["git", "status", "--porcelain"])
    """

    def __init__(
        self,
        container: str,
        user: str = "discourse",
        root_user: str = "root",
        docker: str = "docker",
    ) -> None:
        """Initialize the bridge.

        Args:
            container: Container name or id.
            user: Application user commands run as.
            root_user: Privileged user for chmod/chown.
            docker: Docker CLI executable.
        """
        self._container = container
        self._user = user
        self._root_user = root_user
        self._docker = docker

    @property
    def container(self) -> str:
        return self._container

    def _exec_argv(
        self,
        user: str,
        workdir: str,
        argv: Sequence[str],
        env: Mapping[str, str] | None,
    ) -> list[str]:
        args = [self._docker, "exec", "--user", user, "-w", workdir]
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        args.append(self._container)
        args.extend(argv)
        return args

    def exec(
        self,
        workdir: str,
        argv: Sequence[str],
        env: Mapping[str, str] | None = None,
        cancel: CancelScope | None = None,
    ) -> str:
        result = run_command(self._exec_argv(self._user, workdir, argv, env), cancel=cancel)
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
        result = run_command(
            self._exec_argv(self._root_user, workdir, argv, env), cancel=cancel
        )
        if not result.ok:
            raise RemoteCommandError(list(argv), result.returncode, result.output)
        return result.output

    def copy_to_remote(
        self,
        host_path: str,
        remote_path: str,
        recursive: bool = False,
        cancel: CancelScope | None = None,
    ) -> None:
        argv = [self._docker, "cp", host_path, f"{self._container}:{remote_path}"]
        run_command(argv, cancel=cancel).check()

        chown = ["chown"]
        if recursive:
            chown.append("-R")
        chown.extend([f"{self._user}:{self._user}", remote_path])
        try:
            self.exec_as_root("/", chown, cancel=cancel)
        except RemoteCommandError as e:
            raise RemoteCommandError(
                e.argv,
                e.returncode,
                f"failed to set ownership on {remote_path}: {e.output}",
            ) from e

    def copy_from_remote(
        self,
        remote_path: str,
        host_path: str,
        cancel: CancelScope | None = None,
    ) -> None:
        argv = [self._docker, "cp", f"{self._container}:{remote_path}", host_path]
        run_command(argv, cancel=cancel).check()

    def start_process(self, workdir: str, argv: Sequence[str]) -> subprocess.Popen[str]:
        args = self._exec_argv(self._user, workdir, argv, None)
        logger.debug("Starting remote process: %s", " ".join(args))
        return subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
