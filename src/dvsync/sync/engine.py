"""Sync engine: wires the five loops of a sync session together.

    HostWatcher ──┐                       ┌─► Reconciler (host → remote)
                  ├─► EventQueue ─► EventBatcher
    RemoteWatcher ┘                       └─► Reconciler (remote → host)

    GitStateWatcher ─(pending flag, notify)─► GitSyncer ─► bundle/checkout

Every loop runs in its own thread under one root CancelScope. The first
loop to fail cancels the scope, the others wind down, and run() re-raises
that first error.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from dvsync.core.config import SyncConfig
from dvsync.core.errors import OperationCancelled, PreconditionError, RemoteCommandError
from dvsync.sync.batcher import EventBatcher
from dvsync.sync.cancel import CancelScope
from dvsync.sync.git_syncer import GitSyncer
from dvsync.sync.git_watcher import GitStateWatcher
from dvsync.sync.idle import IdleSignal
from dvsync.sync.queue import EventQueue
from dvsync.sync.reconciler import Reconciler
from dvsync.sync.remote_watcher import RemoteWatcher
from dvsync.sync.retry import RetryQueue
from dvsync.sync.trees import HostTree, RemoteTree, shell_quote
from dvsync.sync.types import EngineState
from dvsync.sync.watcher import HostWatcher

if TYPE_CHECKING:
    from dvsync.bridge.base import CommandBridge
    from dvsync.sync.types import SyncSession

logger = logging.getLogger(__name__)

# How long run() waits for each loop thread after cancellation
JOIN_TIMEOUT = 10.0


class SyncEngine:
    """Bidirectional sync between a local git tree and a remote tree.

    Usage:
        engine = SyncEngine(session, DockerBridge(session.container))
        signal.signal(signal.SIGINT, lambda *_: engine.stop())
        engine.run()  # blocks until stop() or a fatal error
    """

    def __init__(
        self,
        session: SyncSession,
        bridge: CommandBridge,
        config: SyncConfig | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            session: Container, workdir and local repository of the session.
            bridge: Command Bridge to the remote environment.
            config: Timing and environment settings.
        """
        self._session = session
        self._bridge = bridge
        self._config = config or SyncConfig()
        self._scope = CancelScope()

        self.host = HostTree(session.local_repo)
        self.remote = RemoteTree(bridge, session.workdir)
        self.queue = EventQueue(self._config.queue_size)
        self.retries = RetryQueue(self._config.max_retry_attempts)
        self.idle = IdleSignal()
        self.git_pending = threading.Event()
        self.paused = threading.Event()

        self.reconciler = Reconciler(self.host, self.remote, self.retries, self.git_pending)
        self.batcher = EventBatcher(
            self.queue,
            self.reconciler,
            self.idle,
            self.git_pending,
            self.paused,
            self._config,
        )
        self.git_syncer = GitSyncer(
            self.host,
            self.remote,
            self.reconciler,
            self.queue,
            self.idle,
            self.git_pending,
            self.paused,
            self._config,
        )
        self.host_watcher = HostWatcher(self.host, self.queue)
        self.remote_watcher = RemoteWatcher(
            self.remote,
            self.queue,
            binary=self._config.watch_binary,
            reap_grace=self._config.reap_grace,
        )
        self.git_watcher = GitStateWatcher(
            session.local_repo, self.git_pending, self.git_syncer.notify
        )

        self._lock = threading.Lock()
        self._error: BaseException | None = None

    @property
    def session(self) -> SyncSession:
        return self._session

    @property
    def state(self) -> EngineState:
        """Git-level state: idle, git-pending or syncing."""
        if self.git_syncer.syncing:
            return EngineState.SYNCING
        if self.git_pending.is_set():
            return EngineState.GIT_PENDING
        return EngineState.IDLE

    @property
    def cancelled(self) -> bool:
        return self._scope.cancelled

    def stop(self) -> None:
        """Request shutdown; run() returns once every loop has stopped."""
        logger.debug("sync engine stop requested")
        self._scope.cancel()

    def check_preconditions(self) -> None:
        """Verify the remote watch tool is installed.

        Raises:
            PreconditionError: If the watch binary is missing remotely.
        """
        binary = self._config.watch_binary
        missing = (
            f"{binary} not found in container; install inotify-tools (provides {binary})"
        )
        check = ["bash", "-lc", f"command -v {shell_quote(binary)}"]
        try:
            out = self._bridge.exec(self._session.workdir, check, cancel=self._scope)
        except RemoteCommandError as e:
            detail = e.output.strip()
            if not detail:
                raise PreconditionError(missing) from e
            raise PreconditionError(f"checking {binary}: {e}") from e
        if not out.strip():
            raise PreconditionError(missing)

    def _record_failure(self, name: str, error: BaseException) -> None:
        with self._lock:
            if self._error is None and not (
                isinstance(error, OperationCancelled) and self._scope.cancelled
            ):
                logger.debug("%s failed: %s", name, error)
                self._error = error
        self._scope.cancel()

    def _spawn(self, name: str, target: Callable[[CancelScope], None]) -> threading.Thread:
        def loop() -> None:
            logger.debug("%s starting", name)
            try:
                target(self._scope)
            except BaseException as e:
                self._record_failure(name, e)
            finally:
                logger.debug("%s stopped", name)

        thread = threading.Thread(target=loop, name=name, daemon=True)
        thread.start()
        return thread

    def run(self) -> None:
        """Run every loop until stop() is called or one of them fails.

        Raises:
            PreconditionError: If the remote watch tool is missing.
            SyncError: The first fatal error raised by any loop.
        """
        self.check_preconditions()

        threads = [
            self._spawn("HostWatcher", self.host_watcher.run),
            self._spawn("RemoteWatcher", self.remote_watcher.run),
            self._spawn("EventBatcher", self.batcher.run),
            self._spawn("GitStateWatcher", self.git_watcher.run),
            self._spawn("GitSyncer", self.git_syncer.run),
        ]

        self._scope.wait()
        for thread in threads:
            thread.join(JOIN_TIMEOUT)
            if thread.is_alive():
                logger.debug("%s did not stop within %.0fs", thread.name, JOIN_TIMEOUT)

        if self._error is not None:
            raise self._error
