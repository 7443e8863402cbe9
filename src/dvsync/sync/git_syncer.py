"""Git Syncer: replicates host git history into the remote repository.

This module provides:
- GitSyncer: Debounces git state signals and runs one reconciliation pass

A pass:
    1. Wait for the event batcher to report idle, then pause it
    2. Snapshot uncommitted remote changes and copy them to the host
    3. Drop queued file events and retry entries (stale from here on)
    4. Compare HEAD/branch of both sides; stop if they already match
    5. Refuse to continue when the remote has commits unknown to the host
    6. Bundle the commits the remote is missing, fetch the bundle remotely
    7. Point the remote branch (or detached HEAD) at the host commit
    8. Reapply the snapshot from step 2 (also when step 6 or 7 fails),
       clear the pending flag, resume

Bundles keep commit identity, so the remote ends up with exactly the same
SHAs as the host.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from dvsync.core.config import SyncConfig
from dvsync.core.errors import (
    GitError,
    HostGitError,
    OperationCancelled,
    RemoteCommandError,
    SyncError,
)
from dvsync.sync.git_status import StatusTranslator
from dvsync.sync.types import ChangeSource, GitSyncState, short_sha

if TYPE_CHECKING:
    from dvsync.sync.cancel import CancelScope
    from dvsync.sync.idle import IdleSignal
    from dvsync.sync.queue import EventQueue
    from dvsync.sync.reconciler import Reconciler
    from dvsync.sync.trees import HostTree, RemoteTree
    from dvsync.sync.types import ChangeRecord

logger = logging.getLogger(__name__)

DETACHED = "HEAD"

# git refuses a checkout that would clobber untracked or modified files
OVERWRITE_MARKER = "would be overwritten"


class GitSyncer:
    """Keeps the remote repository at the host's exact commit.

    Usage:
        syncer = GitSyncer(host, remote, reconciler, queue, idle, pending, paused)
        watcher = GitStateWatcher(repo, pending, syncer.notify)
        syncer.run(scope)
    """

    def __init__(
        self,
        host: HostTree,
        remote: RemoteTree,
        reconciler: Reconciler,
        queue: EventQueue,
        idle: IdleSignal,
        git_pending: threading.Event,
        paused: threading.Event,
        config: SyncConfig | None = None,
    ) -> None:
        """Initialize the syncer.

        Args:
            host: Local working tree.
            remote: Remote working tree.
            reconciler: Used to carry uncommitted remote work across the pass.
            queue: Event queue, drained before the trees are rewritten.
            idle: Batcher idle signal awaited before pausing file sync.
            git_pending: Shared "git sync pending" flag, cleared after a pass.
            paused: File sync pause flag, held for the duration of a pass.
            config: Timing and bundle settings.
        """
        self._host = host
        self._remote = remote
        self._reconciler = reconciler
        self._queue = queue
        self._idle = idle
        self._git_pending = git_pending
        self._paused = paused
        self._config = config or SyncConfig()
        self._signal = threading.Event()
        self._syncing = False

    @property
    def syncing(self) -> bool:
        """Check if a pass is in progress."""
        return self._syncing

    def notify(self) -> None:
        """Request a pass; repeated requests coalesce."""
        self._signal.set()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self, cancel: CancelScope) -> None:
        """Debounce git state signals and run passes until ``cancel`` fires.

        Raises:
            HostGitError: If the host git state cannot be read.
        """
        logger.debug("git syncer: entering event loop")
        while not cancel.cancelled:
            if not self._signal.wait(self._config.idle_poll):
                continue
            if not self._debounce(cancel):
                return
            logger.debug("git sync debounce complete, starting sync")
            try:
                self.perform(cancel)
            except HostGitError:
                raise
            except OperationCancelled:
                if cancel.cancelled:
                    return
                logger.error("git sync error: interrupted")
            except SyncError as e:
                logger.error("git sync error: %s", e)

    def _debounce(self, cancel: CancelScope) -> bool:
        """Wait until no signal arrived for a full window.

        Returns:
            False if cancelled while waiting.
        """
        while True:
            self._signal.clear()
            logger.debug("git event received, starting %.1fs debounce", self._config.git_sync_delay)
            deadline = self._config.git_sync_delay
            waited = 0.0
            while waited < deadline:
                if cancel.cancelled:
                    return False
                step = min(self._config.idle_poll, deadline - waited)
                if self._signal.wait(step):
                    break
                waited += step
            else:
                return True

    def perform(self, cancel: CancelScope) -> None:
        """Run one full reconciliation pass.

        The pending flag is cleared and file sync resumed however the pass ends.
        """
        logger.debug("waiting for file sync idle")
        if not self._idle.wait(cancel, poll=self._config.idle_poll):
            return
        logger.debug("file sync is idle, pausing")

        self._syncing = True
        self._paused.set()
        try:
            translator = StatusTranslator(self._remote, self._host)
            changes = translator.collect(None, cancel)
            if changes:
                logger.info(
                    "git sync: remote has %d uncommitted change(s), syncing to host",
                    len(changes),
                )
                self._reconciler.apply_changes(ChangeSource.REMOTE, changes, cancel)

            self.drain()
            try:
                self.sync_to_remote(cancel)
            except SyncError:
                if changes:
                    self._restore(changes, cancel)
                raise

            if changes:
                self._reconciler.apply_changes(ChangeSource.HOST, changes, cancel)
        finally:
            self._paused.clear()
            self._git_pending.clear()
            self._syncing = False
            logger.debug("git sync complete, file sync resumed")

    def _restore(self, changes: list[ChangeRecord], cancel: CancelScope) -> None:
        """Put the uncommitted remote work back after a failed pass.

        A failed pass may already have reset the remote tree. The host holds
        the snapshot taken at the start of the pass.
        """
        try:
            self._reconciler.apply_changes(ChangeSource.HOST, changes, cancel)
        except SyncError as e:
            logger.warning(
                "git sync: could not restore uncommitted remote changes (%s): %s",
                ", ".join(c.path for c in changes),
                e,
            )
            return
        logger.info("git sync: restored %d uncommitted remote change(s)", len(changes))

    def drain(self) -> None:
        """Discard queued file events and retry entries."""
        drained = self._queue.clear()
        if drained:
            logger.debug("drained %d stale file events before git sync", drained)
        cleared = self._reconciler.retries.clear()
        if cleared:
            logger.debug("cleared %d stale retry entries before git sync", cleared)

    # ------------------------------------------------------------------
    # Git operations
    # ------------------------------------------------------------------

    def check_state(self, cancel: CancelScope | None = None) -> GitSyncState:
        """Read HEAD and branch of both repositories.

        Raises:
            HostGitError: If the host HEAD cannot be resolved (e.g. no commits).
            GitError: If the remote HEAD cannot be resolved.
        """
        host_head = self._host.git("rev-parse", "HEAD", cancel=cancel)
        try:
            host_branch = self._host.git("rev-parse", "--abbrev-ref", "HEAD", cancel=cancel)
        except HostGitError:
            host_branch = ""

        remote_head = self._remote.git("rev-parse", "HEAD", cancel=cancel)
        try:
            remote_branch = self._remote.git("rev-parse", "--abbrev-ref", "HEAD", cancel=cancel)
        except GitError:
            remote_branch = ""

        return GitSyncState(
            host_head=host_head,
            host_branch=host_branch or DETACHED,
            remote_head=remote_head,
            remote_branch=remote_branch or DETACHED,
        )

    def remote_is_ahead(self, state: GitSyncState, cancel: CancelScope | None = None) -> bool:
        """Check whether the remote has commits the host does not."""
        if not self._host.has_commit(state.remote_head, cancel):
            logger.debug("remote HEAD %s not found in host", short_sha(state.remote_head))
            return True
        try:
            count = self._host.git(
                "rev-list", "--count", f"{state.host_head}..{state.remote_head}", cancel=cancel
            )
        except HostGitError as e:
            raise GitError(str(e)) from e
        ahead = count not in ("", "0")
        if ahead:
            logger.debug("remote is %s commits ahead of host", count)
        return ahead

    def create_bundle(
        self, state: GitSyncState, cancel: CancelScope | None = None
    ) -> Path | None:
        """Bundle the commits between the remote HEAD and the host branch.

        Returns:
            Path of a temporary bundle file the caller must delete, or None
            when there is nothing to transfer.
        """
        if not self._host.has_commit(state.remote_head, cancel):
            logger.debug("remote HEAD %s not found in host", short_sha(state.remote_head))
            return None
        try:
            count = self._host.git(
                "rev-list", "--count", f"{state.remote_head}..{state.host_branch}", cancel=cancel
            )
        except HostGitError as e:
            raise GitError(f"counting commits: {e}") from e
        if count in ("", "0"):
            logger.debug("no new commits to bundle")
            return None

        fd, name = tempfile.mkstemp(prefix="dv-gitsync-", suffix=".bundle")
        os.close(fd)
        bundle = Path(name)
        try:
            self._host.git(
                "bundle", "create", str(bundle), f"^{state.remote_head}", state.host_branch,
                cancel=cancel,
            )
        except HostGitError as e:
            bundle.unlink(missing_ok=True)
            raise GitError(f"git bundle create: {e}") from e
        logger.debug("created bundle with %s commit(s)", count)
        return bundle

    def apply_bundle(
        self, bundle: Path, state: GitSyncState, cancel: CancelScope | None = None
    ) -> None:
        """Fetch a host bundle into the remote repository."""
        # File sync may already have written the new contents remotely
        try:
            self._remote.git("reset", "--hard", "HEAD", cancel=cancel)
        except GitError as e:
            logger.debug("git reset --hard failed: %s", e)

        remote_bundle = self._config.remote_bundle_path
        bridge = self._remote.bridge
        try:
            bridge.copy_to_remote(str(bundle), remote_bundle, False, cancel)
        except RemoteCommandError as e:
            raise GitError(f"copying bundle to remote: {e}") from e

        try:
            self._remote.git("fetch", remote_bundle, state.host_branch, cancel=cancel)
        except GitError as e:
            raise GitError(f"git fetch from bundle: {e}") from e
        finally:
            try:
                bridge.exec("/", ["rm", "-f", remote_bundle], cancel=cancel)
            except RemoteCommandError as e:
                logger.debug("could not remove remote bundle: %s", e)

    def sync_branch(self, state: GitSyncState, cancel: CancelScope | None = None) -> None:
        """Point the remote branch, or detached HEAD, at the host commit."""
        if state.host_branch == DETACHED:
            args = ["checkout", "--detach", state.host_head]
        else:
            args = ["checkout", "-B", state.host_branch, state.host_head]
        try:
            self._remote.git(*args, cancel=cancel)
        except GitError as e:
            if OVERWRITE_MARKER not in str(e):
                raise GitError(f"syncing branch: {e}") from e
            # Files synced ahead of the commit block the checkout. Uncommitted
            # remote work was already carried to the host and is reapplied.
            logger.debug("checkout blocked by synced files, forcing: %s", e)
            args.insert(1, "--force")
            try:
                self._remote.git(*args, cancel=cancel)
            except GitError as forced:
                raise GitError(f"syncing branch: {forced}") from forced

    def sync_to_remote(self, cancel: CancelScope | None = None) -> bool:
        """Bring the remote repository to the host's HEAD and branch.

        Returns:
            True if the remote was moved, False if it was already in sync or
            the pass was refused because the remote is ahead.
        """
        state = self.check_state(cancel)
        if state.in_sync:
            logger.debug(
                "git already in sync at %s (%s)", short_sha(state.host_head), state.host_branch
            )
            return False

        logger.debug(
            "syncing git: host=%s (%s) remote=%s (%s)",
            short_sha(state.host_head),
            state.host_branch,
            short_sha(state.remote_head),
            state.remote_branch,
        )
        if self.remote_is_ahead(state, cancel):
            logger.warning("remote has commits not in host, skipping git sync")
            return False

        bundle = self.create_bundle(state, cancel)
        if bundle is not None:
            try:
                self.apply_bundle(bundle, state, cancel)
            finally:
                bundle.unlink(missing_ok=True)

        self.sync_branch(state, cancel)
        logger.info(
            "git sync: remote now at %s (%s)", short_sha(state.host_head), state.host_branch
        )
        return True
