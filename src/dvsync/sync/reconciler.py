"""Content reconciliation between the host and remote working trees.

The reconciler takes change records for one side and performs the minimal
copy/delete/chmod on the other side so both trees converge:

    | Record  | Action on the opposite side                           |
    |---------|-------------------------------------------------------|
    | MODIFY  | Copy if blob hashes differ, reapply permission bits   |
    | DELETE  | Remove, tolerating "already absent"                   |
    | RENAME  | Remove old path, then handle new path as MODIFY       |

Paths gitignored on the destination are never touched.

Outcomes per path:
- SyncSkipped (source vanished): treated as success
- TransientError: path requeued through the RetryQueue
- Anything else: aborts the flush and propagates (engine-fatal), except in
  the fallback pass for paths git did not report, where it is only logged
"""

from __future__ import annotations

import logging
import os
import posixpath
import stat
import threading
from typing import TYPE_CHECKING

from dvsync.core.errors import (
    OperationCancelled,
    RemoteCommandError,
    SyncError,
    SyncSkipped,
    TransientError,
)
from dvsync.sync.git_status import StatusTranslator, reported_paths
from dvsync.sync.ignore import is_skippable, should_ignore_relative
from dvsync.sync.retry import is_transient_error
from dvsync.sync.types import ChangeKind, ChangeRecord, ChangeSource

if TYPE_CHECKING:
    from collections.abc import Sequence

    from dvsync.sync.cancel import CancelScope
    from dvsync.sync.retry import RetryQueue
    from dvsync.sync.trees import HostTree, RemoteTree

logger = logging.getLogger(__name__)


class FlushAborted(Exception):
    """Internal signal: git sync became pending mid-batch."""


class Reconciler:
    """Applies change records from one side of the sync to the other.

    Usage:
        reconciler = Reconciler(host, remote, retries, git_pending)
        reconciler.process(ChangeSource.HOST, ["app/models/user.rb"], scope)
    """

    def __init__(
        self,
        host: HostTree,
        remote: RemoteTree,
        retries: RetryQueue,
        git_pending: threading.Event | None = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            host: Local working tree.
            remote: Remote working tree.
            retries: Shared retry bookkeeping.
            git_pending: Flag raised while a git sync is pending; checked
                between records so git reconciliation takes priority.
        """
        self._host = host
        self._remote = remote
        self._retries = retries
        self._git_pending = git_pending or threading.Event()

    @property
    def retries(self) -> RetryQueue:
        return self._retries

    def _trees(self, source: ChangeSource) -> tuple[HostTree | RemoteTree, HostTree | RemoteTree]:
        if source is ChangeSource.HOST:
            return self._host, self._remote
        return self._remote, self._host

    def _log(self, source: ChangeSource, verb: str, path: str) -> None:
        logger.info("%s → %s: %s %s", source.label, source.opposite.label, verb, path)

    def _checkpoint(self, cancel: CancelScope | None, what: str, done: int, total: int) -> None:
        if cancel is not None and cancel.cancelled:
            raise OperationCancelled(f"{what} cancelled")
        if self._git_pending.is_set():
            logger.debug(
                "git sync pending, aborting %s mid-batch (%d/%d processed)",
                what,
                done,
                total,
            )
            raise FlushAborted

    # ------------------------------------------------------------------
    # Flush entry points
    # ------------------------------------------------------------------

    def process(
        self,
        source: ChangeSource,
        paths: Sequence[str],
        cancel: CancelScope | None = None,
    ) -> None:
        """Reconcile a batch of watcher-reported paths from ``source``.

        Returns early, without error, if a git sync becomes pending.

        Raises:
            OperationCancelled: If ``cancel`` fires.
            SyncError: On a non-transient failure.
        """
        paths = [p for p in paths if not is_skippable(p)]
        if not paths:
            return
        if cancel is not None and cancel.cancelled:
            raise OperationCancelled("flush cancelled")
        if self._git_pending.is_set():
            logger.debug("git sync pending, aborting %s changes processing", source.label)
            return
        logger.debug("%s events: %s", source.label, ", ".join(paths))

        src, dst = self._trees(source)
        translator = StatusTranslator(src, dst)
        what = f"{source.label} changes"

        try:
            changes = translator.collect(paths, cancel)
            for i, change in enumerate(changes):
                self._checkpoint(cancel, what, i, len(changes))
                self._apply(source, change, cancel, lenient=False)

            reported = reported_paths(changes)
            for i, rel in enumerate(paths):
                self._checkpoint(cancel, f"{source.label} path check", i, len(paths))
                if rel in reported or should_ignore_relative(rel):
                    continue
                try:
                    record = translator.classify_unreported(rel, cancel)
                except OperationCancelled:
                    raise
                except SyncError as e:
                    logger.debug("could not classify %s: %s", rel, e)
                    continue
                if record is None:
                    continue
                self._apply(source, record, cancel, lenient=True)
        except FlushAborted:
            return

    def apply_changes(
        self,
        source: ChangeSource,
        changes: Sequence[ChangeRecord],
        cancel: CancelScope | None = None,
    ) -> None:
        """Apply known change records without retry or pending checks.

        Used by the git syncer to carry uncommitted work across a reset.
        Paths gitignored on either side are left alone. Every failure
        propagates.
        """
        both = (self._host, self._remote)
        for change in changes:
            if cancel is not None and cancel.cancelled:
                raise OperationCancelled("apply cancelled")
            if change.kind is ChangeKind.RENAME and change.old_path:
                if not should_ignore_relative(change.old_path) and not self._ignored(
                    change.old_path, both, cancel
                ):
                    self._remove(source, change.old_path, cancel)
            if self._ignored(change.path, both, cancel):
                continue
            if change.kind is ChangeKind.DELETE:
                self._remove(source, change.path, cancel)
                continue
            if self._hashes_match(change.path, cancel):
                continue
            try:
                self._copy(source, change.path, cancel)
            except SyncSkipped:
                logger.debug("skipping %s (file vanished)", change.path)
                continue
            self._log(source, "updated", change.path)

    # ------------------------------------------------------------------
    # Per-record handling
    # ------------------------------------------------------------------

    def _apply(
        self,
        source: ChangeSource,
        change: ChangeRecord,
        cancel: CancelScope | None,
        lenient: bool,
    ) -> None:
        _, dst = self._trees(source)
        if change.kind is ChangeKind.RENAME and change.old_path:
            if not should_ignore_relative(change.old_path) and not self._ignored(
                change.old_path, (dst,), cancel
            ):
                if not self._guarded_remove(source, change.old_path, cancel, lenient):
                    return

        if self._ignored(change.path, (dst,), cancel):
            self._retries.discard(change.path)
            return

        if change.kind is ChangeKind.DELETE:
            if self._guarded_remove(source, change.path, cancel, lenient):
                self._retries.discard(change.path)
            return

        self._sync_content(source, change.path, cancel, lenient)

    def _guarded_remove(
        self,
        source: ChangeSource,
        rel: str,
        cancel: CancelScope | None,
        lenient: bool,
    ) -> bool:
        try:
            self._remove(source, rel, cancel)
        except TransientError:
            self._retries.record_failure(rel, source)
            return False
        except OperationCancelled:
            raise
        except SyncError as e:
            if not lenient:
                raise
            logger.debug("remove failed for %s: %s", rel, e)
            return False
        return True

    def _sync_content(
        self,
        source: ChangeSource,
        rel: str,
        cancel: CancelScope | None,
        lenient: bool,
    ) -> None:
        try:
            if self._hashes_match(rel, cancel):
                logger.debug("%s path %s already synchronized", source.label, rel)
                self._retries.discard(rel)
                return
            self._copy(source, rel, cancel)
        except SyncSkipped:
            logger.debug(
                "skipping %s → %s copy for %s (file vanished)",
                source.label,
                source.opposite.label,
                rel,
            )
            self._retries.discard(rel)
            return
        except TransientError:
            self._retries.record_failure(rel, source)
            return
        except OperationCancelled:
            raise
        except SyncError as e:
            if not lenient:
                raise
            logger.debug("sync failed for %s: %s", rel, e)
            return

        self._retries.discard(rel)
        self._log(source, "updated", rel)

    # ------------------------------------------------------------------
    # Primitive operations
    # ------------------------------------------------------------------

    def _ignored(
        self,
        rel: str,
        trees: Sequence[HostTree | RemoteTree],
        cancel: CancelScope | None,
    ) -> bool:
        for tree in trees:
            if tree.is_ignored(rel, cancel):
                logger.debug("skipping %s (gitignored on %s)", rel, tree.source.label)
                return True
        return False

    def _hashes_match(self, rel: str, cancel: CancelScope | None) -> bool:
        host_hash = self._host.blob_hash(rel, cancel)
        remote_hash = self._remote.blob_hash(rel, cancel)
        return host_hash != "" and host_hash == remote_hash

    def _remove(self, source: ChangeSource, rel: str, cancel: CancelScope | None) -> None:
        _, dst = self._trees(source)
        if not dst.exists(rel, cancel):
            logger.debug("%s already absent on %s", rel, dst.source.label)
            return
        dst.remove(rel, cancel)
        self._log(source, "removed", rel)

    def _copy(self, source: ChangeSource, rel: str, cancel: CancelScope | None) -> None:
        if source is ChangeSource.HOST:
            self._copy_host_to_remote(rel, cancel)
        else:
            self._copy_remote_to_host(rel, cancel)

    def _copy_host_to_remote(self, rel: str, cancel: CancelScope | None) -> None:
        host_path = self._host.abspath(rel)
        try:
            info = os.stat(host_path)
        except FileNotFoundError:
            raise SyncSkipped(rel) from None
        except OSError as e:
            if is_transient_error(e):
                raise TransientError(str(e)) from e
            raise SyncError(f"stat {rel}: {e}") from e
        if stat.S_ISDIR(info.st_mode):
            return

        rel_dir = posixpath.dirname(rel)
        self._remote.ensure_dir(rel_dir, cancel)
        dest_dir = self._remote.abspath(rel_dir) if rel_dir else self._remote.workdir
        try:
            self._remote.bridge.copy_to_remote(str(host_path), dest_dir, False, cancel)
        except RemoteCommandError as e:
            if not host_path.exists():
                raise SyncSkipped(rel) from e
            if is_transient_error(e):
                raise TransientError(str(e)) from e
            raise SyncError(f"copy {rel} to remote: {e}") from e

        # Keep the application user's permission bits in line with the host
        self._remote.chmod(rel, stat.S_IMODE(info.st_mode), cancel)

    def _copy_remote_to_host(self, rel: str, cancel: CancelScope | None) -> None:
        host_path = self._host.abspath(rel)
        try:
            host_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            if is_transient_error(e):
                raise TransientError(str(e)) from e
            raise SyncError(f"mkdir {host_path.parent}: {e}") from e
        try:
            self._remote.bridge.copy_from_remote(
                self._remote.abspath(rel), str(host_path), cancel
            )
        except RemoteCommandError as e:
            if not self._remote.exists(rel, cancel):
                raise SyncSkipped(rel) from e
            if is_transient_error(e):
                raise TransientError(str(e)) from e
            raise SyncError(f"copy {rel} from remote: {e}") from e
