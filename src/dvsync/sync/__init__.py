"""Bidirectional sync between a local git working tree and a container.

Architecture:
    HostWatcher / RemoteWatcher → EventQueue → EventBatcher → Reconciler
    GitStateWatcher → GitSyncer (bundle transfer, branch alignment)

Components:
- **HostWatcher**: watchdog observer over the local working tree
- **RemoteWatcher**: managed inotifywait process inside the container
- **EventQueue**: Bounded, path-deduplicating queue shared by both watchers
- **EventBatcher**: Debounces events and flushes them with a timeout
- **StatusTranslator**: Turns candidate paths into git-aware change records
- **Reconciler**: Copies, deletes and chmods so both trees converge
- **GitStateWatcher**: Raises the pending flag on host commits/checkouts
- **GitSyncer**: Replicates host commits into the container via bundles
- **SyncEngine**: Runs all of the above under one cancellation scope
"""

from dvsync.sync.batcher import EventBatcher
from dvsync.sync.cancel import CancelScope
from dvsync.sync.engine import SyncEngine
from dvsync.sync.git_status import (
    StatusTranslator,
    build_changes,
    parse_status_output,
    reported_paths,
)
from dvsync.sync.git_syncer import GitSyncer
from dvsync.sync.git_watcher import GitStateWatcher
from dvsync.sync.idle import IdleSignal
from dvsync.sync.ignore import is_skippable, should_ignore_relative
from dvsync.sync.queue import EventQueue
from dvsync.sync.reconciler import Reconciler
from dvsync.sync.remote_watcher import RemoteWatcher, parse_inotify_line
from dvsync.sync.retry import RetryQueue, is_transient_error
from dvsync.sync.trees import HostTree, RemoteTree
from dvsync.sync.types import (
    BatcherState,
    ChangeKind,
    ChangeRecord,
    ChangeSource,
    EngineState,
    GitSyncState,
    PathChangeEvent,
    RetryEntry,
    StatusEntry,
    SyncSession,
)
from dvsync.sync.watcher import HostWatcher

__all__ = [
    # Engine
    "SyncEngine",
    "SyncSession",
    "EngineState",
    # Watchers
    "HostWatcher",
    "RemoteWatcher",
    "GitStateWatcher",
    "parse_inotify_line",
    # Batching
    "EventQueue",
    "EventBatcher",
    "BatcherState",
    "IdleSignal",
    "CancelScope",
    "PathChangeEvent",
    "ChangeSource",
    # Reconciliation
    "Reconciler",
    "StatusTranslator",
    "HostTree",
    "RemoteTree",
    "ChangeKind",
    "ChangeRecord",
    "StatusEntry",
    "build_changes",
    "parse_status_output",
    "reported_paths",
    "RetryQueue",
    "RetryEntry",
    "is_transient_error",
    "should_ignore_relative",
    "is_skippable",
    # Git
    "GitSyncer",
    "GitSyncState",
]
