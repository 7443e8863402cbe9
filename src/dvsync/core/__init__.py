"""Core module - Shared configuration and errors."""

from dvsync.core.config import (
    SyncConfig,
    get_config_dir,
    get_config_file,
    get_data_dir,
    load_config,
    load_sync_config,
)
from dvsync.core.errors import (
    GitError,
    HostGitError,
    OperationCancelled,
    PreconditionError,
    RemoteCommandError,
    SessionConflictError,
    SyncError,
    SyncSkipped,
    TransientError,
    WatcherError,
)

__all__ = [
    # Config
    "SyncConfig",
    "get_config_dir",
    "get_config_file",
    "get_data_dir",
    "load_config",
    "load_sync_config",
    # Errors
    "GitError",
    "HostGitError",
    "OperationCancelled",
    "PreconditionError",
    "RemoteCommandError",
    "SessionConflictError",
    "SyncError",
    "SyncSkipped",
    "TransientError",
    "WatcherError",
]
