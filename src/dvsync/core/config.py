"""Configuration for the dvsync engine.

This module defines the tunables shared by the sync loops and the helpers
that locate dvsync's XDG directories.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

APP_NAME = "dv"


@dataclass(frozen=True)
class SyncConfig:
    """Timing and environment settings for a sync engine.

    Attributes:
        settle_delay: Debounce window for file events (seconds).
        flush_timeout: Wall-clock budget of one flush (seconds).
        shutdown_flush_timeout: Budget of the final flush on shutdown.
        flush_stop_grace: How long to wait for an abandoned flush to stop.
        git_pending_check_interval: How often a running flush looks at the
            git-pending flag.
        git_sync_delay: Debounce window for git state signals (seconds).
        idle_tick: Interval of the batcher's idle announcements.
        idle_poll: Interval at which the git syncer re-reads the idle signal.
        queue_size: Capacity of the event queue.
        max_retry_attempts: Attempts per path before giving up.
        remote_user: Unprivileged application user inside the container.
        root_user: Privileged user used for chmod/chown.
        watch_binary: Recursive watch tool expected inside the container.
        remote_bundle_path: Where bundles are staged inside the container.
        reap_grace: Grace period when killing the remote watch process.
    """

    settle_delay: float = 0.25
    flush_timeout: float = 30.0
    shutdown_flush_timeout: float = 2.0
    flush_stop_grace: float = 2.0
    git_pending_check_interval: float = 1.0
    git_sync_delay: float = 0.5
    idle_tick: float = 0.025
    idle_poll: float = 0.05
    queue_size: int = 256
    max_retry_attempts: int = 3
    remote_user: str = "discourse"
    root_user: str = "root"
    watch_binary: str = "inotifywait"
    remote_bundle_path: str = "/tmp/dv-gitsync.bundle"
    reap_grace: float = 0.1

    def with_overrides(self, overrides: dict[str, Any]) -> SyncConfig:
        """Return a copy with known fields replaced from a mapping."""
        known = {f.name for f in fields(self)}
        accepted: dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in known:
                logger.debug("Ignoring unknown sync setting: %s", key)
                continue
            accepted[key] = value
        return replace(self, **accepted)


def _xdg_dir(env_var: str, fallback: Path) -> Path:
    base = os.environ.get(env_var)
    root = Path(base) if base else fallback
    return root / APP_NAME


def get_config_dir() -> Path:
    """Get the configuration directory ($XDG_CONFIG_HOME/dv)."""
    return _xdg_dir("XDG_CONFIG_HOME", Path.home() / ".config")


def get_data_dir() -> Path:
    """Get the data directory ($XDG_DATA_HOME/dv)."""
    return _xdg_dir("XDG_DATA_HOME", Path.home() / ".local" / "share")


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def load_sync_config() -> SyncConfig:
    """Build a SyncConfig from defaults plus the ``sync`` section of config.json."""
    overrides = load_config().get("sync") or {}
    if not isinstance(overrides, dict):
        logger.warning("Ignoring malformed 'sync' section in %s", get_config_file())
        return SyncConfig()
    return SyncConfig().with_overrides(overrides)
