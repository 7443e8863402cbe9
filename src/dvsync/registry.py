"""Session registry: one JSON record per running sync session.

Records live in ``$XDG_DATA_HOME/dv/extract_sync/`` and are named after the
SHA-256 of the normalized local repository path. They are only consulted at
startup, to refuse or negotiate a second session for the same local tree.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import signal
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from dvsync.core.config import get_data_dir
from dvsync.core.errors import SessionConflictError, SyncError

logger = logging.getLogger(__name__)

STATE_DIR_NAME = "extract_sync"
TERMINATE_TIMEOUT = 3.0


@dataclass
class SessionRecord:
    """A running sync session.

    Attributes:
        pid: Process id of the session.
        container_name: Remote environment the session syncs with.
        container_workdir: Working directory inside the container.
        local_repo: Normalized local repository path.
        started_at: UTC start time, RFC 3339.
        path: Record file the entry was read from (not serialized).
    """

    pid: int
    container_name: str
    container_workdir: str
    local_repo: str
    started_at: str = ""
    path: Path | None = field(default=None, compare=False)

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        data.pop("path")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, object], path: Path | None = None) -> SessionRecord:
        return cls(
            pid=int(data["pid"]),  # type: ignore[call-overload]
            container_name=str(data.get("container_name", "")),
            container_workdir=str(data.get("container_workdir", "")),
            local_repo=normalize_local_repo(str(data.get("local_repo", ""))),
            started_at=str(data.get("started_at", "")),
            path=path,
        )

    def describe(self) -> str:
        return f"pid {self.pid}: {self.container_name} ({self.container_workdir}) -> {self.local_repo}"


def get_state_dir() -> Path:
    """Get the registry directory."""
    return get_data_dir() / STATE_DIR_NAME


def normalize_local_repo(repo_path: str | os.PathLike[str]) -> str:
    """Absolute, cleaned form of a local repository path."""
    value = str(repo_path).strip()
    if not value:
        return value
    return os.path.normpath(os.path.abspath(value))


def record_path(state_dir: Path, local_repo: str) -> Path:
    """Record file for a normalized local repository path."""
    digest = hashlib.sha256(local_repo.encode("utf-8")).hexdigest()
    return state_dir / f"{digest}.json"


def is_process_running(pid: int) -> bool:
    """Check whether a process exists (signal 0 check)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def read_record(path: Path) -> SessionRecord:
    """Read one record file.

    Raises:
        OSError: If the file cannot be read.
        ValueError: If it does not hold a valid record.
    """
    data = json.loads(path.read_text())
    if not isinstance(data, dict):
        raise ValueError(f"invalid session record: {path}")
    try:
        return SessionRecord.from_dict(data, path)
    except (KeyError, TypeError) as e:
        raise ValueError(f"invalid session record: {path}") from e


def read_records(state_dir: Path) -> tuple[list[SessionRecord], list[Path]]:
    """Read every record in the registry.

    Returns:
        The valid records and the paths of unreadable ones.
    """
    if not state_dir.is_dir():
        return [], []
    records: list[SessionRecord] = []
    invalid: list[Path] = []
    for entry in sorted(state_dir.iterdir()):
        if entry.is_dir() or entry.suffix != ".json":
            continue
        try:
            records.append(read_record(entry))
        except (OSError, ValueError) as e:
            logger.debug("invalid session record %s: %s", entry, e)
            invalid.append(entry)
    return records, invalid


def _remove(path: Path | None) -> None:
    if path is None:
        return
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def list_sessions(state_dir: Path | None = None) -> list[SessionRecord]:
    """Records of the sessions that are still running."""
    records, _ = read_records(state_dir or get_state_dir())
    return [r for r in records if is_process_running(r.pid)]


def terminate_session(record: SessionRecord, timeout: float = TERMINATE_TIMEOUT) -> None:
    """Send SIGTERM to a session and wait for it to exit.

    Raises:
        SyncError: If the process cannot be signalled or outlives the timeout.
    """
    if record.pid <= 0:
        raise SyncError(f"invalid pid {record.pid}")
    try:
        os.kill(record.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    except OSError as e:
        raise SyncError(f"failed to signal pid {record.pid}: {e}") from e
    logger.info("Sent SIGTERM to pid %d", record.pid)

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_process_running(record.pid):
            return
        time.sleep(0.1)
    raise SyncError(f"process {record.pid} is still running; stop it and retry")


def write_record(path: Path, record: SessionRecord) -> None:
    """Create a record file exclusively.

    An existing file is replaced only if its process is gone.

    Raises:
        SessionConflictError: If a live session already owns the file.
    """
    payload = json.dumps(record.to_dict()) + "\n"
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except FileExistsError:
        try:
            existing = read_record(path)
        except (OSError, ValueError):
            existing = None
        if existing is not None and is_process_running(existing.pid):
            raise SessionConflictError(
                f"sync already running for {existing.local_repo} (pid {existing.pid})"
            ) from None
        _remove(path)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(payload)
    except OSError:
        _remove(path)
        raise


def register_session(
    container: str,
    workdir: str,
    local_repo: str | os.PathLike[str],
    confirm: Callable[[str], bool],
    state_dir: Path | None = None,
) -> Callable[[], None]:
    """Register the current process as the sync session for a local tree.

    Args:
        container: Remote environment name.
        workdir: Working directory inside the container.
        local_repo: Local repository path.
        confirm: Asked whether to stop conflicting sessions; receives a
            prompt describing them.
        state_dir: Registry directory (defaults to get_state_dir()).

    Returns:
        A callable that removes the record again.

    Raises:
        SessionConflictError: If a session for the same path keeps running.
        SyncError: If a session could not be stopped.
    """
    state_dir = state_dir or get_state_dir()
    state_dir.mkdir(parents=True, exist_ok=True)

    repo = normalize_local_repo(local_repo)
    path = record_path(state_dir, repo)

    records, invalid = read_records(state_dir)
    for stale in invalid:
        _remove(stale)

    active: list[SessionRecord] = []
    for record in records:
        if record.pid == os.getpid() or not is_process_running(record.pid):
            _remove(record.path)
            continue
        active.append(record)

    same = next((r for r in active if r.local_repo and r.local_repo == repo), None)
    others = [r for r in active if r is not same]

    if same is not None:
        prompt = (
            f"Sync already running for {repo}\n"
            f"  pid {same.pid}, container {same.container_name}, "
            f"workdir {same.container_workdir}\n"
            "Stop it now?"
        )
        if not confirm(prompt):
            raise SessionConflictError(f"sync already running for {repo} (pid {same.pid})")
        terminate_session(same)
        _remove(same.path)

    if others:
        listing = "\n".join(f"  {r.describe()}" for r in others)
        prompt = (
            f"Another sync is already running:\n{listing}\n"
            "Stop the running sync(s) before continuing?"
        )
        if confirm(prompt):
            for record in others:
                terminate_session(record)
                _remove(record.path)

    record = SessionRecord(
        pid=os.getpid(),
        container_name=container,
        container_workdir=workdir,
        local_repo=repo,
        started_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    )
    write_record(path, record)
    logger.debug("registered sync session %s", path)

    def release() -> None:
        _remove(path)

    return release
