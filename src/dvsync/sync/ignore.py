"""Path filtering for the version-control metadata directory."""

from __future__ import annotations

METADATA_DIR = ".git"


def should_ignore_relative(rel: str) -> bool:
    """Check if a relative path falls inside the git metadata directory.

    Args:
        rel: Path relative to a working-tree root, with forward slashes.

    Returns:
        True if the path is ``.git`` or lives under a ``.git`` directory.
    """
    if not rel:
        return False
    clean = rel.removeprefix("./").removeprefix("/")
    return (
        clean == METADATA_DIR
        or clean.startswith(METADATA_DIR + "/")
        or f"/{METADATA_DIR}/" in clean
    )


def is_skippable(rel: str) -> bool:
    """Check if a watcher-reported relative path carries no syncable content."""
    return rel in ("", ".") or should_ignore_relative(rel)
