"""Command-line interface for dvsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- sync: Keep a container working tree and a local git tree in sync
- sessions: List running sync sessions
"""

from __future__ import annotations

import click

from dvsync.cli.sessions import sessions
from dvsync.cli.sync import sync


@click.group()
@click.version_option(package_name="dvsync")
def cli() -> None:
    """dvsync - Bidirectional container <-> host git working-tree sync."""


cli.add_command(sync)
cli.add_command(sessions)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "main",
]
