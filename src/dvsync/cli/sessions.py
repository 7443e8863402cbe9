"""Sessions command for dvsync CLI.

Commands:
- sessions: List running sync sessions
"""

from __future__ import annotations

import click

from dvsync.registry import get_state_dir, list_sessions


@click.command()
def sessions() -> None:
    """List running sync sessions."""
    records = list_sessions(get_state_dir())
    if not records:
        click.echo("No sync sessions running.")
        return

    for record in records:
        click.echo(record.describe())
        if record.started_at:
            click.echo(f"  started {record.started_at}")
