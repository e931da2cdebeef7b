"""CLI application — Click-based command group for the Vigil operator.

The main CLI group and global flags. Subcommand modules register
themselves by importing and adding to the group.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any

import click


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


@click.group(invoke_without_command=True)
@click.option("--json", "json_output", is_flag=True, help="Structured JSON output")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.pass_context
def cli(ctx: click.Context, json_output: bool, no_color: bool) -> None:
    """Vigil - a single-host gateway daemon for a personal agent."""
    ctx.ensure_object(dict)
    ctx.obj["json"] = json_output
    ctx.obj["no_color"] = no_color

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# ---------------------------------------------------------------------------
# Register subcommand modules
# ---------------------------------------------------------------------------

def _register_subcommands() -> None:
    """Import and register all subcommands."""
    from vigil.cli.chat import send_cmd, session_delete_cmd
    from vigil.cli.daemon_cmd import daemon_cmd, stop_cmd
    from vigil.cli.monitoring import feed_cmd, status_cmd

    cli.add_command(daemon_cmd)
    cli.add_command(stop_cmd)
    cli.add_command(status_cmd)
    cli.add_command(feed_cmd)
    cli.add_command(send_cmd)
    cli.add_command(session_delete_cmd)


_register_subcommands()
