"""Daemon start/stop commands."""

from __future__ import annotations

import click

from vigil.cli.app import async_cmd


@click.command("daemon")
def daemon_cmd() -> None:
    """Start the Vigil gateway daemon (foreground).

    Exits 98 if another instance already holds the listener address.
    """
    from vigil.daemon import run_daemon

    run_daemon()


@click.command("stop")
@async_cmd
async def stop_cmd() -> None:
    """Stop the running Vigil daemon gracefully."""
    from vigil.cli.connection import (
        DaemonConnection,
        DaemonNotRunning,
        connect_args,
        load_gateway_config,
    )

    host, port, auth_token = connect_args(load_gateway_config())
    conn = DaemonConnection(host=host, port=port)
    try:
        await conn.connect(auth_token=auth_token)
        await conn.rpc("stop")
        click.echo("Vigil daemon stopping.")
    except DaemonNotRunning:
        click.echo("Vigil daemon is not running.")
    finally:
        await conn.disconnect()
