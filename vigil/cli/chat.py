"""Conversation commands — send a message, reset a session."""

from __future__ import annotations

import asyncio
import json as json_mod
from typing import Any, Optional

import click

from vigil.cli.app import async_cmd
from vigil.cli.connection import (
    DaemonConnection,
    RpcError,
    connect_args,
    load_gateway_config,
)
from vigil.cli.formatters import get_console


@click.command("send")
@click.argument("text")
@click.option("--session", "session_key", default=None, help="Session key (default: main session)")
@click.option("--agent", "agent_id", default=None, help="Agent id selecting the fallback chain")
@click.option("--no-wait", is_flag=True, help="Queue the message and return immediately")
@click.option("--approve/--no-approve", default=True, help="Answer tool approval prompts from this terminal")
@click.option("--json", "json_output", is_flag=True, help="JSON output")
@click.pass_context
@async_cmd
async def send_cmd(
    ctx: click.Context,
    text: str,
    session_key: Optional[str],
    agent_id: Optional[str],
    no_wait: bool,
    approve: bool,
    json_output: bool,
) -> None:
    """Send TEXT to a session and stream the reply."""
    json_output = json_output or ctx.obj.get("json", False)
    console = get_console(no_color=ctx.obj.get("no_color", False))
    host, port, auth_token = connect_args(load_gateway_config())
    conn = DaemonConnection(host=host, port=port)

    params: dict[str, Any] = {"text": text, "wait": not no_wait}
    if session_key:
        params["session_key"] = session_key
    if agent_id:
        params["agent_id"] = agent_id

    watcher: asyncio.Task[None] | None = None
    try:
        await conn.connect(auth_token=auth_token, approver=approve and not no_wait)
        if not no_wait and not json_output:
            await conn.subscribe(["stream.chunk", "tool.approval.required"])
            watcher = asyncio.create_task(_watch_events(conn, console, session_key))
        try:
            result = await conn.rpc("chat.send", params, timeout=None)
        except RpcError as e:
            raise click.ClickException(f"{e.message} (code {e.code})") from e
    finally:
        if watcher is not None:
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass
        await conn.disconnect()

    if json_output:
        click.echo(json_mod.dumps(result, indent=2))
        return
    if no_wait:
        console.print(
            f"Queued run {result.get('run_id')} on {result.get('session_key')}"
            f" (position {result.get('position')})"
        )
        return

    console.print()
    reason = result.get("reason", "")
    if reason == "no_reply":
        console.print("[dim](no reply)[/dim]")
    elif reason != "completed":
        detail = f": {result['error']}" if result.get("error") else ""
        raise click.ClickException(f"Run {result.get('run_id')} ended with {reason}{detail}")


async def _watch_events(
    conn: DaemonConnection,
    console: Any,
    session_key: Optional[str],
) -> None:
    """Print streamed deltas for this conversation and answer approval prompts."""
    async for event in conn.events():
        params = event.get("params", {})
        event_type = params.get("event_type", "")
        key = params.get("session_key", "")
        if session_key and key and key != session_key:
            continue
        if event_type == "stream.chunk":
            console.print(params.get("delta", ""), end="", markup=False, highlight=False)
        elif event_type == "tool.approval.required" and conn.can_approve_tools:
            arguments = json_mod.dumps(params.get("arguments", {}))
            console.print()
            console.print(
                f"[bold yellow]Approval required[/bold yellow] {params.get('tool_name')}"
                f" (risk: {params.get('risk_tier')})"
            )
            console.print(f"  {arguments}", markup=False)
            allowed = await asyncio.to_thread(click.confirm, "Allow this call?", default=False)
            await conn.rpc("tool.approve", {
                "approval_id": params.get("approval_id", ""),
                "decision": "allow" if allowed else "deny",
            })


@click.command("session-delete")
@click.argument("session_key")
@click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt")
@click.pass_context
@async_cmd
async def session_delete_cmd(ctx: click.Context, session_key: str, yes: bool) -> None:
    """Delete SESSION_KEY's transcript and lift any quarantine on it."""
    if not yes:
        confirmed = await asyncio.to_thread(
            click.confirm, f"Delete session {session_key!r}? This cannot be undone", default=False
        )
        if not confirmed:
            click.echo("Aborted.")
            return

    host, port, auth_token = connect_args(load_gateway_config())
    conn = DaemonConnection(host=host, port=port)
    try:
        await conn.connect(auth_token=auth_token)
        result = await conn.rpc("sessions.delete", {"session_key": session_key})
    finally:
        await conn.disconnect()

    if ctx.obj.get("json", False):
        click.echo(json_mod.dumps(result))
    elif result.get("deleted"):
        click.echo(f"Session {session_key} deleted.")
    else:
        click.echo(f"No session named {session_key}.")
