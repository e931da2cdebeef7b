"""Monitoring commands — status and the live event feed."""

from __future__ import annotations

import json as json_mod
from typing import Any

import click
from rich.console import Console

from vigil.cli.app import async_cmd
from vigil.cli.formatters import (
    build_table,
    format_duration,
    format_timestamp,
    get_console,
    status_indicator,
)


@click.command("status")
@click.option("--json", "json_output", is_flag=True, help="JSON output")
@click.pass_context
@async_cmd
async def status_cmd(ctx: click.Context, json_output: bool) -> None:
    """Show listener health, profiles, scheduler and runs."""
    from vigil.cli.connection import (
        DaemonConnection,
        DaemonNotRunning,
        connect_args,
        load_gateway_config,
    )

    json_output = json_output or ctx.obj.get("json", False)
    host, port, auth_token = connect_args(load_gateway_config())
    conn = DaemonConnection(host=host, port=port)
    try:
        await conn.connect(auth_token=auth_token)
    except DaemonNotRunning:
        await conn.disconnect()
        if json_output:
            click.echo(json_mod.dumps({"status": "not_running"}))
        else:
            click.echo("Vigil daemon is not running. Start with: vigil daemon")
        ctx.exit(1)
        return

    try:
        status = await conn.rpc("status")
    finally:
        await conn.disconnect()

    if json_output:
        click.echo(json_mod.dumps(status, indent=2))
        return
    render_status(get_console(no_color=ctx.obj.get("no_color", False)), status)


def render_status(console: Console, status: dict[str, Any]) -> None:
    daemon = status.get("daemon", {})
    listener = status.get("listener", {})

    console.print(f"[bold]Vigil {daemon.get('version', '?')}[/bold] (pid {daemon.get('pid', '?')})")
    console.print(f"  Uptime: {format_duration(float(daemon.get('uptime', 0.0)))}")
    state = "listening" if listener.get("listening") else "down"
    line = status_indicator(state)
    line.append(f"{listener.get('host', '?')}:{listener.get('port', '?')}")
    console.print("  Listener: ", line)
    console.print(
        f"  Connections: {status.get('active_connections', listener.get('connections', 0))}"
        f" (approvers: {listener.get('approvers', 0)},"
        f" pending approvals: {listener.get('pending_approvals', 0)})"
    )
    console.print()

    profiles = status.get("profiles", {})
    console.print(build_table(
        "Auth profiles",
        ["Profile", "Provider", "Health", "Cooldown until", "Failures", "Last error"],
        [
            [
                p.get("profile_id", "?"),
                p.get("provider", "?"),
                status_indicator(p.get("health", "")).append(p.get("health", "?")),
                format_timestamp(p.get("cooldown_until")),
                p.get("failure_count", 0),
                p.get("last_error") or "-",
            ]
            for p in profiles.get("profiles", [])
        ],
    ))

    scheduler = status.get("scheduler", {})
    console.print(build_table(
        f"Scheduler ({scheduler.get('timezone', 'UTC')})",
        ["Job", "Trigger", "Session", "Next fire", "Last status", "Runs"],
        [
            [
                job.get("job_id", "?"),
                job.get("trigger", "?") if job.get("enabled", True) else "disabled",
                job.get("session_policy", "?"),
                format_timestamp(job.get("next_fire_at")),
                status_indicator(job.get("last_status") or "").append(job.get("last_status") or "-"),
                job.get("run_count", 0),
            ]
            for job in scheduler.get("jobs", [])
        ],
    ))

    runs = status.get("runs", {})
    queues = runs.get("queues", {})
    active = {r.get("session_key"): r for r in runs.get("active", [])}
    console.print(build_table(
        "Runs",
        ["Session", "Queued", "Active run", "State", "Model calls", "Tool calls"],
        [
            [
                key,
                depth,
                active.get(key, {}).get("run_id", "-"),
                active.get(key, {}).get("state", "-"),
                active.get(key, {}).get("model_calls", 0),
                active.get(key, {}).get("tool_calls", 0),
            ]
            for key, depth in queues.items()
        ],
    ))

    quarantined = status.get("quarantined", {})
    if quarantined:
        console.print("[bold red]Quarantined sessions[/bold red]")
        for key, reason in quarantined.items():
            console.print(f"  {key}: {reason}")
        console.print("  Reset with: vigil session-delete <key>")

    sandbox = status.get("sandbox", {})
    console.print(
        f"Sandbox: {'enabled' if sandbox.get('enabled') else 'disabled'}"
        f" ({len(sandbox.get('live_containers', []))} live containers)"
    )


@click.command("feed")
@click.option("--follow", "-f", is_flag=True, help="Continuous streaming")
@click.option("--type", "event_type", default="*", help="Event pattern filter")
@click.option("--json", "json_output", is_flag=True, help="JSON output")
@click.pass_context
@async_cmd
async def feed_cmd(
    ctx: click.Context,
    follow: bool,
    event_type: str,
    json_output: bool,
) -> None:
    """Real-time event stream from the daemon's event bus."""
    from vigil.cli.connection import DaemonConnection, connect_args, load_gateway_config

    host, port, auth_token = connect_args(load_gateway_config())
    conn = DaemonConnection(host=host, port=port)
    try:
        await conn.connect(auth_token=auth_token)
        await conn.subscribe([event_type])

        console = get_console(no_color=ctx.obj.get("no_color", False))
        if not follow:
            console.print("[dim]Showing the next 50 events (use -f to follow)...[/dim]")

        count = 0
        async for event in conn.events():
            params = event.get("params", {})
            if json_output or ctx.obj.get("json", False):
                click.echo(json_mod.dumps(params))
            else:
                etype = params.get("event_type", event.get("method", ""))
                console.print(f"  [{etype}] {summarize_event(params)}", markup=False)

            count += 1
            if not follow and count >= 50:
                break
    finally:
        await conn.disconnect()


def summarize_event(params: dict[str, Any]) -> str:
    """Create a one-line summary from event params."""
    etype = params.get("event_type", "")
    if etype == "stream.chunk":
        return f"{params.get('session_key', '?')}: {params.get('delta', '')[:80]!r}"
    if etype.startswith("run."):
        return (
            f"{params.get('session_key', '?')} run={params.get('run_id', '?')}"
            f" {params.get('reason') or params.get('source', '')}"
        ).rstrip()
    if etype == "profile.health.changed":
        return f"{params.get('profile_id', '?')} -> {params.get('health', '?')}"
    if etype == "log.record":
        return f"{params.get('level', '?')} {params.get('event', '')}"
    if etype.startswith("tool.approval"):
        return f"{params.get('approval_id', '?')} {params.get('tool_name') or params.get('decision', '')}"
    items = [f"{k}={v}" for k, v in list(params.items())[:3] if k != "event_type"]
    return " ".join(items)
