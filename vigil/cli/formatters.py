"""CLI formatters — color helpers, health indicators, table formatting."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Optional

from rich.console import Console
from rich.table import Table
from rich.text import Text


def get_console(no_color: bool = False) -> Console:
    """Get a Rich Console, optionally with color disabled."""
    return Console(no_color=no_color)


def status_indicator(status: str) -> Text:
    """Map a status string to a colored indicator."""
    mapping = {
        "healthy": Text("> ", style="green"),
        "listening": Text("> ", style="green"),
        "running": Text("> ", style="green"),
        "completed": Text("> ", style="green"),
        "no_reply": Text("- ", style="dim"),
        "skipped": Text("- ", style="dim"),
        "cooling_down": Text("! ", style="yellow"),
        "failed": Text("x ", style="red"),
        "exhausted": Text("x ", style="red"),
        "down": Text("x ", style="red"),
    }
    return mapping.get(status, Text("? ", style="dim"))


def format_duration(seconds: float) -> str:
    """Format a duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        m = int(seconds // 60)
        s = int(seconds % 60)
        return f"{m}m{s:02d}s"
    h = int(seconds // 3600)
    m = int((seconds % 3600) // 60)
    return f"{h}h {m:02d}m"


def format_timestamp(ts: Optional[float], *, now: Optional[float] = None) -> str:
    """UTC wall-clock time plus a relative hint, or ``-`` when unset."""
    if ts is None:
        return "-"
    now = time.time() if now is None else now
    stamp = datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    delta = ts - now
    hint = f"in {format_duration(delta)}" if delta >= 0 else f"{format_duration(-delta)} ago"
    return f"{stamp} ({hint})"


def build_table(title: str, columns: list[str], rows: list[list[Any]]) -> Table:
    """Build a Rich table with standard styling."""
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(v if isinstance(v, Text) else str(v) for v in row))
    return table
