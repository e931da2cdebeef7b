"""
Built-in Tools — the agent's native capabilities.

  exec          run a shell command (sandboxed by default, host when elevated)
  read_file     read a file inside the workspace
  write_file    write a file inside the workspace (contract files excluded)
  memory_read   read an agent-visible workspace field
  memory_write  append to or replace an agent-writable workspace field
  state_get     read the session's state map
  state_set     set one key in the session's state map

Memory and state tools are the only ones offered during the pre-compaction
memory flush; see ``MEMORY_TOOL_NAMES``.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

from vigil.errors import WorkspaceAccessError
from vigil.memory.session_store import SessionStore
from vigil.tools.executor import ToolContext
from vigil.tools.registry import ToolDefinition, ToolRegistry
from vigil.workspace import WorkspaceContract

MEMORY_TOOL_NAMES = frozenset({"memory_read", "memory_write", "state_get", "state_set"})

_READ_MAX_LINES = 2000


def _resolve_in_workspace(root: Path, requested: str) -> Path:
    """Resolve *requested* under *root*, rejecting escapes (including via symlink)."""
    base = Path(os.path.realpath(root))
    candidate = Path(requested)
    if not candidate.is_absolute():
        candidate = base / candidate
    real = Path(os.path.realpath(candidate))
    if real != base and base not in real.parents:
        raise WorkspaceAccessError(f"Access denied: '{requested}' is outside the workspace")
    return real


def register_builtin_tools(
    registry: ToolRegistry,
    workspace: WorkspaceContract,
    sessions: SessionStore,
    *,
    exec_timeout: Optional[float] = None,
) -> None:
    """Register every built-in tool, bound to this workspace and store."""
    contract_files = {f.filename: f.name for f in workspace.fields}

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    registry.register(ToolDefinition(
        name="exec",
        description=(
            "Run a shell command. By default it runs in a disposable container "
            "with the workspace mounted and no network. Output includes stdout "
            "and stderr; a non-zero exit code is reported as a failure."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Shell command line to run."},
                "timeout": {
                    "type": "number",
                    "description": "Seconds before the command is killed (capped by configuration).",
                },
                "isolation": {
                    "type": "string",
                    "enum": ["auto", "sandbox", "host"],
                    "description": "Where to run. 'host' needs operator-enabled elevation. Default 'auto'.",
                },
            },
            "required": ["command"],
        },
        risk_level="medium",
        category="command",
        execution="command",
        is_builtin=True,
        timeout=exec_timeout,
    ))

    # ------------------------------------------------------------------
    # Workspace files
    # ------------------------------------------------------------------

    async def read_file(path: str, offset: int = 0, max_lines: int = 500) -> str:
        target = _resolve_in_workspace(workspace.root, path)
        if target.name in contract_files and target.parent == Path(os.path.realpath(workspace.root)):
            return workspace.read(contract_files[target.name])
        if not target.is_file():
            raise FileNotFoundError(f"File not found: '{path}'")
        lines = target.read_text(encoding="utf-8", errors="replace").splitlines()
        max_lines = max(1, min(int(max_lines), _READ_MAX_LINES))
        start = max(0, int(offset))
        chunk = lines[start:start + max_lines]
        header = f"{path} (lines {start + 1}-{start + len(chunk)} of {len(lines)})"
        return header + "\n" + "\n".join(chunk)

    async def write_file(path: str, content: str, mode: str = "write") -> str:
        target = _resolve_in_workspace(workspace.root, path)
        if target.name in contract_files and target.parent == Path(os.path.realpath(workspace.root)):
            raise WorkspaceAccessError(
                f"'{target.name}' is a workspace contract file; use memory_write instead"
            )
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "a" if mode == "append" else "w", encoding="utf-8") as f:
            f.write(content)
        return f"Wrote {len(content)} chars to {path}"

    registry.register(ToolDefinition(
        name="read_file",
        description="Read a text file inside the workspace, optionally a window of lines.",
        input_schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path relative to the workspace."},
                "offset": {"type": "integer", "description": "First line (0-based). Default 0."},
                "max_lines": {"type": "integer", "description": "Lines to return. Default 500."},
            },
            "required": ["path"],
        },
        handler=read_file,
        risk_level="low",
        category="filesystem",
        is_builtin=True,
    ))
    registry.register(ToolDefinition(
        name="write_file",
        description=(
            "Write or append a text file inside the workspace. Workspace contract "
            "files (AGENTS.md, MEMORY.md, ...) cannot be written this way."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path relative to the workspace."},
                "content": {"type": "string", "description": "Text to write."},
                "mode": {"type": "string", "enum": ["write", "append"], "description": "Default 'write'."},
            },
            "required": ["path", "content"],
        },
        handler=write_file,
        risk_level="medium",
        category="filesystem",
        is_builtin=True,
    ))

    # ------------------------------------------------------------------
    # Durable memory (workspace contract fields)
    # ------------------------------------------------------------------

    readable = [f.name for f in workspace.fields]
    writable = [f.name for f in workspace.fields if f.agent_writable]

    async def memory_read(field: str = "memory") -> str:
        text = workspace.read(field)
        return text if text else f"({field} is empty)"

    async def memory_write(text: str, field: str = "memory", mode: str = "append") -> str:
        if mode == "replace":
            version = workspace.write(field, text, actor="agent")
        else:
            version = workspace.append(field, text, actor="agent")
        return f"{field} updated (version {version})"

    registry.register(ToolDefinition(
        name="memory_read",
        description="Read one of your workspace files: " + ", ".join(readable) + ".",
        input_schema={
            "type": "object",
            "properties": {"field": {"type": "string", "enum": readable}},
        },
        handler=memory_read,
        category="memory",
        is_builtin=True,
    ))
    registry.register(ToolDefinition(
        name="memory_write",
        description=(
            "Save durable facts to your memory (or update your identity). "
            "Use 'append' for new facts; 'replace' rewrites the whole field."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "text": {"type": "string"},
                "field": {"type": "string", "enum": writable},
                "mode": {"type": "string", "enum": ["append", "replace"]},
            },
            "required": ["text"],
        },
        handler=memory_write,
        category="memory",
        is_builtin=True,
    ))

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------

    async def state_get(context: ToolContext, name: Optional[str] = None) -> str:
        session = await sessions.load_or_create(context.session_key)
        if name is None:
            return json.dumps(session.state, ensure_ascii=False, indent=2)
        if name not in session.state:
            return f"(no state named '{name}')"
        return json.dumps(session.state[name], ensure_ascii=False)

    async def state_set(context: ToolContext, name: str, value: Any) -> str:
        await sessions.set_state(context.session_key, name, value)
        return f"state '{name}' set"

    registry.register(ToolDefinition(
        name="state_get",
        description="Read this conversation's state map, or one key of it.",
        input_schema={
            "type": "object",
            "properties": {"name": {"type": "string"}},
        },
        handler=state_get,
        category="memory",
        is_builtin=True,
        takes_context=True,
    ))
    registry.register(ToolDefinition(
        name="state_set",
        description="Store a JSON value under a key in this conversation's state map.",
        input_schema={
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "value": {"description": "Any JSON value."},
            },
            "required": ["name", "value"],
        },
        handler=state_set,
        category="memory",
        is_builtin=True,
        takes_context=True,
    ))
