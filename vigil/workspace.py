"""
Workspace Contract — the agent's human-editable files as a typed interface.

The workspace is a directory of plain-text files (instructions, persona,
identity, durable memory, heartbeat checklist). Instead of letting any
component read or write arbitrary paths, every file is a named field with:

  - a fixed filename
  - a size cap applied on read and enforced on write
  - an explicit capability: agent-writable or human-only
  - a version, bumped on every write (ours or an external edit)

Versions and content hashes are kept in ``contract.json`` in the workspace
root. An external edit (the owner changing AGENTS.md in an editor) shows up
as a hash mismatch on the next read and bumps the version.
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import structlog

from vigil.errors import WorkspaceAccessError
from vigil.fsutil import atomic_write_json, atomic_write_text

logger = structlog.get_logger(__name__)

Actor = Literal["agent", "operator"]

_MANIFEST = "contract.json"
_TRUNCATION_MARKER = "\n[... truncated: {dropped} chars over the {cap}-char limit ...]"


@dataclass(frozen=True)
class WorkspaceField:
    name: str
    filename: str
    agent_writable: bool
    description: str
    in_system_prompt: bool = True


WORKSPACE_FIELDS: tuple[WorkspaceField, ...] = (
    WorkspaceField(
        "instructions", "AGENTS.md", False,
        "Operating instructions from the owner.",
    ),
    WorkspaceField(
        "persona", "PERSONA.md", False,
        "Voice, tone and boundaries.",
    ),
    WorkspaceField(
        "identity", "IDENTITY.md", True,
        "The agent's own description of itself.",
    ),
    WorkspaceField(
        "memory", "MEMORY.md", True,
        "Durable facts the agent has chosen to keep.",
    ),
    WorkspaceField(
        "heartbeat", "HEARTBEAT.md", False,
        "Things worth surfacing, reviewed on each heartbeat.",
        in_system_prompt=False,
    ),
)


class WorkspaceContract:
    """Capability-checked access to workspace fields."""

    def __init__(
        self,
        root: Path,
        *,
        field_max_chars: int = 20000,
        fields: tuple[WorkspaceField, ...] = WORKSPACE_FIELDS,
    ) -> None:
        self.root = root
        self._max_chars = max(100, int(field_max_chars))
        self._fields = {f.name: f for f in fields}
        self._manifest: dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    def ensure_layout(self) -> None:
        """Create the directory and manifest; never overwrite existing files."""
        self.root.mkdir(parents=True, exist_ok=True)
        self._manifest = self._load_manifest()
        for field in self._fields.values():
            self._manifest.setdefault(field.name, {"version": 0, "sha256": "", "updated_at": 0.0})
        self._save_manifest()

    @property
    def fields(self) -> list[WorkspaceField]:
        return list(self._fields.values())

    def field(self, name: str) -> WorkspaceField:
        try:
            return self._fields[name]
        except KeyError:
            raise WorkspaceAccessError(f"unknown workspace field: {name}") from None

    def path_for(self, name: str) -> Path:
        return self.root / self.field(name).filename

    # ------------------------------------------------------------------
    # Read / write
    # ------------------------------------------------------------------

    def read(self, name: str) -> str:
        """Return the field text, truncated to the size cap. Missing files read as ''."""
        path = self.path_for(name)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as e:
            logger.warning("workspace.read_failed", field=name, error=str(e))
            return ""
        self._track_external_edit(name, text)
        if len(text) > self._max_chars:
            dropped = len(text) - self._max_chars
            text = text[: self._max_chars] + _TRUNCATION_MARKER.format(
                dropped=dropped, cap=self._max_chars
            )
        return text

    def write(self, name: str, text: str, *, actor: Actor = "agent") -> int:
        """Replace a field's content. Returns the new version."""
        field = self.field(name)
        if actor == "agent" and not field.agent_writable:
            logger.warning("workspace.write_denied", field=name, actor=actor)
            raise WorkspaceAccessError(f"field '{name}' is not writable by the agent")
        if len(text) > self._max_chars:
            raise WorkspaceAccessError(
                f"field '{name}' limited to {self._max_chars} chars (got {len(text)})"
            )
        path = self.path_for(name)
        atomic_write_text(path, text, mode=0o644)
        version = self._bump(name, text)
        logger.info("workspace.field_written", field=name, actor=actor, version=version)
        return version

    def append(self, name: str, text: str, *, actor: Actor = "agent") -> int:
        """Append a line block to a field, keeping the size cap."""
        current = ""
        path = self.path_for(name)
        if path.exists():
            current = path.read_text(encoding="utf-8")
        separator = "" if not current or current.endswith("\n") else "\n"
        return self.write(name, f"{current}{separator}{text.rstrip()}\n", actor=actor)

    def versions(self) -> dict[str, int]:
        if not self._manifest:
            self._manifest = self._load_manifest()
        return {
            name: int(self._manifest.get(name, {}).get("version", 0))
            for name in self._fields
        }

    def prompt_sections(self) -> list[tuple[WorkspaceField, str]]:
        """Fields that feed the system prompt, in contract order, skipping empty ones."""
        sections = []
        for field in self._fields.values():
            if not field.in_system_prompt:
                continue
            text = self.read(field.name).strip()
            if text:
                sections.append((field, text))
        return sections

    # ------------------------------------------------------------------
    # Manifest
    # ------------------------------------------------------------------

    def _load_manifest(self) -> dict[str, Any]:
        path = self.root / _MANIFEST
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return data if isinstance(data, dict) else {}
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("workspace.manifest_unreadable", error=str(e))
            return {}

    def _save_manifest(self) -> None:
        atomic_write_json(self.root / _MANIFEST, self._manifest, mode=0o644)

    def _bump(self, name: str, text: str) -> int:
        if not self._manifest:
            self._manifest = self._load_manifest()
        entry = self._manifest.setdefault(name, {"version": 0})
        entry["version"] = int(entry.get("version", 0)) + 1
        entry["sha256"] = hashlib.sha256(text.encode("utf-8")).hexdigest()
        entry["updated_at"] = time.time()
        self._save_manifest()
        return entry["version"]

    def _track_external_edit(self, name: str, text: str) -> None:
        if not self._manifest:
            return
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        if self._manifest.get(name, {}).get("sha256") != digest:
            version = self._bump(name, text)
            logger.info("workspace.external_edit_detected", field=name, version=version)
