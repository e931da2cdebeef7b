"""
Session Store — the durable system of record for conversations.

Each session lives in two files under ``sessions_dir``:

  <name>.jsonl        append-only journal; one JSON record per line
  <name>.state.json   mutable state map + bookkeeping, replaced atomically

Journal records are either ``{"record": "turn", "turn": {...}}`` or
``{"record": "compaction", "marker": N, "summary": {...}}``. The compaction
marker is an absolute count of journal turns: turns before it stay on disk
for audit but are excluded from the active transcript on load, and the most
recent compaction summary stands in for them.

Writes for one key are serialized by a per-key asyncio.Lock; different keys
proceed in parallel. Readers get a deep copy, so a snapshot never changes
under them. Every journal append is fsync'd on a worker thread before the
call returns, so a slow disk never stalls the event loop; any OSError
surfaces as SessionPersistenceError, which is fatal to the run.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import re
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from vigil.errors import SessionPersistenceError
from vigil.fsutil import atomic_write_json, best_effort_chmod
from vigil.privacy.redaction import PIIRedactor
from vigil.types import Role, Session, ToolResult, ToolStatus, Turn, TurnKind

logger = structlog.get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_MAX_KEY_LENGTH = 256


def safe_session_name(key: str) -> str:
    """Map an arbitrary session key to a collision-free filename stem."""
    readable = _UNSAFE_CHARS.sub("_", key).strip("._")[:64] or "session"
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:10]
    return f"{readable}-{digest}"


class SessionStore:
    """Durable, per-key serialized store for session transcripts and state."""

    def __init__(
        self,
        sessions_dir: Path,
        *,
        redactor: Optional[PIIRedactor] = None,
        fsync: bool = True,
        max_cached: int = 256,
    ) -> None:
        self.sessions_dir = sessions_dir
        self._redactor = redactor
        self._fsync = fsync
        self._max_cached = max(1, int(max_cached))
        self._cache: OrderedDict[str, Session] = OrderedDict()
        self._locks: OrderedDict[str, asyncio.Lock] = OrderedDict()
        self._max_locks = 1024
        sessions_dir.mkdir(parents=True, exist_ok=True)
        best_effort_chmod(sessions_dir, 0o700)

    # ------------------------------------------------------------------
    # Paths and locks
    # ------------------------------------------------------------------

    def _journal_path(self, key: str) -> Path:
        return self.sessions_dir / f"{safe_session_name(key)}.jsonl"

    def _state_path(self, key: str) -> Path:
        return self.sessions_dir / f"{safe_session_name(key)}.state.json"

    def _get_lock(self, key: str) -> asyncio.Lock:
        if key in self._locks:
            self._locks.move_to_end(key)
            return self._locks[key]
        lock = asyncio.Lock()
        self._locks[key] = lock
        # Evict the oldest unheld lock when over capacity.
        while len(self._locks) > self._max_locks:
            for old_key in list(self._locks):
                if not self._locks[old_key].locked() and old_key != key:
                    del self._locks[old_key]
                    break
            else:
                break
        return lock

    @staticmethod
    def validate_key(key: str) -> str:
        if not isinstance(key, str) or not key.strip():
            raise ValueError("session key must be a non-empty string")
        if len(key) > _MAX_KEY_LENGTH:
            raise ValueError(f"session key longer than {_MAX_KEY_LENGTH} characters")
        return key

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def load_or_create(self, key: str) -> Session:
        """Return a snapshot of the session, creating it on first use."""
        self.validate_key(key)
        async with self._get_lock(key):
            session = self._load_locked(key)
            return session.model_copy(deep=True)

    async def get(self, key: str) -> Optional[Session]:
        """Return a snapshot if the session exists, without creating it."""
        self.validate_key(key)
        async with self._get_lock(key):
            if key not in self._cache and not self._state_path(key).exists():
                return None
            return self._load_locked(key).model_copy(deep=True)

    def exists(self, key: str) -> bool:
        return key in self._cache or self._state_path(key).exists()

    async def append(self, key: str, turn: Turn) -> Turn:
        """Durably append one turn. Returns the turn as persisted (redacted)."""
        self.validate_key(key)
        async with self._get_lock(key):
            session = self._load_locked(key)
            stored = self._redact_turn(turn)
            cancelled = await self._journal(key, {"record": "turn", "turn": stored.model_dump(mode="json")})
            session.turns.append(stored)
            session.updated_at = time.time()
            session.last_activity_at = stored.timestamp
            logger.debug(
                "session_store.appended",
                session_key=key,
                role=stored.role.value,
                kind=stored.kind.value,
                total_turns=session.total_turns,
            )
            if cancelled is not None:
                raise cancelled
            return stored.model_copy(deep=True)

    async def close_open_calls(
        self, key: str, error: str, *, kind: TurnKind = TurnKind.ABORTED
    ) -> list[ToolResult]:
        """Fail every call that has no terminal result, in one tool turn.

        Keeps the one-result-per-call rule when a run stops between an agent
        turn and its tool turn. Returns the results appended (possibly none).
        """
        session = await self.load_or_create(key)
        results = [
            ToolResult(call_id=call.call_id, name=call.name, status=ToolStatus.FAILED, error=error)
            for call in session.open_tool_calls()
        ]
        if results:
            await self.append(key, Turn(role=Role.TOOL, kind=kind, tool_results=results))
            logger.info("session_store.open_calls_closed", session_key=key, calls=len(results))
        return results

    async def set_state(self, key: str, name: str, value: Any) -> None:
        await self.update_state(key, {name: value})

    async def update_state(self, key: str, values: dict[str, Any]) -> dict[str, Any]:
        """Merge *values* into the session state map and persist atomically."""
        self.validate_key(key)
        try:
            json.dumps(values)
        except (TypeError, ValueError) as e:
            raise ValueError(f"session state must be JSON-serializable: {e}") from e
        async with self._get_lock(key):
            session = self._load_locked(key)
            session.state.update(values)
            session.updated_at = time.time()
            self._write_state(session)
            return dict(session.state)

    async def apply_compaction(self, key: str, cut: int, summary: Turn) -> Session:
        """Fold the first *cut* active turns into *summary*.

        The marker only moves forward; the suffix keeps its order.
        """
        self.validate_key(key)
        async with self._get_lock(key):
            session = self._load_locked(key)
            if cut <= 0 or cut > len(session.turns):
                raise ValueError(
                    f"compaction cut {cut} outside active transcript of {len(session.turns)} turns"
                )
            new_marker = session.compaction_marker + cut
            stored_summary = self._redact_turn(summary)
            cancelled = await self._journal(key, {
                "record": "compaction",
                "marker": new_marker,
                "summary": stored_summary.model_dump(mode="json"),
            })
            session.turns = session.turns[cut:]
            session.compaction_marker = new_marker
            session.summary = stored_summary
            session.compaction_count += 1
            session.updated_at = time.time()
            self._write_state(session)
            logger.info(
                "session_store.compacted",
                session_key=key,
                marker=new_marker,
                removed=cut,
                remaining=len(session.turns),
            )
            if cancelled is not None:
                raise cancelled
            return session.model_copy(deep=True)

    async def delete(self, key: str) -> bool:
        """Operator action: remove a session and its journal entirely."""
        self.validate_key(key)
        async with self._get_lock(key):
            removed = False
            for path in (self._journal_path(key), self._state_path(key)):
                try:
                    path.unlink()
                    removed = True
                except FileNotFoundError:
                    continue
                except OSError as e:
                    raise SessionPersistenceError(f"cannot delete {path}: {e}") from e
            self._cache.pop(key, None)
        logger.info("session_store.deleted", session_key=key, removed=removed)
        return removed

    def list_sessions(self, limit: int = 50) -> list[dict[str, Any]]:
        """Summaries of stored sessions, most recently updated first."""
        files = sorted(
            self.sessions_dir.glob("*.state.json"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        results: list[dict[str, Any]] = []
        for f in files[: max(1, int(limit))]:
            try:
                data = json.loads(f.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("session_store.list_read_error", file=str(f), error=str(e))
                continue
            key = data.get("key", "")
            cached = self._cache.get(key)
            results.append({
                "key": key,
                "created_at": data.get("created_at", 0.0),
                "updated_at": data.get("updated_at", 0.0),
                "compaction_marker": data.get("compaction_marker", 0),
                "active_turns": len(cached.turns) if cached is not None else None,
            })
        return results

    # ------------------------------------------------------------------
    # Internal helpers (callers hold the key's lock)
    # ------------------------------------------------------------------

    def _load_locked(self, key: str) -> Session:
        session = self._cache.get(key)
        if session is not None:
            self._cache.move_to_end(key)
            return session
        session = self._read_from_disk(key)
        if session is None:
            session = Session(key=key)
            self._write_state(session)
            logger.info("session_store.created", session_key=key)
        self._cache[key] = session
        while len(self._cache) > self._max_cached:
            self._cache.popitem(last=False)
        return session

    def _read_from_disk(self, key: str) -> Optional[Session]:
        state_path = self._state_path(key)
        journal_path = self._journal_path(key)
        if not state_path.exists() and not journal_path.exists():
            return None

        state: dict[str, Any] = {}
        if state_path.exists():
            try:
                state = json.loads(state_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise SessionPersistenceError(f"cannot read state for '{key}': {e}") from e

        all_turns: list[Turn] = []
        marker = 0
        summary: Optional[Turn] = None
        compactions = 0
        skipped = 0
        if journal_path.exists():
            try:
                lines = journal_path.read_text(encoding="utf-8").splitlines()
            except OSError as e:
                raise SessionPersistenceError(f"cannot read journal for '{key}': {e}") from e
            for line in lines:
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                    if record.get("record") == "turn":
                        all_turns.append(Turn.model_validate(record["turn"]))
                    elif record.get("record") == "compaction":
                        marker = max(marker, int(record["marker"]))
                        summary = Turn.model_validate(record["summary"])
                        compactions += 1
                except (json.JSONDecodeError, KeyError, TypeError, ValueError, ValidationError):
                    # A torn trailing line from a crash mid-append.
                    skipped += 1
        if skipped:
            logger.warning("session_store.corrupted_records_skipped", session_key=key, skipped=skipped)

        marker = min(marker, len(all_turns))
        active = all_turns[marker:]
        session = Session(
            key=key,
            turns=active,
            state=dict(state.get("state", {})),
            compaction_marker=marker,
            summary=summary,
            compaction_count=compactions,
            created_at=float(state.get("created_at", time.time())),
            updated_at=float(state.get("updated_at", time.time())),
        )
        if active:
            session.last_activity_at = active[-1].timestamp
        elif summary is not None:
            session.last_activity_at = summary.timestamp
        else:
            session.last_activity_at = session.updated_at
        logger.info(
            "session_store.loaded",
            session_key=key,
            active_turns=len(active),
            compaction_marker=marker,
        )
        return session

    async def _journal(
        self, key: str, record: dict[str, Any]
    ) -> Optional[asyncio.CancelledError]:
        """Run the blocking append on a worker thread.

        A cancellation that arrives mid-write is held until the write lands,
        then handed back so the caller can update its cache before raising.
        """
        write = asyncio.ensure_future(asyncio.to_thread(self._append_record, key, record))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError as e:
            await write
            return e
        return None

    def _append_record(self, key: str, record: dict[str, Any]) -> None:
        path = self._journal_path(key)
        line = json.dumps(record, ensure_ascii=False) + "\n"
        try:
            new_file = not path.exists()
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                if self._fsync:
                    os.fsync(f.fileno())
            if new_file:
                best_effort_chmod(path, 0o600)
        except OSError as e:
            logger.error("session_store.append_failed", session_key=key, error=str(e))
            raise SessionPersistenceError(f"cannot append to journal for '{key}': {e}") from e

    def _write_state(self, session: Session) -> None:
        payload = {
            "key": session.key,
            "state": session.state,
            "compaction_marker": session.compaction_marker,
            "created_at": session.created_at,
            "updated_at": session.updated_at,
        }
        try:
            atomic_write_json(self._state_path(session.key), payload)
        except OSError as e:
            logger.error("session_store.state_write_failed", session_key=session.key, error=str(e))
            raise SessionPersistenceError(f"cannot write state for '{session.key}': {e}") from e

    def _redact_turn(self, turn: Turn) -> Turn:
        if self._redactor is None or not self._redactor.enabled:
            return turn.model_copy(deep=True)
        redact = self._redactor.redact
        results: list[ToolResult] = [
            r.model_copy(update={
                "output": redact(r.output),
                "error": redact(r.error) if r.error else r.error,
            })
            for r in turn.tool_results
        ]
        return turn.model_copy(
            update={"content": redact(turn.content), "tool_results": results},
            deep=True,
        )
