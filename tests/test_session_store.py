"""Tests for vigil.memory.session_store — durable journal, state and compaction."""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from vigil.errors import SessionPersistenceError
from vigil.memory.session_store import SessionStore, safe_session_name
from vigil.privacy.redaction import PIIRedactor
from vigil.types import Role, ToolCall, ToolResult, ToolStatus, Turn, TurnKind


def _user(text: str) -> Turn:
    return Turn(role=Role.USER, content=text)


def _agent(text: str) -> Turn:
    return Turn(role=Role.AGENT, content=text)


class TestSafeSessionName:
    def test_distinct_keys_never_collide(self) -> None:
        assert safe_session_name("a/b") != safe_session_name("a_b")

    def test_name_is_filesystem_safe(self) -> None:
        name = safe_session_name("cron:daily digest/../x")
        assert "/" not in name
        assert ":" not in name
        assert " " not in name


class TestValidateKey:
    @pytest.mark.parametrize("key", ["", "   ", "x" * 300])
    def test_rejects_bad_keys(self, key: str) -> None:
        with pytest.raises(ValueError):
            SessionStore.validate_key(key)

    def test_accepts_normal_key(self) -> None:
        assert SessionStore.validate_key("main") == "main"


class TestAppendAndReload:
    @pytest.mark.asyncio
    async def test_turns_survive_a_new_store_instance(self, tmp_path: Path) -> None:
        store = SessionStore(tmp_path, fsync=False)
        await store.append("main", _user("hi"))
        await store.append("main", _agent("hello"))
        await store.set_state("main", "topic", "greetings")

        reopened = SessionStore(tmp_path, fsync=False)
        session = await reopened.load_or_create("main")
        assert [t.content for t in session.turns] == ["hi", "hello"]
        assert session.state == {"topic": "greetings"}
        assert session.total_turns == 2

    @pytest.mark.asyncio
    async def test_snapshot_is_isolated_from_later_appends(self, store: SessionStore) -> None:
        await store.append("main", _user("one"))
        snapshot = await store.load_or_create("main")
        await store.append("main", _agent("two"))
        assert len(snapshot.turns) == 1

    @pytest.mark.asyncio
    async def test_torn_trailing_line_is_skipped(self, tmp_path: Path) -> None:
        store = SessionStore(tmp_path, fsync=False)
        await store.append("main", _user("intact"))
        journal = tmp_path / f"{safe_session_name('main')}.jsonl"
        with open(journal, "a", encoding="utf-8") as f:
            f.write('{"record": "turn", "turn": {"role": "us')

        session = await SessionStore(tmp_path, fsync=False).load_or_create("main")
        assert [t.content for t in session.turns] == ["intact"]

    @pytest.mark.asyncio
    async def test_get_does_not_create(self, store: SessionStore) -> None:
        assert await store.get("missing") is None
        assert not store.exists("missing")

    @pytest.mark.asyncio
    async def test_concurrent_appends_keep_every_turn(self, store: SessionStore) -> None:
        await asyncio.gather(*(store.append("main", _user(f"m{i}")) for i in range(20)))
        session = await store.load_or_create("main")
        assert sorted(t.content for t in session.turns) == sorted(f"m{i}" for i in range(20))

    @pytest.mark.asyncio
    async def test_non_json_state_is_rejected(self, store: SessionStore) -> None:
        with pytest.raises(ValueError):
            await store.set_state("main", "bad", object())

    @pytest.mark.asyncio
    async def test_write_failure_surfaces_as_persistence_error(self, tmp_path: Path) -> None:
        store = SessionStore(tmp_path / "sessions", fsync=False)
        await store.load_or_create("main")
        journal = store.sessions_dir / f"{safe_session_name('main')}.jsonl"
        journal.mkdir()  # appending to a directory fails with an OSError
        with pytest.raises(SessionPersistenceError):
            await store.append("main", _user("lost"))

    @pytest.mark.asyncio
    async def test_journal_write_runs_off_the_event_loop(self, store: SessionStore) -> None:
        with patch("vigil.memory.session_store.asyncio.to_thread", wraps=asyncio.to_thread) as to_thread:
            await store.append("main", _user("hello"))
        assert to_thread.call_args.args[0] == store._append_record

    @pytest.mark.asyncio
    async def test_cancel_during_write_keeps_cache_and_disk_in_step(self, tmp_path: Path) -> None:
        store = SessionStore(tmp_path, fsync=False)
        original = store._append_record

        def _slow_append(key: str, record: dict) -> None:
            time.sleep(0.2)
            original(key, record)

        store._append_record = _slow_append  # type: ignore[method-assign]
        task = asyncio.create_task(store.append("main", _user("slow")))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        cached = await store.load_or_create("main")
        reloaded = await SessionStore(tmp_path, fsync=False).load_or_create("main")
        assert [t.content for t in cached.turns] == ["slow"]
        assert [t.content for t in reloaded.turns] == ["slow"]


class TestOpenCalls:
    @pytest.mark.asyncio
    async def test_unanswered_calls_get_failed_results(self, store: SessionStore) -> None:
        await store.append("main", Turn(role=Role.AGENT, tool_calls=[
            ToolCall(call_id="c1", name="exec", arguments={"command": "ls"}),
            ToolCall(call_id="c2", name="state_get"),
        ]))
        await store.append("main", Turn(role=Role.TOOL, tool_results=[
            ToolResult(call_id="c2", name="state_get", status=ToolStatus.SUCCEEDED, output="{}"),
        ]))

        closed = await store.close_open_calls("main", "aborted: run cancelled")

        assert [r.call_id for r in closed] == ["c1"]
        session = await store.load_or_create("main")
        assert session.open_tool_calls() == []
        last = session.turns[-1]
        assert (last.role, last.kind) == (Role.TOOL, TurnKind.ABORTED)
        assert last.tool_results[0].status is ToolStatus.FAILED
        assert last.tool_results[0].error == "aborted: run cancelled"

    @pytest.mark.asyncio
    async def test_nothing_open_appends_nothing(self, store: SessionStore) -> None:
        await store.append("main", _user("hi"))
        assert await store.close_open_calls("main", "aborted") == []
        session = await store.load_or_create("main")
        assert len(session.turns) == 1

    @pytest.mark.asyncio
    async def test_pending_result_still_counts_as_open(self, store: SessionStore) -> None:
        await store.append("main", Turn(role=Role.AGENT, tool_calls=[ToolCall(call_id="c1", name="exec")]))
        await store.append("main", Turn(role=Role.TOOL, tool_results=[
            ToolResult(call_id="c1", name="exec", status=ToolStatus.PENDING),
        ]))
        closed = await store.close_open_calls("main", "aborted")
        assert [r.call_id for r in closed] == ["c1"]


class TestCompaction:
    @pytest.mark.asyncio
    async def test_marker_advances_and_prefix_leaves_active_view(self, tmp_path: Path) -> None:
        store = SessionStore(tmp_path, fsync=False)
        for i in range(6):
            await store.append("main", _user(f"t{i}"))
        summary = Turn(role=Role.SYSTEM, kind=TurnKind.SUMMARY, content="first four")
        session = await store.apply_compaction("main", 4, summary)

        assert session.compaction_marker == 4
        assert [t.content for t in session.turns] == ["t4", "t5"]
        assert session.summary is not None and session.summary.content == "first four"
        assert session.total_turns == 6

        reloaded = await SessionStore(tmp_path, fsync=False).load_or_create("main")
        assert reloaded.compaction_marker == 4
        assert [t.content for t in reloaded.turns] == ["t4", "t5"]

    @pytest.mark.asyncio
    async def test_marker_is_absolute_across_compactions(self, store: SessionStore) -> None:
        for i in range(6):
            await store.append("main", _user(f"t{i}"))
        await store.apply_compaction("main", 2, Turn(role=Role.SYSTEM, content="s1"))
        session = await store.apply_compaction("main", 2, Turn(role=Role.SYSTEM, content="s2"))
        assert session.compaction_marker == 4
        assert session.compaction_count == 2
        assert [t.content for t in session.turns] == ["t4", "t5"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cut", [0, -1, 4])
    async def test_out_of_range_cut_is_rejected(self, store: SessionStore, cut: int) -> None:
        for i in range(3):
            await store.append("main", _user(f"t{i}"))
        with pytest.raises(ValueError):
            await store.apply_compaction("main", cut, Turn(role=Role.SYSTEM, content="s"))
        session = await store.load_or_create("main")
        assert session.compaction_marker == 0

    @pytest.mark.asyncio
    async def test_journal_keeps_compacted_turns_for_audit(self, tmp_path: Path) -> None:
        store = SessionStore(tmp_path, fsync=False)
        for i in range(3):
            await store.append("main", _user(f"t{i}"))
        await store.apply_compaction("main", 2, Turn(role=Role.SYSTEM, content="s"))
        journal = tmp_path / f"{safe_session_name('main')}.jsonl"
        records = [json.loads(line) for line in journal.read_text().splitlines()]
        assert sum(1 for r in records if r["record"] == "turn") == 3
        assert records[-1]["record"] == "compaction"


class TestRedaction:
    @pytest.mark.asyncio
    async def test_secrets_never_reach_disk(self, tmp_path: Path) -> None:
        store = SessionStore(tmp_path, redactor=PIIRedactor(enabled=True), fsync=False)
        stored = await store.append("main", Turn(
            role=Role.TOOL,
            tool_results=[ToolResult(
                call_id="c1",
                name="exec",
                status=ToolStatus.SUCCEEDED,
                output="key is sk-ant-REDACTED",
            )],
        ))
        assert "sk-ant-" not in stored.tool_results[0].output
        journal = (tmp_path / f"{safe_session_name('main')}.jsonl").read_text()
        assert "sk-ant-REDACTED" not in journal
        assert "[REDACTED_API_KEY]" in journal

    @pytest.mark.asyncio
    async def test_caller_turn_is_not_mutated(self, tmp_path: Path) -> None:
        store = SessionStore(tmp_path, redactor=PIIRedactor(enabled=True), fsync=False)
        turn = _user("mail me at someone@example.com")
        await store.append("main", turn)
        assert turn.content == "mail me at someone@example.com"


class TestDeleteAndList:
    @pytest.mark.asyncio
    async def test_delete_removes_files_and_cache(self, store: SessionStore) -> None:
        await store.append("main", _user("hi"))
        assert await store.delete("main") is True
        assert not store.exists("main")
        session = await store.load_or_create("main")
        assert session.turns == []

    @pytest.mark.asyncio
    async def test_delete_missing_is_false(self, store: SessionStore) -> None:
        assert await store.delete("nope") is False

    @pytest.mark.asyncio
    async def test_list_sessions(self, store: SessionStore) -> None:
        await store.append("a", _user("x"))
        await store.append("b", _user("y"))
        keys = {entry["key"] for entry in store.list_sessions()}
        assert keys == {"a", "b"}
