"""
Context Assembler — builds each model request and keeps it inside the window.

Assembly order is fixed: the compiled system prompt (workspace fields plus
the tool list, capped), then the compaction summary if one exists, then
every active turn in order.

Two mechanisms keep the request small:

  PRUNING is per-call and purely in memory. When a run starts after an idle
  gap, large tool outputs in older turns are replaced by a short placeholder
  in the request. The stored session is never touched.

  COMPACTION is durable. When the estimate crosses the budget the agent
  first gets one turn to save what matters (memory flush), then the prefix
  is summarized and the compaction marker advances. The flush always ends,
  by completion or timeout, before anything is folded away.

If a request is still over budget after compaction, ``assemble(shrink=True)``
clips long text and tool output in the request copy, oldest turn first.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog

from vigil.config import ContextConfig
from vigil.errors import SessionPersistenceError
from vigil.memory.session_store import SessionStore
from vigil.types import Role, Session, ToolResult, Turn, TurnKind
from vigil.workspace import WorkspaceContract

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT_TRUNCATION_MARKER = "\n\n[... system prompt truncated to {cap} chars ...]"
PRUNED_PLACEHOLDER = "[tool output pruned: {chars} chars]"
CLIPPED_MARKER = "\n[... clipped from {chars} chars to fit the context window ...]"

MEMORY_FLUSH_PROMPT = (
    "[System: this conversation is about to be compacted. Older turns will be "
    "replaced by a summary. Save anything worth keeping now with memory_write "
    "or state_set. Reply NO_REPLY when you are done.]"
)

SUMMARY_PROMPT = (
    "Summarize the conversation above for your own future reference. Keep "
    "decisions, open tasks, facts about the people involved, and anything you "
    "promised to do. Drop small talk. Write it as plain notes, not as a reply."
)

_SECTION_TITLES = {
    "instructions": "Instructions",
    "persona": "Persona",
    "identity": "Identity",
    "memory": "Memory",
}


@dataclass
class AssembledContext:
    system: str
    messages: list[dict[str, Any]]
    estimated_tokens: int
    pruned_results: int = 0
    clipped_turns: int = 0


@dataclass
class CompactionOutcome:
    session_key: str
    compaction_marker: int
    turns_removed: int
    flush_completed: bool


FlushFn = Callable[[str], Awaitable[bool]]
SummarizeFn = Callable[[str, list[dict[str, Any]]], Awaitable[str]]


def choose_cut(turns: list[Turn], keep_recent: int) -> int:
    """Index that splits turns into (summarized prefix, kept suffix).

    Never lands on a tool turn, so an agent turn and the tool turn holding
    its results stay on the same side.
    """
    cut = len(turns) - max(0, keep_recent)
    if cut <= 0:
        return 0
    while cut > 0 and turns[cut].role is Role.TOOL:
        cut -= 1
    return cut


class ContextAssembler:
    """Builds requests from session snapshots; drives compaction."""

    def __init__(
        self,
        config: ContextConfig,
        workspace: WorkspaceContract,
        store: SessionStore,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._workspace = workspace
        self._store = store
        self._clock = clock

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def estimate_tokens(self, chars: int) -> int:
        return int(math.ceil(chars / self._config.chars_per_token))

    def needs_compaction(self, estimated_tokens: int) -> bool:
        return estimated_tokens > self._config.input_budget_tokens

    # ------------------------------------------------------------------
    # System prompt
    # ------------------------------------------------------------------

    def compile_system_prompt(self, tool_text: str = "", *, session_key: str = "") -> str:
        sections = []
        for field, text in self._workspace.prompt_sections():
            title = _SECTION_TITLES.get(field.name, field.name.title())
            sections.append(f"# {title} ({field.filename})\n{text}")
        if tool_text:
            sections.append(f"# Tools\n{tool_text}")
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        runtime = f"# Runtime\nCurrent time (UTC): {now.strftime('%Y-%m-%d %H:%M')}"
        if session_key:
            runtime += f"\nConversation: {session_key}"
        runtime += (
            "\nIf a message needs no reply, answer with exactly NO_REPLY. "
            "On a heartbeat with nothing worth surfacing, answer with exactly HEARTBEAT_OK."
        )
        sections.append(runtime)
        prompt = "\n\n".join(sections)

        cap = self._config.system_prompt_max_chars
        if len(prompt) > cap:
            logger.warning("context.system_prompt_truncated", chars=len(prompt), cap=cap)
            prompt = prompt[:cap] + SYSTEM_PROMPT_TRUNCATION_MARKER.format(cap=cap)
        return prompt

    # ------------------------------------------------------------------
    # Pruning
    # ------------------------------------------------------------------

    def prune(
        self, session: Session, *, idle_since: Optional[float] = None
    ) -> tuple[list[Turn], int]:
        """Request-only copy of the active turns with old tool output elided.

        *idle_since* is the session's last activity before the current run
        began; without it the snapshot's own last activity is used.
        """
        last_activity = session.last_activity_at if idle_since is None else idle_since
        idle = self._clock() - last_activity
        if idle <= self._config.prune_idle_seconds:
            return list(session.turns), 0
        boundary = len(session.turns) - self._config.prune_keep_recent
        pruned = 0
        turns: list[Turn] = []
        for i, turn in enumerate(session.turns):
            if i >= boundary or turn.role is not Role.TOOL:
                turns.append(turn)
                continue
            results: list[ToolResult] = []
            changed = False
            for r in turn.tool_results:
                size = len(r.output)
                if size > self._config.prune_min_chars:
                    results.append(r.model_copy(update={
                        "output": PRUNED_PLACEHOLDER.format(chars=size),
                    }))
                    pruned += 1
                    changed = True
                else:
                    results.append(r)
            turns.append(turn.model_copy(update={"tool_results": results}) if changed else turn)
        if pruned:
            logger.debug(
                "context.pruned",
                session_key=session.key,
                results=pruned,
                idle_seconds=round(idle, 1),
            )
        return turns, pruned

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def assemble(
        self,
        session: Session,
        *,
        tool_text: str = "",
        idle_since: Optional[float] = None,
        shrink: bool = False,
    ) -> AssembledContext:
        """Build one request. With *shrink*, oversized turns are clipped to fit."""
        system = self.compile_system_prompt(tool_text, session_key=session.key)
        turns, pruned = self.prune(session, idle_since=idle_since)
        fixed = len(system)
        if session.summary is not None:
            fixed += session.summary.char_size()
        clipped = 0
        if shrink:
            budget_chars = int(self._config.input_budget_tokens * self._config.chars_per_token) - fixed
            turns, clipped = self.clip_to_fit(turns, budget_chars)
            if clipped:
                logger.warning("context.request_clipped", session_key=session.key, turns=clipped)
        messages = to_messages(turns, session.summary)
        chars = fixed + sum(t.char_size() for t in turns)
        return AssembledContext(
            system=system,
            messages=messages,
            estimated_tokens=self.estimate_tokens(chars),
            pruned_results=pruned,
            clipped_turns=clipped,
        )

    def clip_to_fit(self, turns: list[Turn], budget_chars: int) -> tuple[list[Turn], int]:
        """Clip long text and tool output, oldest turn first, until under budget."""
        keep = self._config.prune_min_chars
        total = sum(t.char_size() for t in turns)
        out = list(turns)
        clipped = 0
        for i, turn in enumerate(out):
            if total <= budget_chars:
                break
            update: dict[str, Any] = {}
            if len(turn.content) > keep:
                update["content"] = _clip(turn.content, keep)
            if any(len(r.output) > keep for r in turn.tool_results):
                update["tool_results"] = [
                    r.model_copy(update={"output": _clip(r.output, keep)}) if len(r.output) > keep else r
                    for r in turn.tool_results
                ]
            if not update:
                continue
            smaller = turn.model_copy(update=update)
            total -= turn.char_size() - smaller.char_size()
            out[i] = smaller
            clipped += 1
        return out, clipped

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    async def compact(
        self,
        session_key: str,
        *,
        flush: FlushFn,
        summarize: SummarizeFn,
        tool_text: str = "",
    ) -> Optional[CompactionOutcome]:
        """Flush, summarize the prefix, then advance the marker.

        Returns None when the transcript is too short to fold anything.
        """
        session = await self._store.load_or_create(session_key)
        if choose_cut(session.turns, self._config.compaction_keep_recent) <= 0:
            logger.info("context.compaction_skipped", session_key=session_key, turns=len(session.turns))
            return None

        await self._store.append(session_key, Turn(
            role=Role.SYSTEM,
            kind=TurnKind.MEMORY_FLUSH,
            content=MEMORY_FLUSH_PROMPT,
        ))
        flush_completed = False
        try:
            flush_completed = await asyncio.wait_for(
                flush(session_key), timeout=self._config.memory_flush_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "context.memory_flush_timeout",
                session_key=session_key,
                timeout=self._config.memory_flush_timeout,
            )
        except SessionPersistenceError:
            raise
        except Exception as e:
            logger.warning("context.memory_flush_failed", session_key=session_key, error=str(e))
        if not flush_completed:
            await self._store.close_open_calls(
                session_key, "memory flush did not finish", kind=TurnKind.MEMORY_FLUSH
            )

        # Re-read: the flush appended turns of its own.
        session = await self._store.load_or_create(session_key)
        cut = choose_cut(session.turns, self._config.compaction_keep_recent)
        if cut <= 0:
            return None
        prefix = session.turns[:cut]
        messages = to_messages(prefix, session.summary)
        messages.append({"role": "user", "content": SUMMARY_PROMPT})
        system = self.compile_system_prompt(tool_text, session_key=session_key)
        text = (await summarize(system, _merge_roles(messages))).strip()
        if not text:
            text = "(no summary produced)"
        if session.summary is not None and session.summary.content not in text:
            text = f"{session.summary.content}\n\n{text}"

        summary = Turn(
            role=Role.SYSTEM,
            kind=TurnKind.SUMMARY,
            content=text,
            token_estimate=self.estimate_tokens(len(text)),
        )
        updated = await self._store.apply_compaction(session_key, cut, summary)
        logger.info(
            "context.compacted",
            session_key=session_key,
            marker=updated.compaction_marker,
            removed=cut,
            flush_completed=flush_completed,
        )
        return CompactionOutcome(
            session_key=session_key,
            compaction_marker=updated.compaction_marker,
            turns_removed=cut,
            flush_completed=flush_completed,
        )


# ---------------------------------------------------------------------------
# Transcript → Messages API shape
# ---------------------------------------------------------------------------


def to_messages(turns: list[Turn], summary: Optional[Turn] = None) -> list[dict[str, Any]]:
    """Render turns as alternating user/assistant messages.

    A tool_use without a recorded result (a run cancelled mid-dispatch) is
    dropped, as is a result whose call is no longer in view; the API rejects
    either half on its own.
    """
    answered = {r.call_id for t in turns for r in t.tool_results}
    requested = {c.call_id for t in turns for c in t.tool_calls}

    messages: list[dict[str, Any]] = []
    if summary is not None:
        messages.append({
            "role": "user",
            "content": f"[Summary of earlier conversation]\n{summary.content}",
        })

    for turn in turns:
        if turn.role is Role.AGENT:
            blocks: list[dict[str, Any]] = []
            if turn.content:
                blocks.append({"type": "text", "text": turn.content})
            for call in turn.tool_calls:
                if call.call_id in answered:
                    blocks.append({
                        "type": "tool_use",
                        "id": call.call_id,
                        "name": call.name,
                        "input": call.arguments,
                    })
            if blocks:
                messages.append({"role": "assistant", "content": blocks})
        elif turn.role is Role.TOOL:
            blocks = [
                {
                    "type": "tool_result",
                    "tool_use_id": r.call_id,
                    "content": r.as_model_text() or "(no output)",
                    "is_error": not r.ok,
                }
                for r in turn.tool_results
                if r.call_id in requested
            ]
            if blocks:
                messages.append({"role": "user", "content": blocks})
        elif turn.role is Role.SYSTEM:
            if turn.content:
                messages.append({"role": "user", "content": f"[system] {turn.content}"})
        elif turn.content:
            messages.append({"role": "user", "content": turn.content})

    return _merge_roles(messages)


def _clip(text: str, keep: int) -> str:
    return text[:keep] + CLIPPED_MARKER.format(chars=len(text))


def _as_blocks(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, list):
        return list(content)
    return [{"type": "text", "text": str(content)}]


def _merge_roles(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Merge consecutive same-role messages and make sure a user message leads."""
    merged: list[dict[str, Any]] = []
    for msg in messages:
        if merged and merged[-1]["role"] == msg["role"]:
            prev = merged[-1]
            blocks = _as_blocks(prev["content"]) + _as_blocks(msg["content"])
            # tool_result blocks must come first in a user message
            if msg["role"] == "user":
                blocks.sort(key=lambda b: 0 if b.get("type") == "tool_result" else 1)
            prev["content"] = blocks
        else:
            merged.append({"role": msg["role"], "content": msg["content"]})
    if merged and merged[0]["role"] != "user":
        merged.insert(0, {"role": "user", "content": "[system] conversation resumed"})
    return merged
