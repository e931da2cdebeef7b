"""
Core data types shared across Vigil subsystems.

These Pydantic models are the durable shapes: they are written to the
session journal, carried on the event bus and returned over the control
plane. They live here rather than in a specific subsystem to avoid
circular imports.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------


class Role(str, Enum):
    USER = "user"
    AGENT = "agent"
    TOOL = "tool"
    SYSTEM = "system"


class TurnKind(str, Enum):
    """What produced a turn. Drives assembly and audit, not role mapping."""

    MESSAGE = "message"
    MEMORY_FLUSH = "memory_flush"
    SUMMARY = "summary"
    ABORTED = "aborted"
    LIMIT = "limit"
    HEARTBEAT = "heartbeat"
    CRON = "cron"


class ToolStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    DENIED = "denied"

    @property
    def is_terminal(self) -> bool:
        return self is not ToolStatus.PENDING


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    call_id: str = Field(default_factory=lambda: _new_id("call"))
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    isolation: Literal["host", "sandbox", "auto"] = "auto"


class ToolResult(BaseModel):
    """Terminal outcome of exactly one ToolCall."""

    call_id: str
    name: str
    status: ToolStatus = ToolStatus.PENDING
    output: str = ""
    error: Optional[str] = None
    exit_code: Optional[int] = None
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is ToolStatus.SUCCEEDED

    def as_model_text(self) -> str:
        """Render the result the way the model reads it."""
        if self.ok:
            return self.output
        detail = self.error or self.output or "no output"
        return f"Error ({self.status.value}): {detail}"


class Turn(BaseModel):
    """One entry in a session transcript."""

    turn_id: str = Field(default_factory=lambda: _new_id("turn"))
    role: Role
    content: str = ""
    kind: TurnKind = TurnKind.MESSAGE
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    timestamp: float = Field(default_factory=time.time)
    token_estimate: int = 0
    # No-reply sentinel: persisted, never delivered.
    suppressed: bool = False

    def char_size(self) -> int:
        size = len(self.content)
        for call in self.tool_calls:
            size += len(call.name) + len(str(call.arguments))
        for result in self.tool_results:
            size += len(result.output) + len(result.error or "")
        return size


class Session(BaseModel):
    """A conversation's active transcript plus its mutable state map."""

    key: str
    turns: list[Turn] = Field(default_factory=list)
    state: dict[str, Any] = Field(default_factory=dict)
    # Absolute count of journal turns folded into ``summary``.
    compaction_marker: int = 0
    summary: Optional[Turn] = None
    compaction_count: int = 0
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    last_activity_at: float = Field(default_factory=time.time)

    @property
    def total_turns(self) -> int:
        """Turns ever appended, including those compacted away."""
        return self.compaction_marker + len(self.turns)

    def open_tool_calls(self) -> list[ToolCall]:
        """Calls in the active transcript that have no terminal result yet."""
        answered = {
            r.call_id for t in self.turns for r in t.tool_results if r.status.is_terminal
        }
        return [c for t in self.turns for c in t.tool_calls if c.call_id not in answered]


# ---------------------------------------------------------------------------
# Credentials and fallback
# ---------------------------------------------------------------------------


class ProfileHealth(str, Enum):
    HEALTHY = "healthy"
    COOLING_DOWN = "cooling_down"
    EXHAUSTED = "exhausted"


class AuthProfile(BaseModel):
    """One credential for one provider. Mutated only by the router."""

    profile_id: str
    provider: str = "anthropic"
    api_key: Optional[str] = None
    oauth_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None
    health: ProfileHealth = ProfileHealth.HEALTHY
    cooldown_until: Optional[float] = None
    last_used_at: Optional[float] = None
    last_error: Optional[str] = None
    failure_count: int = 0

    @property
    def credential(self) -> Optional[str]:
        return self.api_key or self.oauth_token

    def public_view(self) -> dict[str, Any]:
        """Status view with credential material removed."""
        return self.model_dump(
            exclude={"api_key", "oauth_token", "refresh_token"},
            mode="json",
        )


class ChainEntry(BaseModel):
    model: str
    provider: str = "anthropic"
    preferred_profile: Optional[str] = None


class ModelFallbackChain(BaseModel):
    agent_id: str
    entries: list[ChainEntry] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class ScheduledJob(BaseModel):
    """A heartbeat or cron trigger. Fires by producing an InboundEvent."""

    job_id: str
    kind: Literal["heartbeat", "cron"]
    interval_seconds: Optional[float] = None
    cron: Optional[str] = None
    timezone: str = "UTC"
    session_policy: Literal["main", "isolated"] = "main"
    active_hours: str = ""
    enabled: bool = True
    prompt: str = ""
    agent_id: Optional[str] = None
    delivery: Literal["announce", "internal"] = "announce"

    next_fire_at: Optional[float] = None
    last_fired_at: Optional[float] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    run_count: int = 0


# ---------------------------------------------------------------------------
# Isolation
# ---------------------------------------------------------------------------


class SandboxSpec(BaseModel):
    mode: Literal["none", "container"] = "container"
    filesystem: Literal["none", "ro", "rw"] = "ro"
    network: Literal["none", "allowlist"] = "none"
    allowed_hosts: list[str] = Field(default_factory=list)
    image: str = "python:3.12-slim"
    memory_limit: str = "512m"
    cpu_limit: float = 1.0


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class InboundEvent(BaseModel):
    """A message to run against a session: from a client or the scheduler."""

    session_key: str
    text: str
    source: Literal["user", "heartbeat", "cron"] = "user"
    agent_id: Optional[str] = None
    channel: str = "gateway"
    job_id: Optional[str] = None
    delivery: Literal["announce", "internal"] = "announce"
    event_id: str = Field(default_factory=lambda: _new_id("evt"))
    received_at: float = Field(default_factory=time.time)
