"""
Shared fixtures for the Vigil test suite.

Provides config objects rooted in tmp_path, a scripted model provider,
and a fully wired agent loop so individual test modules can focus on
behavior rather than setup.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Union
from unittest.mock import AsyncMock, MagicMock

import pytest

from vigil.api.profiles import AuthProfileStore
from vigil.api.providers import ModelRequest, ModelResponse
from vigil.api.router import CredentialRouter
from vigil.config import (
    ContextConfig,
    ProviderConfig,
    SafetyConfig,
    SandboxConfig,
    SchedulerConfig,
)
from vigil.events import EventBus
from vigil.harness.context import ContextAssembler
from vigil.harness.loop import AgentLoopExecutor
from vigil.harness.safety import ToolPolicy
from vigil.memory.session_store import SessionStore
from vigil.tools.broker import ToolBroker
from vigil.tools.builtin import register_builtin_tools
from vigil.tools.executor import ToolExecutor
from vigil.tools.registry import ToolRegistry
from vigil.types import AuthProfile, ToolCall
from vigil.workspace import WorkspaceContract


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------

Step = Union[ModelResponse, Exception, Callable[[ModelRequest], Any]]


class ScriptedProvider:
    """Model provider double that plays back a fixed script.

    Each step is a ModelResponse (returned, its text streamed), an exception
    (raised), or a callable taking the request (awaited if it returns a
    coroutine). Once the script runs out the last step repeats.
    """

    name = "anthropic"

    def __init__(self, steps: Optional[list[Step]] = None) -> None:
        self.steps: list[Step] = list(steps or [])
        self.calls: list[tuple[str, str]] = []
        self.requests: list[ModelRequest] = []
        self.refresh = AsyncMock(return_value=None)

    def push(self, *steps: Step) -> None:
        self.steps.extend(steps)

    async def complete(
        self,
        request: ModelRequest,
        *,
        model: str,
        profile: AuthProfile,
        on_stream=None,
    ) -> ModelResponse:
        self.calls.append((model, profile.profile_id))
        self.requests.append(request)
        if not self.steps:
            raise AssertionError("ScriptedProvider ran out of steps")
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, Exception):
            raise step
        if callable(step) and not isinstance(step, ModelResponse):
            step = step(request)
            if asyncio.iscoroutine(step):
                step = await step
        assert isinstance(step, ModelResponse)
        if on_stream is not None and step.text:
            on_stream(step.text)
        return ModelResponse(
            text=step.text,
            tool_calls=[c.model_copy() for c in step.tool_calls],
            stop_reason=step.stop_reason or ("tool_use" if step.tool_calls else "end_turn"),
            model=model,
            profile_id=profile.profile_id,
        )


def reply(text: str) -> ModelResponse:
    return ModelResponse(text=text)


def tool_use(name: str, call_id: str = "", **arguments: Any) -> ModelResponse:
    extra = {"call_id": call_id} if call_id else {}
    return ModelResponse(text="", tool_calls=[ToolCall(name=name, arguments=arguments, **extra)])


def write_profiles(path: Path, profiles: list[AuthProfile]) -> AuthProfileStore:
    """Persist *profiles* as an auth profile file and load a store from it."""
    path.write_text(
        json.dumps({"profiles": [p.model_dump(mode="json") for p in profiles]}),
        encoding="utf-8",
    )
    store = AuthProfileStore(path)
    store.load()
    return store


@pytest.fixture
def scripted() -> ScriptedProvider:
    return ScriptedProvider([reply("Hello!")])


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(
        _env_file=None,
        VIGIL_RETRY_MAX_RETRIES=0,
        VIGIL_PROFILE_COOLDOWN_SECONDS=60,
        VIGIL_MODEL="model-a",
    )


@pytest.fixture
def context_config() -> ContextConfig:
    return ContextConfig(_env_file=None)


@pytest.fixture
def safety_config() -> SafetyConfig:
    return SafetyConfig(_env_file=None, VIGIL_MAX_MODEL_CALLS=5)


@pytest.fixture
def sandbox_config() -> SandboxConfig:
    return SandboxConfig(_env_file=None, VIGIL_SANDBOX_ENABLED=False)


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig(_env_file=None, VIGIL_HEARTBEAT_ENABLED=False)


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(tmp_path / "sessions", fsync=False)


@pytest.fixture
def workspace(tmp_path: Path) -> WorkspaceContract:
    ws = WorkspaceContract(tmp_path / "workspace", field_max_chars=2000)
    ws.ensure_layout()
    return ws


@pytest.fixture
def profiles(tmp_path: Path) -> AuthProfileStore:
    return write_profiles(
        tmp_path / "auth_profiles.json",
        [AuthProfile(profile_id="anthropic:a1", api_key="key-a1")],
    )


# ---------------------------------------------------------------------------
# Wired agent loop
# ---------------------------------------------------------------------------


@dataclass
class Harness:
    store: SessionStore
    workspace: WorkspaceContract
    registry: ToolRegistry
    broker: ToolBroker
    router: CredentialRouter
    provider: ScriptedProvider
    loop: AgentLoopExecutor
    host_runner: MagicMock
    sandbox: MagicMock
    event_bus: EventBus


@pytest.fixture
def harness(
    store: SessionStore,
    workspace: WorkspaceContract,
    profiles: AuthProfileStore,
    provider_config: ProviderConfig,
    context_config: ContextConfig,
    safety_config: SafetyConfig,
    sandbox_config: SandboxConfig,
    scripted: ScriptedProvider,
) -> Harness:
    bus = EventBus()
    registry = ToolRegistry()
    register_builtin_tools(registry, workspace, store)
    policy = ToolPolicy(safety_config, sandbox_config, registry)
    host_runner = MagicMock()
    host_runner.run = AsyncMock()
    sandbox = MagicMock()
    sandbox.run = AsyncMock()
    broker = ToolBroker(
        registry,
        policy,
        ToolExecutor(registry, default_timeout=5.0),
        host_runner,
        sandbox,
        default_timeout=5.0,
        event_bus=bus,
    )
    router = CredentialRouter(provider_config, profiles, {"anthropic": scripted}, event_bus=bus)
    assembler = ContextAssembler(context_config, workspace, store)
    loop = AgentLoopExecutor(
        router, broker, assembler, store, safety_config, context_config, event_bus=bus,
    )
    return Harness(
        store=store,
        workspace=workspace,
        registry=registry,
        broker=broker,
        router=router,
        provider=scripted,
        loop=loop,
        host_runner=host_runner,
        sandbox=sandbox,
        event_bus=bus,
    )
