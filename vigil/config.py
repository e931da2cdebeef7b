"""
Configuration for the Vigil gateway.

All configuration flows through this module. Values are loaded from
environment variables (via an optional .env file) and validated with
Pydantic. JSON-valued settings (auth profiles, fallback chains, cron jobs)
are kept as raw strings and parsed by helper methods so a malformed value
degrades to an empty list with a log line instead of a crash.
"""

from __future__ import annotations

import ipaddress
import json
from pathlib import Path
from typing import Annotated, Any, Literal, Optional

import structlog
from pydantic import BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings

logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above vigil/),
# so the config works regardless of the current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

_LOOPBACK_NAMES = frozenset({"localhost", "ip6-localhost", "ip6-loopback"})


def _coerce_str_list(value: object) -> list[str]:
    """Coerce env-var values into a list of stripped, non-empty strings.

    Accepts a bare value, a comma-separated string, a JSON array (parsed
    by pydantic-settings before this runs), or an existing list.
    """
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if "," in stripped:
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return [stripped]
    return []


StrList = Annotated[list[str], BeforeValidator(_coerce_str_list)]


def is_loopback_host(host: str) -> bool:
    """Return True when *host* can only be reached from this machine."""
    host = (host or "").strip().strip("[]").lower()
    if host in _LOOPBACK_NAMES:
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def _parse_json_list(raw: str, setting: str) -> list[dict[str, Any]]:
    try:
        parsed = json.loads(raw) if raw.strip() else []
    except json.JSONDecodeError as e:
        logger.warning("config.invalid_json", setting=setting, error=str(e))
        return []
    if not isinstance(parsed, list):
        logger.warning("config.expected_json_list", setting=setting)
        return []
    return [item for item in parsed if isinstance(item, dict)]


class GatewayConfig(BaseSettings):
    """Control-plane listener and run dispatch."""

    host: str = Field("127.0.0.1", alias="VIGIL_GATEWAY_HOST")
    port: int = Field(18900, alias="VIGIL_GATEWAY_PORT")
    auth_token: Optional[str] = Field(None, alias="VIGIL_GATEWAY_AUTH_TOKEN")
    max_connections: int = Field(16, alias="VIGIL_MAX_CONNECTIONS")
    connection_timeout: float = Field(600.0, alias="VIGIL_CONNECTION_TIMEOUT")
    # Wall-clock ceiling for one agent run; 0 disables.
    run_timeout: float = Field(900.0, alias="VIGIL_RUN_TIMEOUT")
    max_queued_runs_per_session: int = Field(8, alias="VIGIL_MAX_QUEUED_RUNS_PER_SESSION")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "GatewayConfig":
        self.host = self.host.strip() or "127.0.0.1"
        if not 0 <= int(self.port) <= 65535:
            raise ValueError("VIGIL_GATEWAY_PORT must be between 0 and 65535.")
        self.max_connections = max(1, int(self.max_connections))
        self.connection_timeout = max(1.0, float(self.connection_timeout))
        self.run_timeout = max(0.0, float(self.run_timeout))  # 0 disables the limit
        self.max_queued_runs_per_session = max(1, int(self.max_queued_runs_per_session))
        if isinstance(self.auth_token, str):
            self.auth_token = self.auth_token.strip() or None
        return self

    @model_validator(mode="after")
    def require_token_off_loopback(self) -> "GatewayConfig":
        if not is_loopback_host(self.host) and not self.auth_token:
            raise ValueError(
                f"VIGIL_GATEWAY_AUTH_TOKEN is required when binding to a "
                f"non-loopback address ({self.host})."
            )
        return self

    @property
    def loopback_only(self) -> bool:
        return is_loopback_host(self.host)


class ProviderConfig(BaseSettings):
    """Model providers, credential profiles and per-agent fallback chains."""

    default_agent_id: str = Field("main", alias="VIGIL_DEFAULT_AGENT_ID")
    default_model: str = Field("claude-sonnet-4-5-20250929", alias="VIGIL_MODEL")
    # Single-key shortcut: becomes profile "anthropic:default" when no
    # profile file exists.
    anthropic_api_key: Optional[str] = Field(None, alias="ANTHROPIC_API_KEY")
    auth_profiles_path: Path = Field(
        Path("./vigil_data/auth_profiles.json"), alias="VIGIL_AUTH_PROFILES_FILE"
    )
    # JSON object: {"agent_id": [{"model": ..., "provider": ..., "profile": ...}, ...]}
    fallback_chains: str = Field("{}", alias="VIGIL_FALLBACK_CHAINS")

    max_tokens: int = Field(8192, alias="VIGIL_MAX_TOKENS")
    request_timeout_seconds: float = Field(120.0, alias="VIGIL_REQUEST_TIMEOUT_SECONDS")
    retry_max_retries: int = Field(2, alias="VIGIL_RETRY_MAX_RETRIES")
    retry_base_delay: float = Field(0.5, alias="VIGIL_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(8.0, alias="VIGIL_RETRY_MAX_DELAY")
    retry_exponential_base: float = Field(2.0, alias="VIGIL_RETRY_EXPONENTIAL_BASE")
    retry_jitter_range: float = Field(0.25, alias="VIGIL_RETRY_JITTER_RANGE")

    profile_cooldown_seconds: float = Field(60.0, alias="VIGIL_PROFILE_COOLDOWN_SECONDS")
    profile_max_cooldown_seconds: float = Field(3600.0, alias="VIGIL_PROFILE_MAX_COOLDOWN_SECONDS")
    # Consecutive auth failures before a profile is marked exhausted.
    profile_exhaust_after: int = Field(3, alias="VIGIL_PROFILE_EXHAUST_AFTER")
    # Refresh OAuth tokens this many seconds before they expire.
    token_refresh_margin_seconds: float = Field(300.0, alias="VIGIL_TOKEN_REFRESH_MARGIN")
    oauth_token_url: str = Field(
        "https://console.anthropic.com/v1/oauth/token", alias="VIGIL_OAUTH_TOKEN_URL"
    )
    # Empty disables OAuth refresh; expiring tokens then cool down like auth failures.
    oauth_client_id: str = Field("", alias="VIGIL_OAUTH_CLIENT_ID")

    _DEFAULT_PROFILES: Path = Path("./vigil_data/auth_profiles.json")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "ProviderConfig":
        self.default_agent_id = self.default_agent_id.strip() or "main"
        self.max_tokens = max(1, int(self.max_tokens))
        self.request_timeout_seconds = max(1.0, float(self.request_timeout_seconds))
        self.retry_max_retries = max(0, int(self.retry_max_retries))
        self.retry_base_delay = max(0.05, float(self.retry_base_delay))
        self.retry_max_delay = max(self.retry_base_delay, float(self.retry_max_delay))
        self.retry_exponential_base = max(1.0, float(self.retry_exponential_base))
        self.retry_jitter_range = max(0.0, min(1.0, float(self.retry_jitter_range)))
        self.profile_cooldown_seconds = max(1.0, float(self.profile_cooldown_seconds))
        self.profile_max_cooldown_seconds = max(
            self.profile_cooldown_seconds, float(self.profile_max_cooldown_seconds)
        )
        self.profile_exhaust_after = max(1, int(self.profile_exhaust_after))
        self.token_refresh_margin_seconds = max(0.0, float(self.token_refresh_margin_seconds))
        if isinstance(self.anthropic_api_key, str):
            self.anthropic_api_key = self.anthropic_api_key.strip() or None
        return self

    def get_fallback_chains(self) -> dict[str, list[dict[str, Any]]]:
        """Parse VIGIL_FALLBACK_CHAINS into {agent_id: [entry, ...]}."""
        try:
            parsed = json.loads(self.fallback_chains) if self.fallback_chains.strip() else {}
        except json.JSONDecodeError as e:
            logger.warning("config.invalid_json", setting="VIGIL_FALLBACK_CHAINS", error=str(e))
            return {}
        if not isinstance(parsed, dict):
            return {}
        chains: dict[str, list[dict[str, Any]]] = {}
        for agent_id, entries in parsed.items():
            if isinstance(entries, list):
                chains[str(agent_id)] = [e for e in entries if isinstance(e, dict)]
        return chains


class ContextConfig(BaseSettings):
    """Context window management: system prompt budget, pruning, compaction."""

    context_limit: int = Field(180000, alias="VIGIL_CONTEXT_LIMIT")
    reserve_tokens: int = Field(16000, alias="VIGIL_CONTEXT_RESERVE_TOKENS")
    system_prompt_max_chars: int = Field(24000, alias="VIGIL_SYSTEM_PROMPT_MAX_CHARS")

    prune_idle_seconds: float = Field(300.0, alias="VIGIL_PRUNE_IDLE_SECONDS")
    prune_keep_recent: int = Field(6, alias="VIGIL_PRUNE_KEEP_RECENT")
    prune_min_chars: int = Field(400, alias="VIGIL_PRUNE_MIN_CHARS")

    compaction_keep_recent: int = Field(8, alias="VIGIL_COMPACTION_KEEP_RECENT")
    memory_flush_timeout: float = Field(60.0, alias="VIGIL_MEMORY_FLUSH_TIMEOUT")
    summary_max_tokens: int = Field(2048, alias="VIGIL_SUMMARY_MAX_TOKENS")

    # Token estimation (rough: 1 token ≈ 4 chars)
    chars_per_token: float = 4.0

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "ContextConfig":
        self.context_limit = max(1000, int(self.context_limit))
        self.reserve_tokens = max(0, min(int(self.reserve_tokens), self.context_limit // 2))
        self.system_prompt_max_chars = max(200, int(self.system_prompt_max_chars))
        self.prune_idle_seconds = max(0.0, float(self.prune_idle_seconds))
        self.prune_keep_recent = max(0, int(self.prune_keep_recent))
        self.prune_min_chars = max(0, int(self.prune_min_chars))
        self.compaction_keep_recent = max(1, int(self.compaction_keep_recent))
        self.memory_flush_timeout = max(1.0, float(self.memory_flush_timeout))
        self.summary_max_tokens = max(128, int(self.summary_max_tokens))
        self.chars_per_token = max(1.0, float(self.chars_per_token))
        return self

    @property
    def input_budget_tokens(self) -> int:
        return self.context_limit - self.reserve_tokens


class SafetyConfig(BaseSettings):
    """Tool policy, approval gate and loop limits."""

    # Hard cap on consecutive model calls in one run.
    max_model_calls: int = Field(25, alias="VIGIL_MAX_MODEL_CALLS")

    # "deny" blocks tools outside allowed_tools (builtins always pass),
    # "allow" permits every registered tool not on the deny list.
    tool_default_policy: Literal["allow", "deny"] = Field("allow", alias="VIGIL_TOOL_DEFAULT_POLICY")
    allowed_tools: StrList = Field(default_factory=list, alias="VIGIL_ALLOWED_TOOLS")
    denied_tools: StrList = Field(default_factory=list, alias="VIGIL_DENIED_TOOLS")

    # Host (unsandboxed) execution of shell commands.
    elevated_allowed: bool = Field(False, alias="VIGIL_ELEVATED_ALLOWED")
    require_approval_for_host: bool = Field(True, alias="VIGIL_REQUIRE_APPROVAL_FOR_HOST")
    approval_timeout_seconds: float = Field(120.0, alias="VIGIL_APPROVAL_TIMEOUT")

    tool_default_timeout: float = Field(60.0, alias="VIGIL_TOOL_DEFAULT_TIMEOUT")
    tool_max_output_length: int = Field(25000, alias="VIGIL_TOOL_MAX_OUTPUT_LENGTH")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "SafetyConfig":
        self.max_model_calls = max(1, int(self.max_model_calls))
        self.approval_timeout_seconds = max(1.0, float(self.approval_timeout_seconds))
        self.tool_default_timeout = max(1.0, float(self.tool_default_timeout))
        self.tool_max_output_length = max(100, int(self.tool_max_output_length))
        return self


class SandboxConfig(BaseSettings):
    """Container isolation for shell tool calls."""

    enabled: bool = Field(True, alias="VIGIL_SANDBOX_ENABLED")
    docker_binary: str = Field("docker", alias="VIGIL_DOCKER_BINARY")
    image: str = Field("python:3.12-slim", alias="VIGIL_SANDBOX_IMAGE")
    memory_limit: str = Field("512m", alias="VIGIL_SANDBOX_MEMORY")
    cpu_limit: float = Field(1.0, alias="VIGIL_SANDBOX_CPUS")
    filesystem: Literal["none", "ro", "rw"] = Field("ro", alias="VIGIL_SANDBOX_FILESYSTEM")
    network: Literal["none", "allowlist"] = Field("none", alias="VIGIL_SANDBOX_NETWORK")
    # Pre-created docker network that enforces egress filtering for allowlist mode.
    egress_network: str = Field("vigil-egress", alias="VIGIL_SANDBOX_EGRESS_NETWORK")
    allowed_hosts: StrList = Field(default_factory=list, alias="VIGIL_SANDBOX_ALLOWED_HOSTS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "SandboxConfig":
        self.cpu_limit = max(0.1, float(self.cpu_limit))
        self.image = self.image.strip() or "python:3.12-slim"
        return self


class SchedulerConfig(BaseSettings):
    """Heartbeat and cron scheduling."""

    heartbeat_enabled: bool = Field(True, alias="VIGIL_HEARTBEAT_ENABLED")
    heartbeat_interval: float = Field(1800.0, alias="VIGIL_HEARTBEAT_INTERVAL")
    # "HH:MM-HH:MM" in the scheduler timezone; empty means always active.
    heartbeat_active_hours: str = Field("", alias="VIGIL_HEARTBEAT_ACTIVE_HOURS")
    heartbeat_agent_id: str = Field("", alias="VIGIL_HEARTBEAT_AGENT_ID")
    timezone: str = Field("UTC", alias="VIGIL_TIMEZONE")
    # JSON list of job objects: {"job_id", "cron", "prompt", "agent_id", "delivery", ...}
    cron_jobs: str = Field("[]", alias="VIGIL_CRON_JOBS")
    tick_seconds: float = Field(1.0, alias="VIGIL_SCHEDULER_TICK_SECONDS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "SchedulerConfig":
        self.heartbeat_interval = max(10.0, float(self.heartbeat_interval))
        self.heartbeat_active_hours = self.heartbeat_active_hours.strip()
        self.tick_seconds = max(0.05, float(self.tick_seconds))
        return self

    def get_cron_jobs(self) -> list[dict[str, Any]]:
        return _parse_json_list(self.cron_jobs, "VIGIL_CRON_JOBS")


class SessionConfig(BaseSettings):
    """Durable session storage."""

    data_dir: Path = Field(Path("./vigil_data"), alias="VIGIL_DATA_DIR")
    sessions_dir: Path = Field(Path("./vigil_data/sessions"), alias="VIGIL_SESSIONS_DIR")
    main_session_key: str = Field("main", alias="VIGIL_MAIN_SESSION_KEY")
    redact_before_persist: bool = Field(True, alias="VIGIL_REDACT_BEFORE_PERSIST")
    fsync: bool = Field(True, alias="VIGIL_SESSION_FSYNC")

    _DEFAULT_SESSIONS: Path = Path("./vigil_data/sessions")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}


class WorkspaceConfig(BaseSettings):
    """Agent workspace directory (instructions, persona, memory files)."""

    workspace_dir: Path = Field(Path("./vigil_workspace"), alias="VIGIL_WORKSPACE_DIR")
    field_max_chars: int = Field(20000, alias="VIGIL_WORKSPACE_FIELD_MAX_CHARS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "WorkspaceConfig":
        self.field_max_chars = max(100, int(self.field_max_chars))
        return self


class LoggingConfig(BaseSettings):
    """Structured log output."""

    level: str = Field("INFO", alias="VIGIL_LOG_LEVEL")
    json_logs: bool = Field(False, alias="VIGIL_LOG_JSON")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_level(self) -> "LoggingConfig":
        self.level = self.level.strip().upper() or "INFO"
        if self.level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("VIGIL_LOG_LEVEL must be DEBUG, INFO, WARNING, ERROR or CRITICAL.")
        return self


class VigilConfig:
    """
    Master configuration that composes all subsystem configs.

    Every component receives its config from here. Relative paths are
    resolved against the project root so the daemon can be started from
    any working directory.
    """

    def __init__(self) -> None:
        self.gateway = GatewayConfig()
        self.provider = ProviderConfig()
        self.context = ContextConfig()
        self.safety = SafetyConfig()
        self.sandbox = SandboxConfig()
        self.scheduler = SchedulerConfig()
        self.session = SessionConfig()
        self.workspace = WorkspaceConfig()
        self.logging = LoggingConfig()

        # Derive paths from data_dir when they still equal factory defaults.
        # Instance access, because pydantic wraps class-level private attrs.
        data_dir = self.session.data_dir
        if self.session.sessions_dir == self.session._DEFAULT_SESSIONS:
            self.session.sessions_dir = data_dir / "sessions"
        if self.provider.auth_profiles_path == self.provider._DEFAULT_PROFILES:
            self.provider.auth_profiles_path = data_dir / "auth_profiles.json"

        self._resolve_paths()
        self.session.data_dir.mkdir(parents=True, exist_ok=True)

    def _resolve_paths(self) -> None:
        def _resolve(p: Path) -> Path:
            if p.is_absolute():
                return p
            return (_PROJECT_ROOT / p).resolve()

        self.session.data_dir = _resolve(self.session.data_dir)
        self.session.sessions_dir = _resolve(self.session.sessions_dir)
        self.provider.auth_profiles_path = _resolve(self.provider.auth_profiles_path)
        self.workspace.workspace_dir = _resolve(self.workspace.workspace_dir)

    def __repr__(self) -> str:
        return (
            f"VigilConfig(listen={self.gateway.host}:{self.gateway.port}, "
            f"model={self.provider.default_model}, "
            f"heartbeat={self.scheduler.heartbeat_interval}s)"
        )
