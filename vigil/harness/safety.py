"""
Tool Policy — decides whether and where a tool call may run.

Every call the model requests passes through ``ToolPolicy.check`` before the
broker executes anything. The check order is fixed:

1. NAME: explicit deny list, then registry membership, then the
   default policy (``deny`` means only builtins and allow-listed tools).
2. ELEVATION: a command that would run on the host needs
   ``elevated_allowed``, must not match a dangerous pattern, and may need
   operator approval.
3. ISOLATION: everything else that runs a command is resolved to a
   SandboxSpec built from the sandbox configuration.

A refusal is a PolicyDecision with ``allowed=False``; the broker turns it
into a denied ToolResult. Policy never raises into the loop.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal, Optional

import structlog

from vigil.config import SafetyConfig, SandboxConfig
from vigil.tools.registry import RiskTier, ToolRegistry
from vigil.types import SandboxSpec, ToolCall

logger = structlog.get_logger(__name__)

Target = Literal["inprocess", "host", "sandbox"]


@dataclass
class PolicyDecision:
    allowed: bool
    reason: str = ""
    target: Optional[Target] = None
    sandbox: Optional[SandboxSpec] = None
    requires_approval: bool = False
    risk_level: str = "low"


class ToolPolicy:
    """Allow/deny, elevation and isolation rules for tool calls."""

    # Substring checks (lowercased) for host commands
    _DANGEROUS_PATTERNS = (
        "rm -rf /",
        "mkfs",
        "dd if=",
        ":(){",
        "chmod 777",
        "> /dev/sd",
    )

    _DANGEROUS_REGEXES = (
        (re.compile(r"\bsudo\b", re.IGNORECASE), "sudo command"),
        (re.compile(r"curl\s+.*\|\s*(?:bash|sh)\b", re.IGNORECASE), "curl pipe to shell"),
        (re.compile(r"wget\s+.*\|\s*(?:bash|sh)\b", re.IGNORECASE), "wget pipe to shell"),
    )

    def __init__(
        self,
        safety: SafetyConfig,
        sandbox: SandboxConfig,
        registry: ToolRegistry,
        *,
        only: Optional[frozenset[str]] = None,
    ):
        self._safety = safety
        self._sandbox = sandbox
        self._registry = registry
        self._only = only

    def restricted_to(self, names: list[str] | frozenset[str]) -> "ToolPolicy":
        """A copy of this policy that refuses every tool outside *names*."""
        return ToolPolicy(self._safety, self._sandbox, self._registry, only=frozenset(names))

    @property
    def visible_tool_names(self) -> list[str]:
        """Tools offered to the model under this policy."""
        names = []
        for name in self._registry.names():
            if self._only is not None and name not in self._only:
                continue
            if name in self._safety.denied_tools:
                continue
            names.append(name)
        return names

    def sandbox_spec(self) -> SandboxSpec:
        cfg = self._sandbox
        return SandboxSpec(
            mode="container",
            filesystem=cfg.filesystem,
            network="allowlist" if cfg.network == "allowlist" and cfg.allowed_hosts else "none",
            allowed_hosts=list(cfg.allowed_hosts) if cfg.network == "allowlist" else [],
            image=cfg.image,
            memory_limit=cfg.memory_limit,
            cpu_limit=cfg.cpu_limit,
        )

    def check(self, call: ToolCall) -> PolicyDecision:
        name = call.name

        # 1. Name
        if self._only is not None and name not in self._only:
            return self._deny(name, f"Tool '{name}' is not available in this turn", "restricted")
        if name in self._safety.denied_tools:
            return self._deny(name, f"Tool '{name}' is explicitly denied by configuration", "denied_list")
        tool = self._registry.get(name)
        if tool is None or not tool.enabled:
            return self._deny(name, f"Unknown tool: {name}", "unknown")
        allow_listed = name in self._safety.allowed_tools
        if self._safety.tool_default_policy == "deny" and not (tool.is_builtin or allow_listed):
            return self._deny(name, f"Tool '{name}' is not in the allowed tools list", "not_in_allowlist")
        if tool.tier is RiskTier.CRITICAL and not allow_listed:
            return self._deny(name, f"Tool '{name}' has CRITICAL risk tier and is not allow-listed", "critical")

        if tool.execution == "inprocess":
            return PolicyDecision(allowed=True, target="inprocess", risk_level=tool.risk_level)

        # 2. Elevation
        wants_host = call.isolation == "host" or (
            call.isolation == "auto" and not self._sandbox.enabled
        )
        if wants_host:
            if not self._safety.elevated_allowed:
                return self._deny(name, "Host execution is disabled (elevated_allowed is off)", "elevation")
            command = str(call.arguments.get("command", ""))
            hit = self._dangerous_match(command)
            if hit:
                logger.warning("tool_policy.dangerous_pattern", tool=name, pattern=hit)
                return self._deny(name, f"Dangerous pattern detected: '{hit}'", "dangerous_pattern")
            return PolicyDecision(
                allowed=True,
                target="host",
                requires_approval=(
                    self._safety.require_approval_for_host or tool.tier is RiskTier.HIGH
                ),
                risk_level=tool.risk_level,
            )

        # 3. Isolation
        if not self._sandbox.enabled:
            return self._deny(name, "Sandbox execution requested but the sandbox is disabled", "sandbox_disabled")
        return PolicyDecision(
            allowed=True,
            target="sandbox",
            sandbox=self.sandbox_spec(),
            risk_level=tool.risk_level,
        )

    def _dangerous_match(self, command: str) -> Optional[str]:
        lowered = command.lower()
        for pattern in self._DANGEROUS_PATTERNS:
            if pattern in lowered:
                return pattern
        for regex, description in self._DANGEROUS_REGEXES:
            if regex.search(command):
                return description
        return None

    @staticmethod
    def _deny(tool_name: str, reason: str, code: str) -> PolicyDecision:
        logger.info("tool_policy.denied", tool=tool_name, code=code)
        return PolicyDecision(allowed=False, reason=reason, risk_level="blocked")
