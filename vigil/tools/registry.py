"""
Tool Registry — the catalog of tools the agent may request.

Every tool is registered with its JSON Schema, description, risk tier and
an execution kind:

  - ``inprocess`` tools run a Python handler inside the daemon (workspace
    files, durable memory, session state). They never touch the shell.
  - ``command`` tools run an external command line, either on the host or in
    a throwaway container, as decided by the tool policy per call.

The registry serves discovery (the tools array sent to the model) and
dispatch (mapping a requested name to its definition).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Literal, Optional

import structlog

logger = structlog.get_logger(__name__)


class RiskTier(str, Enum):
    """
    Risk tiers with associated default policies.

    - LOW: auto-allow
    - MEDIUM: allow, logged per invocation
    - HIGH: host execution needs operator approval
    - CRITICAL: denied unless explicitly allow-listed
    """
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_VALID_RISK_LEVELS = frozenset(tier.value for tier in RiskTier)


@dataclass
class ToolDefinition:
    """A registered tool with its schema, description, and handler."""
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: Optional[Callable] = None
    risk_level: str = "low"
    category: str = "general"
    enabled: bool = True
    is_builtin: bool = False
    timeout: Optional[float] = None
    execution: Literal["inprocess", "command"] = "inprocess"
    # Handler receives the calling ToolContext as ``context=``.
    takes_context: bool = False

    def __post_init__(self) -> None:
        if self.risk_level not in _VALID_RISK_LEVELS:
            logger.warning(
                "tool_definition.invalid_risk_level",
                name=self.name,
                risk_level=self.risk_level,
                coerced_to="critical",
            )
            self.risk_level = RiskTier.CRITICAL.value

    @property
    def tier(self) -> RiskTier:
        return RiskTier(self.risk_level)

    def to_api_format(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    """Central registry for all tools available to the agent."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition, *, allow_override: bool = False) -> None:
        """Register a tool, blocking accidental name collisions by default."""
        existing = self._tools.get(tool.name)
        if existing is not None and not allow_override:
            raise ValueError(
                f"Tool '{tool.name}' is already registered. "
                "Use allow_override=True for an explicit replacement."
            )
        self._tools[tool.name] = tool
        logger.debug(
            "tool_registry.registered",
            name=tool.name,
            risk_level=tool.risk_level,
            execution=tool.execution,
        )

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def get_api_tools(
        self,
        names: Optional[Iterable[str]] = None,
        categories: Optional[list[str]] = None,
    ) -> list[dict[str, Any]]:
        """
        Generate the tools array for a model call.

        ``names`` restricts the set (the memory-flush turn only sees memory
        and state tools); ``categories`` filters by category.
        """
        wanted = set(names) if names is not None else None
        tools = []
        for tool in self._tools.values():
            if not tool.enabled:
                continue
            if wanted is not None and tool.name not in wanted:
                continue
            if categories and tool.category not in categories:
                continue
            tools.append(tool.to_api_format())
        return tools

    def names(self, category: Optional[str] = None) -> list[str]:
        return [
            t.name for t in self._tools.values()
            if t.enabled and (category is None or t.category == category)
        ]

    def list_tools(self) -> list[dict[str, Any]]:
        return [
            {
                "name": tool.name,
                "category": tool.category,
                "risk_level": tool.risk_level,
                "execution": tool.execution,
                "enabled": tool.enabled,
            }
            for tool in self._tools.values()
        ]

    @property
    def count(self) -> int:
        return len(self._tools)
