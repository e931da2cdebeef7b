"""Tool system — registry, in-process executor, and the broker in front of them."""
from vigil.tools.executor import ToolContext, ToolExecutor
from vigil.tools.registry import ToolDefinition, ToolRegistry

__all__ = ["ToolRegistry", "ToolDefinition", "ToolExecutor", "ToolContext"]
