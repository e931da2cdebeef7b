"""Agent harness — the loop, its context management, and its guard rails."""
from vigil.harness.retry import RetryConfig, with_retries
from vigil.harness.safety import PolicyDecision, ToolPolicy

__all__ = ["RetryConfig", "with_retries", "ToolPolicy", "PolicyDecision"]
