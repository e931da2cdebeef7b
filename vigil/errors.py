"""
Error taxonomy for the gateway.

Policy and execution errors never escape the tool broker; they become
ToolResults the model can read. Provider errors are consumed by the router's
failover cascade. Only the fatal classes here (persistence, router
exhaustion, address-in-use) are allowed to end a run or the process.
"""

from __future__ import annotations


class VigilError(Exception):
    """Base class for all gateway errors."""


class GatewayAddressInUseError(VigilError):
    """The control-plane address is already bound by another process."""

    def __init__(self, host: str, port: int) -> None:
        super().__init__(f"address already in use: {host}:{port}")
        self.host = host
        self.port = port


class SessionPersistenceError(VigilError):
    """A session write could not be made durable."""


class SessionQuarantinedError(VigilError):
    """The session is held after a fatal failure until an operator resets it."""


class SessionBusyError(VigilError):
    """Too many runs are already queued for one session key."""


class WorkspaceAccessError(VigilError):
    """A workspace field was written without the matching capability."""


class PolicyViolation(VigilError):
    """A tool call was refused by policy before execution."""


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderError(VigilError):
    """A model provider call failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """Credential rejected (401/403). Rotates the profile."""


class ProviderRateLimitError(ProviderError):
    """Rate or quota limit hit (429). Rotates the profile."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = 429,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class ProviderTransientError(ProviderError):
    """Server or network failure worth retrying on the same profile."""


class ProviderRequestError(ProviderError):
    """The request itself is invalid; retrying or rotating cannot help."""


class RouterExhaustedError(VigilError):
    """Every profile of every model in the fallback chain has failed."""

    def __init__(self, agent_id: str, attempts: list[str]) -> None:
        detail = ", ".join(attempts) if attempts else "no candidates"
        super().__init__(f"fallback chain exhausted for agent '{agent_id}': {detail}")
        self.agent_id = agent_id
        self.attempts = attempts
