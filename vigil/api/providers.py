"""
Model providers — the opaque request/response boundary.

The rest of the runtime speaks ``ModelRequest`` / ``ModelResponse`` and
never sees an SDK type. A provider receives the credential to use for each
call from the router; it holds no health state of its own. SDK exceptions
are mapped onto the provider error taxonomy in ``vigil.errors`` so the
router can decide between retry, rotation and propagation.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

import aiohttp
import anthropic
import structlog

from vigil.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderRequestError,
    ProviderTransientError,
)
from vigil.types import AuthProfile, ToolCall

logger = structlog.get_logger(__name__)

StreamCallback = Callable[[str], Any]

CLAUDE_CODE_OAUTH_PREFIX = "sk-ant-oat"
CLAUDE_CODE_OAUTH_BETA_HEADER = "oauth-2025-04-20"


@dataclass
class ModelRequest:
    """What the loop asks of a model, independent of provider."""
    system: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] = field(default_factory=list)
    max_tokens: Optional[int] = None


@dataclass
class ModelResponse:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: Optional[str] = None
    model: str = ""
    profile_id: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


class ModelProvider(Protocol):
    name: str

    async def complete(
        self,
        request: ModelRequest,
        *,
        model: str,
        profile: AuthProfile,
        on_stream: Optional[StreamCallback] = None,
    ) -> ModelResponse:
        ...

    async def refresh(self, profile: AuthProfile) -> Optional[AuthProfile]:
        """Return a profile with renewed credentials, or None when refresh is impossible."""
        ...


def _retry_after_seconds(error: anthropic.APIStatusError) -> Optional[float]:
    response = getattr(error, "response", None)
    if response is None:
        return None
    try:
        value = response.headers.get("retry-after")
        return float(value) if value is not None else None
    except (TypeError, ValueError, AttributeError):
        return None


def map_anthropic_error(error: Exception) -> ProviderError:
    """Translate SDK/network exceptions into the provider error taxonomy."""
    if isinstance(error, ProviderError):
        return error
    if isinstance(error, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
        return ProviderAuthError(str(error), status_code=getattr(error, "status_code", 401))
    if isinstance(error, anthropic.RateLimitError):
        return ProviderRateLimitError(str(error), retry_after=_retry_after_seconds(error))
    if isinstance(error, anthropic.APIStatusError):
        status = error.status_code
        if status in (401, 403):
            return ProviderAuthError(str(error), status_code=status)
        if status == 429:
            return ProviderRateLimitError(str(error), retry_after=_retry_after_seconds(error))
        if status >= 500:
            return ProviderTransientError(str(error), status_code=status)
        return ProviderRequestError(str(error), status_code=status)
    if isinstance(error, (anthropic.APIConnectionError, anthropic.APITimeoutError)):
        return ProviderTransientError(str(error))
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)):
        return ProviderTransientError(f"{type(error).__name__}: {error}")
    return ProviderRequestError(f"{type(error).__name__}: {error}")


class AnthropicProvider:
    """Claude via the anthropic SDK's streaming Messages API."""

    name = "anthropic"

    def __init__(
        self,
        *,
        max_tokens: int = 8192,
        request_timeout_seconds: float = 120.0,
        oauth_token_url: str = "",
        oauth_client_id: str = "",
    ):
        self._max_tokens = max_tokens
        self._timeout = request_timeout_seconds
        self._oauth_token_url = oauth_token_url
        self._oauth_client_id = oauth_client_id
        self._clients: dict[str, anthropic.AsyncAnthropic] = {}

    def _client_for(self, profile: AuthProfile) -> anthropic.AsyncAnthropic:
        credential = profile.credential
        if not credential:
            raise ProviderAuthError(f"profile '{profile.profile_id}' has no credential", status_code=401)
        client = self._clients.get(credential)
        if client is not None:
            return client
        if profile.api_key:
            client = anthropic.AsyncAnthropic(api_key=profile.api_key, max_retries=0)
        else:
            kwargs: dict[str, Any] = {"auth_token": profile.oauth_token, "max_retries": 0}
            if profile.oauth_token and profile.oauth_token.startswith(CLAUDE_CODE_OAUTH_PREFIX):
                kwargs["default_headers"] = {"anthropic-beta": CLAUDE_CODE_OAUTH_BETA_HEADER}
            client = anthropic.AsyncAnthropic(**kwargs)
        self._clients[credential] = client
        return client

    def forget(self, profile: AuthProfile) -> None:
        """Drop the cached client for a credential that has been replaced."""
        if profile.credential:
            self._clients.pop(profile.credential, None)

    async def complete(
        self,
        request: ModelRequest,
        *,
        model: str,
        profile: AuthProfile,
        on_stream: Optional[StreamCallback] = None,
    ) -> ModelResponse:
        client = self._client_for(profile)
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": request.max_tokens or self._max_tokens,
            "system": request.system,
            "messages": request.messages,
        }
        if request.tools:
            kwargs["tools"] = request.tools

        async def _stream() -> anthropic.types.Message:
            async with client.messages.stream(**kwargs) as stream:
                async for event in stream:
                    if on_stream is not None and event.type == "text" and event.text:
                        maybe = on_stream(event.text)
                        if asyncio.iscoroutine(maybe):
                            await maybe
                return await stream.get_final_message()

        start = time.monotonic()
        try:
            message = await asyncio.wait_for(_stream(), timeout=self._timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            mapped = map_anthropic_error(e)
            logger.warning(
                "anthropic_provider.call_failed",
                model=model,
                profile_id=profile.profile_id,
                error_type=type(mapped).__name__,
                status=mapped.status_code,
            )
            raise mapped from e

        text_parts: list[str] = []
        calls: list[ToolCall] = []
        for block in message.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                calls.append(ToolCall(
                    call_id=block.id,
                    name=block.name,
                    arguments=dict(block.input or {}),
                    isolation=_isolation_hint(block.input),
                ))
        logger.debug(
            "anthropic_provider.call_complete",
            model=model,
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
            elapsed_seconds=round(time.monotonic() - start, 2),
            stop_reason=message.stop_reason,
            tool_calls=len(calls),
        )
        return ModelResponse(
            text="".join(text_parts),
            tool_calls=calls,
            stop_reason=message.stop_reason,
            model=model,
            profile_id=profile.profile_id,
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
        )

    async def refresh(self, profile: AuthProfile) -> Optional[AuthProfile]:
        """Exchange the refresh token for a new access token (OAuth profiles only)."""
        if not profile.refresh_token or not self._oauth_client_id or not self._oauth_token_url:
            return None
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": profile.refresh_token,
            "client_id": self._oauth_client_id,
        }
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self._oauth_token_url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=30),
                ) as resp:
                    if resp.status != 200:
                        logger.warning(
                            "anthropic_provider.refresh_rejected",
                            profile_id=profile.profile_id,
                            status=resp.status,
                        )
                        return None
                    data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning("anthropic_provider.refresh_failed", profile_id=profile.profile_id, error=str(e))
            return None

        if not isinstance(data, dict):
            logger.warning(
                "anthropic_provider.refresh_malformed",
                profile_id=profile.profile_id,
                body_type=type(data).__name__,
            )
            return None
        access = data.get("access_token")
        if not access or not isinstance(access, str):
            return None
        self.forget(profile)
        try:
            expires_in = float(data.get("expires_in", 3600))
        except (TypeError, ValueError):
            expires_in = 3600.0
        return profile.model_copy(update={
            "oauth_token": access,
            "refresh_token": data.get("refresh_token", profile.refresh_token),
            "expires_at": time.time() + expires_in,
        })


def _isolation_hint(arguments: Any) -> str:
    if isinstance(arguments, dict) and arguments.get("isolation") in ("host", "sandbox"):
        return arguments["isolation"]
    return "auto"
