"""
Credential/Model Router — failover across auth profiles and models.

For each agent there is an ordered fallback chain of (model, provider)
entries. For each entry the router walks the provider's auth profiles:

  1. A transient error (5xx, network) is retried on the same profile with
     jittered backoff. If retries run out it counts as a profile failure.
  2. An auth (401/403) or rate-limit (429) failure puts the profile into
     ``cooling_down``. The cooldown doubles per consecutive failure up to a
     ceiling. Repeated auth failures mark the profile ``exhausted``.
  3. The next healthy profile of the same provider is tried. Only when none
     remain does the router move to the next chain entry.
  4. A request error (400) propagates at once; no profile or model can fix it.

A cooling profile returns to ``healthy`` by itself once its cooldown ends.
Every health mutation happens under that profile's lock and is written back
to the profile store. A successful (model, profile) pair is pinned to the
session so the next call in that conversation starts there.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from vigil.api.profiles import AuthProfileStore
from vigil.api.providers import ModelProvider, ModelRequest, ModelResponse, StreamCallback
from vigil.config import ProviderConfig
from vigil.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderRequestError,
    RouterExhaustedError,
)
from vigil.events import EventBus, ProfileHealthChangedEvent
from vigil.harness.retry import RetryConfig, with_retries
from vigil.types import AuthProfile, ChainEntry, ModelFallbackChain, ProfileHealth

logger = structlog.get_logger(__name__)

_MAX_PINS = 1024


@dataclass(frozen=True)
class CallHandle:
    """The (model, profile) pair a call would use right now."""
    agent_id: str
    model: str
    provider: str
    profile_id: str


class CredentialRouter:
    """Chooses credentials and models, and owns every AuthProfile mutation."""

    def __init__(
        self,
        config: ProviderConfig,
        profiles: AuthProfileStore,
        providers: dict[str, ModelProvider],
        *,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._profiles = profiles
        self._providers = providers
        self._event_bus = event_bus
        self._clock = clock
        self._retry = RetryConfig.from_provider_config(config)
        self._chains = self._build_chains(config)
        self._pins: OrderedDict[str, tuple[str, str]] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}
        self._total_calls = 0
        self._total_failovers = 0

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------

    def _build_chains(self, config: ProviderConfig) -> dict[str, ModelFallbackChain]:
        chains: dict[str, ModelFallbackChain] = {}
        for agent_id, entries in config.get_fallback_chains().items():
            parsed = []
            for raw in entries:
                model = raw.get("model")
                if not model:
                    logger.warning("router.chain_entry_without_model", agent_id=agent_id)
                    continue
                parsed.append(ChainEntry(
                    model=str(model),
                    provider=str(raw.get("provider", "anthropic")),
                    preferred_profile=raw.get("profile") or raw.get("preferred_profile"),
                ))
            if parsed:
                chains[agent_id] = ModelFallbackChain(agent_id=agent_id, entries=parsed)
        return chains

    def chain_for(self, agent_id: Optional[str]) -> ModelFallbackChain:
        agent_id = agent_id or self._config.default_agent_id
        chain = self._chains.get(agent_id) or self._chains.get(self._config.default_agent_id)
        if chain is not None:
            return chain
        return ModelFallbackChain(
            agent_id=agent_id,
            entries=[ChainEntry(model=self._config.default_model, provider="anthropic")],
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _lock(self, profile_id: str) -> asyncio.Lock:
        lock = self._locks.get(profile_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[profile_id] = lock
        return lock

    def _healed(self, profile: AuthProfile) -> AuthProfile:
        """Return the profile with an expired cooldown turned back into healthy."""
        if (
            profile.health is ProfileHealth.COOLING_DOWN
            and profile.cooldown_until is not None
            and profile.cooldown_until <= self._clock()
        ):
            profile = profile.model_copy(update={
                "health": ProfileHealth.HEALTHY,
                "cooldown_until": None,
            })
            self._profiles.update(profile)
            logger.info("router.profile_healed", profile_id=profile.profile_id)
            self._emit_health(profile)
        return profile

    def _emit_health(self, profile: AuthProfile) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(ProfileHealthChangedEvent(
                profile_id=profile.profile_id,
                provider=profile.provider,
                health=profile.health.value,
                cooldown_until=profile.cooldown_until,
            ))

    def _healthy_profiles(self, entry: ChainEntry, prefer: Optional[str]) -> list[AuthProfile]:
        candidates = []
        for profile in self._profiles.for_provider(entry.provider):
            profile = self._healed(profile)
            if profile.health is ProfileHealth.HEALTHY and profile.credential:
                candidates.append(profile)
        for wanted in (entry.preferred_profile, prefer):
            if not wanted:
                continue
            for i, p in enumerate(candidates):
                if p.profile_id == wanted:
                    candidates.insert(0, candidates.pop(i))
                    break
        return candidates

    async def _mark_failure(self, profile_id: str, error: ProviderError) -> None:
        async with self._lock(profile_id):
            current = self._profiles.get(profile_id)
            if current is None:
                return
            failures = current.failure_count + 1
            now = self._clock()
            if isinstance(error, ProviderAuthError) and failures >= self._config.profile_exhaust_after:
                health, cooldown_until = ProfileHealth.EXHAUSTED, None
            else:
                cooldown = min(
                    self._config.profile_max_cooldown_seconds,
                    self._config.profile_cooldown_seconds * (2 ** (failures - 1)),
                )
                retry_after = getattr(error, "retry_after", None)
                if isinstance(error, ProviderRateLimitError) and retry_after:
                    cooldown = max(cooldown, min(retry_after, self._config.profile_max_cooldown_seconds))
                health, cooldown_until = ProfileHealth.COOLING_DOWN, now + cooldown
            updated = current.model_copy(update={
                "health": health,
                "cooldown_until": cooldown_until,
                "failure_count": failures,
                "last_error": f"{type(error).__name__}: {str(error)[:200]}",
                "last_used_at": now,
            })
            self._profiles.update(updated)
        logger.warning(
            "router.profile_failed",
            profile_id=profile_id,
            health=health.value,
            failure_count=failures,
            cooldown_until=cooldown_until,
            error_type=type(error).__name__,
        )
        self._emit_health(updated)

    async def _mark_success(self, profile_id: str) -> None:
        async with self._lock(profile_id):
            current = self._profiles.get(profile_id)
            if current is None:
                return
            recovered = current.failure_count > 0 or current.health is not ProfileHealth.HEALTHY
            updated = current.model_copy(update={
                "health": ProfileHealth.HEALTHY,
                "cooldown_until": None,
                "failure_count": 0,
                "last_used_at": self._clock(),
            })
            # Only health transitions are worth a disk write.
            self._profiles.update(updated, persist=recovered)
        if recovered:
            self._emit_health(updated)

    async def _ensure_fresh(self, profile: AuthProfile, provider: ModelProvider) -> AuthProfile:
        """Refresh an OAuth token that is about to expire, writing it back in place."""
        if not profile.oauth_token or profile.expires_at is None:
            return profile
        if profile.expires_at - self._clock() > self._config.token_refresh_margin_seconds:
            return profile
        async with self._lock(profile.profile_id):
            current = self._profiles.get(profile.profile_id) or profile
            # Another call may have refreshed it while we waited.
            if (
                current.expires_at is not None
                and current.expires_at - self._clock() > self._config.token_refresh_margin_seconds
            ):
                return current
            refreshed = await provider.refresh(current)
            if refreshed is None:
                logger.warning("router.token_refresh_unavailable", profile_id=current.profile_id)
                return current
            self._profiles.update(refreshed)
        logger.info("router.token_refreshed", profile_id=refreshed.profile_id, expires_at=refreshed.expires_at)
        return refreshed

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(self, agent_id: Optional[str], session_key: Optional[str] = None) -> CallHandle:
        """The (model, profile) pair the next call would start with."""
        chain = self.chain_for(agent_id)
        pinned = self._pins.get(session_key) if session_key else None
        for entry in self._ordered_entries(chain, pinned):
            prefer = pinned[1] if pinned and pinned[0] == entry.model else None
            candidates = self._healthy_profiles(entry, prefer)
            if candidates:
                return CallHandle(chain.agent_id, entry.model, entry.provider, candidates[0].profile_id)
        raise RouterExhaustedError(chain.agent_id, ["no healthy profile for any chain entry"])

    def _ordered_entries(
        self, chain: ModelFallbackChain, pinned: Optional[tuple[str, str]]
    ) -> list[ChainEntry]:
        entries = list(chain.entries)
        if pinned:
            for i, entry in enumerate(entries):
                if entry.model == pinned[0]:
                    entries.insert(0, entries.pop(i))
                    break
        return entries

    async def complete(
        self,
        agent_id: Optional[str],
        session_key: Optional[str],
        request: ModelRequest,
        on_stream: Optional[StreamCallback] = None,
    ) -> ModelResponse:
        """Run the failover cascade until one (model, profile) pair answers."""
        chain = self.chain_for(agent_id)
        pinned = self._pins.get(session_key) if session_key else None
        attempts: list[str] = []
        self._total_calls += 1

        for entry in self._ordered_entries(chain, pinned):
            provider = self._providers.get(entry.provider)
            if provider is None:
                attempts.append(f"{entry.model}: no provider '{entry.provider}'")
                continue
            prefer = pinned[1] if pinned and pinned[0] == entry.model else None
            tried: set[str] = set()
            while True:
                candidates = [
                    p for p in self._healthy_profiles(entry, prefer)
                    if p.profile_id not in tried
                ]
                if not candidates:
                    break
                profile = await self._ensure_fresh(candidates[0], provider)
                tried.add(profile.profile_id)

                async def _call(
                    provider: ModelProvider = provider,
                    model: str = entry.model,
                    profile: AuthProfile = profile,
                ) -> ModelResponse:
                    return await provider.complete(
                        request, model=model, profile=profile, on_stream=on_stream
                    )

                try:
                    response = await with_retries(_call, self._retry)
                except ProviderRequestError:
                    raise
                except ProviderError as e:
                    attempts.append(f"{entry.model}/{profile.profile_id}: {type(e).__name__}")
                    self._total_failovers += 1
                    await self._mark_failure(profile.profile_id, e)
                    continue

                await self._mark_success(profile.profile_id)
                if session_key:
                    self._pin(session_key, entry.model, profile.profile_id)
                if attempts:
                    logger.info(
                        "router.failover_succeeded",
                        agent_id=chain.agent_id,
                        model=entry.model,
                        profile_id=profile.profile_id,
                        failed_attempts=len(attempts),
                    )
                return response

        logger.error("router.exhausted", agent_id=chain.agent_id, attempts=attempts)
        raise RouterExhaustedError(chain.agent_id, attempts)

    def _pin(self, session_key: str, model: str, profile_id: str) -> None:
        self._pins[session_key] = (model, profile_id)
        self._pins.move_to_end(session_key)
        while len(self._pins) > _MAX_PINS:
            self._pins.popitem(last=False)

    def unpin(self, session_key: str) -> None:
        self._pins.pop(session_key, None)

    def pinned(self, session_key: str) -> Optional[tuple[str, str]]:
        return self._pins.get(session_key)

    def status(self) -> dict[str, Any]:
        return {
            "profiles": [self._healed(p).public_view() for p in self._profiles.all()],
            "chains": {
                agent_id: [e.model_dump() for e in chain.entries]
                for agent_id, chain in self._chains.items()
            },
            "default_model": self._config.default_model,
            "pinned_sessions": len(self._pins),
            "total_calls": self._total_calls,
            "total_failovers": self._total_failovers,
        }
