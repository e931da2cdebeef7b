"""
Auth profile store — credentials and their health, persisted on disk.

The file is JSON: ``{"profiles": [AuthProfile, ...]}``, kept at mode 0600 and
rewritten atomically whenever the router changes a profile (health changes,
refreshed OAuth tokens). Profile order in the file is the rotation order
within a provider.

With no file present, a single ``anthropic:default`` profile is synthesized
from ANTHROPIC_API_KEY so a one-key install needs no profile file at all.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import structlog
from pydantic import ValidationError

from vigil.fsutil import atomic_write_json
from vigil.types import AuthProfile

logger = structlog.get_logger(__name__)

DEFAULT_PROFILE_ID = "anthropic:default"


class AuthProfileStore:
    """Ordered collection of AuthProfiles backed by a JSON file."""

    def __init__(self, path: Path, *, fallback_api_key: Optional[str] = None):
        self.path = path
        self._fallback_api_key = fallback_api_key
        self._profiles: dict[str, AuthProfile] = {}
        self._from_file = False

    def load(self) -> list[AuthProfile]:
        self._profiles.clear()
        self._from_file = False
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.error("auth_profiles.unreadable", path=str(self.path), error=str(e))
                data = {}
            entries = data.get("profiles", []) if isinstance(data, dict) else []
            for entry in entries:
                try:
                    profile = AuthProfile.model_validate(entry)
                except ValidationError as e:
                    logger.warning("auth_profiles.invalid_entry", error=str(e))
                    continue
                self._profiles[profile.profile_id] = profile
            self._from_file = True

        if not self._profiles and self._fallback_api_key:
            self._profiles[DEFAULT_PROFILE_ID] = AuthProfile(
                profile_id=DEFAULT_PROFILE_ID,
                provider="anthropic",
                api_key=self._fallback_api_key,
            )

        logger.info(
            "auth_profiles.loaded",
            count=len(self._profiles),
            from_file=self._from_file,
            providers=sorted({p.provider for p in self._profiles.values()}),
        )
        return self.all()

    def all(self) -> list[AuthProfile]:
        return list(self._profiles.values())

    def get(self, profile_id: str) -> Optional[AuthProfile]:
        return self._profiles.get(profile_id)

    def for_provider(self, provider: str) -> list[AuthProfile]:
        return [p for p in self._profiles.values() if p.provider == provider]

    def update(self, profile: AuthProfile, *, persist: bool = True) -> None:
        """Replace a profile in place (keeping its rotation position)."""
        self._profiles[profile.profile_id] = profile
        if persist:
            self.save()

    def save(self) -> None:
        if not self._from_file:
            # Env-derived profiles stay in memory; the key is not copied to disk.
            return
        payload = {"profiles": [p.model_dump(mode="json") for p in self._profiles.values()]}
        try:
            atomic_write_json(self.path, payload, mode=0o600)
        except OSError as e:
            # Health still applies in memory; only restart memory is lost.
            logger.error("auth_profiles.save_failed", path=str(self.path), error=str(e))
