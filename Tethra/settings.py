"""Provider settings: credentials, enabled flags and configured model lists.

Read from the JSON settings file in the data directory; API keys missing from
the file are taken from the environment (``.env`` is loaded by Tethra.config).
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from Tethra.config import SETTINGS_PATH
from Tethra.services.providers.base import ProviderKind

logger = logging.getLogger(__name__)

CREDENTIAL_ENV_VARS: Dict[ProviderKind, tuple[str, ...]] = {
    ProviderKind.OPENAI: ("OPENAI_API_KEY",),
    ProviderKind.ANTHROPIC: ("ANTHROPIC_API_KEY",),
    ProviderKind.GEMINI: ("GEMINI_API_KEY", "GOOGLE_AI_API_KEY"),
    ProviderKind.OPENROUTER: ("OPENROUTER_API_KEY",),
    ProviderKind.GROQ: ("GROQ_API_KEY",),
    ProviderKind.DEEPSEEK: ("DEEPSEEK_API_KEY",),
}


class ProviderSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")
    api_key: Optional[str] = None
    enabled: Optional[bool] = None
    models: Optional[List[str]] = None
    base_url: Optional[str] = None


class AppSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")
    # Legacy single key; used for OpenAI when no provider-specific key is set
    api_key: Optional[str] = None
    providers: Dict[ProviderKind, ProviderSettings] = {}

    # An unknown provider entry is dropped on its own; it must not invalidate the other credentials
    @field_validator("providers", mode="before")
    @classmethod
    def _known_providers(cls, value):
        if not isinstance(value, dict):
            return value
        known = {kind.value for kind in ProviderKind}
        kept = {}
        for key, entry in value.items():
            name = key.value if isinstance(key, ProviderKind) else str(key).strip().lower()
            if name not in known:
                logger.warning("settings.provider.unknown: provider=%s ignored", key)
                continue
            kept[name] = entry
        return kept


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class Settings:
    """Settings collaborator consulted by the model router and the catalog."""

    def __init__(self, data: Optional[AppSettings] = None, env: Optional[Mapping[str, str]] = None):
        self.data = data or AppSettings()
        self._env = os.environ if env is None else env

    @classmethod
    def load(cls, path: Path = SETTINGS_PATH, env: Optional[Mapping[str, str]] = None) -> "Settings":
        if not path.exists():
            return cls(AppSettings(), env)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return cls(AppSettings.model_validate(raw), env)
        except (OSError, ValueError, ValidationError):
            logger.exception("settings.load.error: path=%s", path)
            return cls(AppSettings(), env)

    @classmethod
    def from_mapping(cls, raw: Mapping, env: Optional[Mapping[str, str]] = None) -> "Settings":
        return cls(AppSettings.model_validate(dict(raw)), env if env is not None else {})

    def _provider(self, kind: ProviderKind) -> ProviderSettings:
        return self.data.providers.get(kind) or ProviderSettings()

    def credential_for(self, kind: ProviderKind) -> Optional[str]:
        key = _clean(self._provider(kind).api_key)
        if key is None and kind is ProviderKind.OPENAI:
            key = _clean(self.data.api_key)
        if key is None:
            for var in CREDENTIAL_ENV_VARS.get(kind, ()):
                key = _clean(self._env.get(var))
                if key:
                    break
        return key

    def enabled(self, kind: ProviderKind) -> bool:
        flag = self._provider(kind).enabled
        return True if flag is None else flag

    def configured_models(self, kind: ProviderKind) -> Optional[List[str]]:
        models = self._provider(kind).models
        if models is None:
            return None
        return [m for m in (m.strip() for m in models) if m]

    def base_url_for(self, kind: ProviderKind) -> Optional[str]:
        return _clean(self._provider(kind).base_url)
