"""Configuration management for mu-chat."""

from __future__ import annotations

import enum
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

_logger = logging.getLogger(__name__)

# Bounds applied when settings come from a config file.
TIMEOUT_MIN_MS = 5_000
TIMEOUT_MAX_MS = 180_000
RETRY_MIN = 0
RETRY_MAX = 3

# The CLI agent runtime is always launched through this command.
ACP_COMMAND: tuple[str, ...] = ("codex", "app-server")


class ProviderKind(str, enum.Enum):
    OPENAI = "openai-compatible"
    ANTHROPIC = "anthropic"
    CLI_AGENT = "cli-agent"
    SDK_AGENT = "sdk-agent"

    @property
    def is_agent(self) -> bool:
        return self in (ProviderKind.CLI_AGENT, ProviderKind.SDK_AGENT)


_KIND_ALIASES = {
    "openai": ProviderKind.OPENAI,
    "acp": ProviderKind.CLI_AGENT,
    "claude-agent": ProviderKind.SDK_AGENT,
}


def parse_api_keys(material: str) -> list[str]:
    """Split raw key material into distinct keys, in first-seen order."""
    keys: list[str] = []
    for raw in material.replace("\r", "\n").replace(",", "\n").split("\n"):
        token = raw.strip().strip("\"'").strip()
        if token and token not in keys:
            keys.append(token)
    return keys


class ProviderSettings(BaseModel):
    """Immutable per-run snapshot of one provider's settings."""

    model_config = ConfigDict(frozen=True)

    provider_kind: ProviderKind = ProviderKind.OPENAI
    base_url: str = ""
    api_key_material: str = ""
    model: str = ""
    temperature: float = 0.4
    max_tokens: int = 2048
    request_timeout_ms: int = Field(default=60_000, ge=0)  # 0 disables the guard
    retry_count: int = Field(default=1, ge=0)
    debug_logging_enabled: bool = False
    working_directory: str = ""
    system_prompt: str = ""

    @field_validator("provider_kind", mode="before")
    @classmethod
    def _accept_legacy_kind(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _KIND_ALIASES.get(value.strip().lower(), value.strip().lower())
        return value

    @property
    def api_keys(self) -> list[str]:
        return parse_api_keys(self.api_key_material)

    @property
    def normalized_base_url(self) -> str:
        return self.base_url.strip().rstrip("/")

    @property
    def cwd(self) -> str:
        path = self.working_directory.strip()
        return os.path.expanduser(path) if path else os.getcwd()


def is_configured(settings: ProviderSettings) -> bool:
    """Whether *settings* may be dispatched to."""
    if settings.provider_kind is ProviderKind.CLI_AGENT:
        return True
    if settings.provider_kind is ProviderKind.SDK_AGENT:
        return bool(settings.api_keys)
    return bool(
        settings.normalized_base_url
        and settings.api_keys
        and settings.model.strip()
    )


def acp_available(command: tuple[str, ...] = ACP_COMMAND) -> bool:
    return shutil.which(command[0]) is not None


def clamp_settings(settings: ProviderSettings) -> ProviderSettings:
    """Apply the user-facing bounds to timeout and retry count."""
    timeout = settings.request_timeout_ms
    if timeout:
        timeout = max(TIMEOUT_MIN_MS, min(timeout, TIMEOUT_MAX_MS))
    retries = max(RETRY_MIN, min(settings.retry_count, RETRY_MAX))
    return settings.model_copy(
        update={"request_timeout_ms": timeout, "retry_count": retries},
    )


class AppConfig(BaseModel):
    active: str = "default"
    providers: dict[str, ProviderSettings] = Field(
        default_factory=lambda: {"default": ProviderSettings()}
    )
    system_prompt: str = "You are a precise and pragmatic coding assistant."
    trace_path: str | None = None

    def provider(self, name: str | None = None) -> ProviderSettings:
        key = name or self.active
        if key not in self.providers:
            raise KeyError(f"Unknown provider profile: {key}")
        return self.providers[key]


CONFIG_FILENAME = "mu_chat.yaml"


_ENV_REF = re.compile(r"\$\{(\w+)\}|^\$(\w+)$")


def _expand_keys(material: str) -> str:
    """Expand ${ENV} references per key; keys naming an unset variable are dropped."""
    keys: list[str] = []
    for key in parse_api_keys(material):
        if "$" not in key:
            keys.append(key)
            continue
        expanded = os.path.expandvars(key)
        unresolved = _ENV_REF.search(expanded)
        if unresolved:
            _logger.warning(
                "API key references unset environment variable %s; ignoring it",
                unresolved.group(1) or unresolved.group(2),
            )
            continue
        # One variable may hold several keys.
        keys.extend(parse_api_keys(expanded))
    return "\n".join(keys)


def _parse_provider(raw: dict[str, Any]) -> ProviderSettings:
    data = dict(raw)
    if "api_key" in data:
        data["api_key_material"] = data.pop("api_key")
    material = data.get("api_key_material")
    if isinstance(material, list):
        data["api_key_material"] = "\n".join(str(k) for k in material)
    if isinstance(data.get("api_key_material"), str):
        data["api_key_material"] = _expand_keys(data["api_key_material"])
    return clamp_settings(ProviderSettings.model_validate(data))


def load_config(
    config_path: str | Path | None = None,
) -> tuple[AppConfig, Path | None]:
    """Load configuration from YAML file.

    Returns (config, resolved_path).  *resolved_path* is ``None`` when
    no file was found and built-in defaults are used.

    Search order (first match wins):
      1. Explicit ``--config`` path
      2. Current working directory: ``./mu_chat.yaml``
      3. User config dir: ``~/.mu_chat/mu_chat.yaml``
    """
    if config_path is None:
        for d in (Path.cwd(), Path.home() / ".mu_chat"):
            p = d / CONFIG_FILENAME
            if p.exists():
                config_path = p
                break

    resolved: Path | None = Path(config_path) if config_path else None
    if resolved and resolved.exists():
        with open(resolved) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        providers = {
            name: _parse_provider(praw or {})
            for name, praw in (raw.get("providers") or {}).items()
        }
        config = AppConfig(
            active=raw.get("active", next(iter(providers), "default")),
            providers=providers or {"default": ProviderSettings()},
            system_prompt=raw.get("system_prompt", AppConfig().system_prompt),
            trace_path=raw.get("trace_path"),
        )
        return config, resolved.resolve()

    if config_path is not None:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    return AppConfig(), None
