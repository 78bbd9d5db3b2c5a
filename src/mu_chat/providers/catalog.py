"""Model listing and connection checks, outside the streaming path."""

from __future__ import annotations

import asyncio
import importlib.util
import logging

import httpx

from mu_chat.config import ACP_COMMAND, ProviderKind, ProviderSettings, is_configured
from mu_chat.errors import MuChatError
from mu_chat.providers.acp import check_acp_runtime, list_acp_models
from mu_chat.providers.anthropic import ANTHROPIC_VERSION, resolve_anthropic_endpoint
from mu_chat.providers.base import extract_model_ids
from mu_chat.types import ConnectionTestResult, ModelListResult

_logger = logging.getLogger(__name__)

_LIST_TIMEOUT = httpx.Timeout(30.0, connect=10.0)
_BODY_PREVIEW_CHARS = 160


def _listing_attempts(settings: ProviderSettings, api_key: str) -> list[tuple[str, dict[str, str]]]:
    """(url, headers) pairs to try in order."""
    base = settings.normalized_base_url
    bearer = {"Authorization": f"Bearer {api_key}"}
    if settings.provider_kind is not ProviderKind.ANTHROPIC:
        return [(f"{base}/models", bearer)]
    native = {"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION}
    versioned = resolve_anthropic_endpoint(base, "models")
    # Anthropic-compatible gateways differ in path and auth header.
    return [
        (versioned, native),
        (f"{base}/models", native),
        (versioned, bearer),
        (f"{base}/models", bearer),
    ]


async def _list_http_models(
    settings: ProviderSettings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ModelListResult:
    keys = settings.api_keys
    if not settings.normalized_base_url or not keys:
        return ModelListResult(ok=False, message="Please fill Base URL and API key.")

    last_failure = "Unknown error."
    async with httpx.AsyncClient(transport=transport, timeout=_LIST_TIMEOUT) as client:
        for url, headers in _listing_attempts(settings, keys[0]):
            try:
                resp = await client.get(url, headers=headers)
            except httpx.HTTPError as e:
                last_failure = str(e) or "Network request failed."
                _logger.debug("Model listing via %s failed: %s", url, last_failure)
                continue
            if resp.is_error:
                body = resp.text[:_BODY_PREVIEW_CHARS]
                last_failure = f"HTTP {resp.status_code}" + (f": {body}" if body else "")
                _logger.debug("Model listing via %s failed: %s", url, last_failure)
                continue
            try:
                payload = resp.json()
            except ValueError:
                payload = None
            models = extract_model_ids(payload)
            return ModelListResult(
                ok=True,
                message=(
                    f"Fetched {len(models)} model(s)."
                    if models
                    else "Connected, but provider returned no model list."
                ),
                models=models,
            )

    return ModelListResult(ok=False, message=f"Failed to fetch models. {last_failure}")


def sdk_available() -> bool:
    return importlib.util.find_spec("claude_agent_sdk") is not None


async def list_models(
    settings: ProviderSettings,
    transport: httpx.AsyncBaseTransport | None = None,
    agent_command: tuple[str, ...] = ACP_COMMAND,
) -> ModelListResult:
    """List the models the configured provider offers."""
    kind = settings.provider_kind
    if kind is ProviderKind.CLI_AGENT:
        try:
            models = await list_acp_models(agent_command)
        except asyncio.TimeoutError:
            return ModelListResult(ok=False, message="Agent runtime did not answer model/list")
        except MuChatError as e:
            return ModelListResult(ok=False, message=f"Failed to fetch models. {e}")
        return ModelListResult(
            ok=True,
            message=f"Fetched {len(models)} model(s)." if models else "Agent runtime reported no models.",
            models=models,
        )
    if kind is ProviderKind.SDK_AGENT:
        # The SDK has no listing call; the configured model is all we know.
        models = [settings.model.strip()] if settings.model.strip() else []
        return ModelListResult(ok=True, message="Agent SDK does not list models.", models=models)
    return await _list_http_models(settings, transport)


async def check_connection(
    settings: ProviderSettings,
    transport: httpx.AsyncBaseTransport | None = None,
    agent_command: tuple[str, ...] = ACP_COMMAND,
) -> ConnectionTestResult:
    """Check that *settings* can reach its provider."""
    kind = settings.provider_kind
    if kind is ProviderKind.CLI_AGENT:
        return await check_acp_runtime(agent_command)
    if kind is ProviderKind.SDK_AGENT:
        if not is_configured(settings):
            return ConnectionTestResult(ok=False, message="Please fill the API key.")
        if not sdk_available():
            return ConnectionTestResult(
                ok=False, message="claude-agent-sdk is not installed (pip install mu-chat[agent]).",
            )
        return ConnectionTestResult(ok=True, message="Agent SDK is available.")

    if not is_configured(settings):
        return ConnectionTestResult(ok=False, message="Please fill Base URL, API key, and model.")
    result = await _list_http_models(settings, transport)
    if not result.ok:
        return ConnectionTestResult(ok=False, message=result.message)
    return ConnectionTestResult(ok=True, message="Connection succeeded.")

