"""Provider factory: returns the configured inference provider."""

from __future__ import annotations

import logging

from docledger.core.config import get_settings
from docledger.core.errors import ExternalServiceError

from .base import BaseProvider, ProviderResult
from .mock import MockProvider

logger = logging.getLogger(__name__)

__all__ = ["get_provider", "BaseProvider", "ProviderResult", "MockProvider"]


def _not_configured(name: str, reason: str) -> ExternalServiceError:
    logger.error("AI provider %r unavailable: %s", name, reason)
    return ExternalServiceError(
        f"AI provider {name!r} is not available: {reason}",
        errors=[{"rule": "provider_not_configured", "provider": name}],
        status_code=503,
    )


def get_provider(provider_name: str) -> BaseProvider:
    """Return a provider instance for *provider_name*.

    The mock is only used when named explicitly (``AI_*_PROVIDER=mock``). An
    empty name, a provider that is not allowlisted or one without an API key
    raises ``ExternalServiceError``; the core never answers with mock output in
    place of a configured service.
    """
    settings = get_settings()
    name = (provider_name or "").lower().strip()

    if not name:
        raise _not_configured("", "no provider configured for this scope")

    if name not in settings.ai_allowed_providers:
        raise _not_configured(name, "not in AI_ALLOWED_PROVIDERS")

    if name == "mock":
        return MockProvider()

    if name == "claude":
        if not settings.anthropic_api_key:
            raise _not_configured(name, "ANTHROPIC_API_KEY not set")
        from .claude import ClaudeProvider

        return ClaudeProvider(api_key=settings.anthropic_api_key)

    if name == "openai":
        if not settings.openai_api_key:
            raise _not_configured(name, "OPENAI_API_KEY not set")
        from .openai import OpenAIProvider

        return OpenAIProvider(api_key=settings.openai_api_key)

    raise _not_configured(name, "unknown provider")
