"""AI Router: resolves provider + model for a scope from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from docledger.core.config import get_settings

from .providers import BaseProvider, get_provider

logger = logging.getLogger(__name__)

SCOPES = ("classify", "extract")


@dataclass(frozen=True)
class ResolvedConfig:
    """Final resolved provider + model and call limits for one scope."""

    provider: BaseProvider
    model: str
    temperature: float
    max_tokens: int
    timeout_seconds: float
    max_attempts: int
    backoff_seconds: float


def resolve(scope: str) -> ResolvedConfig:
    """Resolve provider + model for *scope* (``classify`` or ``extract``).

    ``AI_CLASSIFY_PROVIDER`` / ``AI_EXTRACT_PROVIDER`` pick the provider; an
    empty value raises ``ExternalServiceError`` (503).
    """
    if scope not in SCOPES:
        raise ValueError(f"unknown AI scope {scope!r}")
    settings = get_settings()

    if scope == "classify":
        provider_name = settings.ai_classify_provider
        model = settings.ai_classify_model
    else:
        provider_name = settings.ai_extract_provider
        model = settings.ai_extract_model

    provider = get_provider(provider_name)
    logger.debug("AI scope=%s resolved provider=%s model=%r", scope, provider.name, model)

    return ResolvedConfig(
        provider=provider,
        model=model.strip(),
        temperature=settings.ai_temperature,
        max_tokens=settings.ai_max_tokens,
        timeout_seconds=settings.ai_timeout_seconds,
        max_attempts=settings.external_retry_attempts,
        backoff_seconds=settings.external_retry_backoff_seconds,
    )
