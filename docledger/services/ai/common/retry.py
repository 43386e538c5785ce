"""Bounded-timeout calls with exponential backoff for the external AI service."""

from __future__ import annotations

import asyncio
import logging

import httpx

from docledger.core.errors import ExternalServiceError
from docledger.utils.backoff import compute_backoff

from .providers.base import ProviderResult
from .router import ResolvedConfig

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS
    return False


async def generate_with_retry(
    config: ResolvedConfig,
    prompt: str,
    *,
    system_prompt: str | None = None,
    image_url: str | None = None,
    operation: str,
) -> tuple[ProviderResult, int]:
    """Call the provider until it answers or attempts run out.

    Each attempt is bounded by ``config.timeout_seconds``. Transient failures
    (timeouts, transport errors, 408/429/5xx) are retried; anything else is
    raised immediately as ``ExternalServiceError``. Returns the result and the
    number of attempts used.
    """
    attempts = 0
    last_error: BaseException | None = None

    while attempts < config.max_attempts:
        attempts += 1
        try:
            result = await asyncio.wait_for(
                config.provider.generate(
                    prompt,
                    system_prompt=system_prompt,
                    image_url=image_url,
                    model=config.model,
                    temperature=config.temperature,
                    max_tokens=config.max_tokens,
                    timeout_seconds=config.timeout_seconds,
                ),
                timeout=config.timeout_seconds,
            )
            return result, attempts
        except Exception as exc:
            last_error = exc
            if not is_transient(exc):
                logger.warning("%s: provider %s failed permanently: %s", operation, config.provider.name, exc)
                raise ExternalServiceError(
                    f"{operation} failed: {exc.__class__.__name__}",
                    errors=[{"rule": "provider_error", "attempts": attempts}],
                ) from exc
            logger.warning(
                "%s: attempt %d/%d failed: %s", operation, attempts, config.max_attempts, exc.__class__.__name__
            )
            if attempts < config.max_attempts:
                await asyncio.sleep(compute_backoff(attempts, config.backoff_seconds))

    raise ExternalServiceError(
        f"{operation} failed after {attempts} attempts",
        errors=[{"rule": "retries_exhausted", "attempts": attempts}],
    ) from last_error
