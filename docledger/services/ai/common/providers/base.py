"""Provider contract plus the shared HTTP plumbing for hosted models."""

from __future__ import annotations

import abc
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderResult:
    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


def scan_image_url(content_ref: str | None) -> str | None:
    """Return *content_ref* when a hosted model can fetch it directly."""
    if content_ref and content_ref.startswith(("https://", "http://")):
        return content_ref
    return None


class BaseProvider(abc.ABC):
    """Contract that every inference provider must implement.

    Providers raise on transport errors and non-2xx responses; retrying and
    timeout enforcement live in ``common.retry``. ``image_url`` points at the
    document scan when it is reachable over HTTP.
    """

    name: str = "base"

    @abc.abstractmethod
    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        image_url: str | None = None,
        model: str = "",
        temperature: float = 0.1,
        max_tokens: int = 1500,
        timeout_seconds: float = 20.0,
    ) -> ProviderResult:
        """Send *prompt* and return a ``ProviderResult``."""


class HttpJsonProvider(BaseProvider):
    """One POST per call; subclasses shape the request and read the answer."""

    endpoint: str = ""
    default_model: str = ""

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    @abc.abstractmethod
    def build_headers(self) -> dict[str, str]: ...

    @abc.abstractmethod
    def build_body(
        self,
        prompt: str,
        *,
        system_prompt: str | None,
        image_url: str | None,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> dict[str, Any]: ...

    @abc.abstractmethod
    def parse_response(self, data: dict[str, Any]) -> tuple[str, int, int]:
        """Return ``(text, prompt_tokens, completion_tokens)``."""

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        image_url: str | None = None,
        model: str = "",
        temperature: float = 0.1,
        max_tokens: int = 1500,
        timeout_seconds: float = 20.0,
    ) -> ProviderResult:
        model = model or self.default_model
        body = self.build_body(
            prompt,
            system_prompt=system_prompt,
            image_url=image_url,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        t0 = time.monotonic()
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(self.endpoint, headers=self.build_headers(), json=body)
            resp.raise_for_status()
            data = resp.json()
        elapsed = (time.monotonic() - t0) * 1000

        text, prompt_tokens, completion_tokens = self.parse_response(data)
        logger.debug("%s answered in %.0f ms (model=%s, scan=%s)", self.name, elapsed, model, bool(image_url))
        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=round(elapsed, 2),
        )
