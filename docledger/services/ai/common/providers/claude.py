"""Anthropic messages API, with the scan as a URL image block."""

from __future__ import annotations

from typing import Any

from .base import HttpJsonProvider


class ClaudeProvider(HttpJsonProvider):
    name = "claude"
    endpoint = "https://api.anthropic.com/v1/messages"
    default_model = "claude-3-5-haiku-20241022"

    def build_headers(self) -> dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }

    def build_body(
        self,
        prompt: str,
        *,
        system_prompt: str | None,
        image_url: str | None,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> dict[str, Any]:
        content: list[dict[str, Any]] = []
        if image_url:
            content.append({"type": "image", "source": {"type": "url", "url": image_url}})
        content.append({"type": "text", "text": prompt})

        body: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": content}],
        }
        if system_prompt:
            body["system"] = system_prompt
        return body

    def parse_response(self, data: dict[str, Any]) -> tuple[str, int, int]:
        text = "".join(block.get("text", "") for block in data.get("content", []) if block.get("type") == "text")
        usage = data.get("usage") or {}
        return text, usage.get("input_tokens", 0), usage.get("output_tokens", 0)
