"""OpenAI chat completions in JSON mode, with the scan as an image part."""

from __future__ import annotations

from typing import Any

from .base import HttpJsonProvider


class OpenAIProvider(HttpJsonProvider):
    name = "openai"
    endpoint = "https://api.openai.com/v1/chat/completions"
    default_model = "gpt-4o-mini-2024-07-18"

    def build_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
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
        user_content: str | list[dict[str, Any]] = prompt
        if image_url:
            user_content = [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
            ]

        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_content})

        return {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
            "messages": messages,
        }

    def parse_response(self, data: dict[str, Any]) -> tuple[str, int, int]:
        choices = data.get("choices") or [{}]
        text = (choices[0].get("message") or {}).get("content") or ""
        usage = data.get("usage") or {}
        return text, usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0)
