"""Mock provider: deterministic responses for local runs and tests."""

from __future__ import annotations

import json
import re
import time

from .base import BaseProvider, ProviderResult

CLASSIFY_MARKER = "TASK: classify_document"
EXTRACT_MARKER = "TASK: extract_fields"

_KEY_VALUE_RE = re.compile(r"^\s*([a-z_]+)\s*:\s*(.+?)\s*$", re.MULTILINE)


def _mock_classification(prompt: str) -> dict:
    # Only the document part; the instructions list every type name.
    lowered = prompt.split("Filename:", 1)[-1].lower()
    if "statement" in lowered:
        doc_type = "bank_statement"
    elif "invoice" in lowered:
        doc_type = "purchase_invoice"
    else:
        doc_type = "receipt"
    return {"document_type": doc_type, "confidence": 0.9, "language": "en", "warnings": []}


def _mock_fields(prompt: str) -> dict:
    # Echo "field_name: value" lines from the document content block.
    content = prompt.split("Document content:", 1)[-1]
    fields = [
        {"field_name": name, "value": value, "confidence": 0.9, "bounding_box": None}
        for name, value in _KEY_VALUE_RE.findall(content)
    ]
    return {"fields": fields}


class MockProvider(BaseProvider):
    name = "mock"

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
        t0 = time.monotonic()
        if CLASSIFY_MARKER in prompt:
            payload = _mock_classification(prompt)
        elif EXTRACT_MARKER in prompt:
            payload = _mock_fields(prompt)
        else:
            payload = {}
        text = json.dumps(payload)
        elapsed = (time.monotonic() - t0) * 1000
        return ProviderResult(
            raw_text=text,
            model=model or "mock-v1",
            provider=self.name,
            prompt_tokens=len(prompt.split()),
            completion_tokens=len(text.split()),
            latency_ms=round(elapsed, 2),
        )
