"""Document classification call against the external AI service."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from pydantic import ValidationError

from docledger.schemas.document import DocumentType

from ..common import router as ai_router
from ..common.json_tools import extract_json_object
from ..common.providers.base import ProviderResult, scan_image_url
from ..common.providers.mock import CLASSIFY_MARKER
from ..common.retry import generate_with_retry
from .contracts import AIClassificationResult

logger = logging.getLogger(__name__)

CLASSIFY_SYSTEM_PROMPT = (
    "You classify scanned financial documents for a bookkeeping pipeline. "
    "Answer with a single JSON object and nothing else."
)

CLASSIFY_PROMPT = """{marker}

Classify the document into exactly one of: {types}.

Return a JSON object with keys:
- document_type: one of the values above, or null if none applies
- confidence: number between 0.0 and 1.0
- language: ISO 639-1 code of the document language
- warnings: list of short strings describing quality problems
- reason: null, or one of "unsupported_language", "incomplete_image" when the
  document cannot be classified for that reason

Filename: {filename}
Content reference: {content_ref}

Document content:
{content}"""


@dataclass
class ClassificationCall:
    result: AIClassificationResult
    provider_result: ProviderResult
    prompt: str
    attempts: int
    parsed: bool


def build_prompt(filename: str, content_ref: str | None, content_text: str | None) -> str:
    return CLASSIFY_PROMPT.format(
        marker=CLASSIFY_MARKER,
        types=", ".join(t.value for t in DocumentType),
        filename=filename,
        content_ref=content_ref or "-",
        content=(content_text or "")[:6000],
    )


async def classify_content(
    filename: str,
    content_ref: str | None,
    content_text: str | None,
    config: ai_router.ResolvedConfig | None = None,
) -> ClassificationCall:
    """Ask the configured provider for a classification.

    Raises ``ExternalServiceError`` when the provider cannot be reached after
    retries. An unparseable answer is returned with ``parsed=False`` and zero
    confidence so the gateway can record it as a classification failure.
    """
    config = config or ai_router.resolve("classify")
    prompt = build_prompt(filename, content_ref, content_text)

    provider_result, attempts = await generate_with_retry(
        config,
        prompt,
        system_prompt=CLASSIFY_SYSTEM_PROMPT,
        image_url=scan_image_url(content_ref),
        operation="classify_document",
    )

    payload = extract_json_object(provider_result.raw_text)
    result = None
    if payload is not None:
        try:
            result = AIClassificationResult.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Classifier response failed validation: %s", exc)
    if result is None:
        logger.warning("Classifier returned no usable JSON: %s", provider_result.raw_text[:200])
        return ClassificationCall(
            result=AIClassificationResult(confidence=0.0, reason="invalid_response"),
            provider_result=provider_result,
            prompt=prompt,
            attempts=attempts,
            parsed=False,
        )

    return ClassificationCall(
        result=result,
        provider_result=provider_result,
        prompt=prompt,
        attempts=attempts,
        parsed=True,
    )
