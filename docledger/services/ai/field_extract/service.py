"""Field extraction call against the external AI service."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from pydantic import ValidationError

from docledger.core.errors import ExternalServiceError

from ..common import router as ai_router
from ..common.json_tools import extract_json_object
from ..common.providers.base import ProviderResult, scan_image_url
from ..common.providers.mock import EXTRACT_MARKER
from ..common.retry import generate_with_retry
from .contracts import AIExtractionResult

logger = logging.getLogger(__name__)

EXTRACT_SYSTEM_PROMPT = (
    "You extract fields from scanned financial documents. "
    "Answer with a single JSON object and nothing else."
)

EXTRACT_PROMPT = """{marker}

The document is a {document_type}. Extract these fields: {field_names}.

Return a JSON object {{"fields": [...]}} where each item has:
- field_name: one of the names above
- value: the text exactly as printed on the document
- confidence: number between 0.0 and 1.0
- bounding_box: [x, y, width, height] in pixels of the original image

Leave out fields that are not present on the document.

Filename: {filename}
Content reference: {content_ref}

Document content:
{content}"""


@dataclass
class ExtractionCall:
    result: AIExtractionResult
    provider_result: ProviderResult
    prompt: str
    attempts: int


def build_prompt(
    document_type: str,
    field_names: list[str],
    filename: str,
    content_ref: str | None,
    content_text: str | None,
) -> str:
    return EXTRACT_PROMPT.format(
        marker=EXTRACT_MARKER,
        document_type=document_type,
        field_names=", ".join(field_names),
        filename=filename,
        content_ref=content_ref or "-",
        content=(content_text or "")[:8000],
    )


async def extract_fields(
    document_type: str,
    field_names: list[str],
    filename: str,
    content_ref: str | None,
    content_text: str | None,
    config: ai_router.ResolvedConfig | None = None,
) -> ExtractionCall:
    """Ask the configured provider for per-field values.

    Raises ``ExternalServiceError`` when the provider is unreachable after
    retries or answers with something that is not an extraction payload.
    """
    config = config or ai_router.resolve("extract")
    prompt = build_prompt(document_type, field_names, filename, content_ref, content_text)

    provider_result, attempts = await generate_with_retry(
        config,
        prompt,
        system_prompt=EXTRACT_SYSTEM_PROMPT,
        image_url=scan_image_url(content_ref),
        operation="extract_fields",
    )

    payload = extract_json_object(provider_result.raw_text)
    if payload is None:
        logger.warning("Extractor returned no usable JSON: %s", provider_result.raw_text[:200])
        raise ExternalServiceError(
            "extract_fields returned an unreadable response",
            errors=[{"rule": "invalid_response", "attempts": attempts}],
        )
    try:
        result = AIExtractionResult.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Extractor response failed validation: %s", exc)
        raise ExternalServiceError(
            "extract_fields returned an invalid payload",
            errors=[{"rule": "invalid_response", "attempts": attempts}],
        ) from exc

    return ExtractionCall(
        result=result,
        provider_result=provider_result,
        prompt=prompt,
        attempts=attempts,
    )
