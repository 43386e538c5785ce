"""AI audit: one audit_logs row per inference call."""

from __future__ import annotations

import hashlib
import logging
from typing import Any

from sqlalchemy.orm import Session

from docledger.core.config import get_settings
from docledger.services.transition_service import create_audit_log

from .providers.base import ProviderResult

logger = logging.getLogger(__name__)

SCOPE_ACTIONS: dict[str, str] = {
    "classify": "AI_DOCUMENT_CLASSIFIED",
    "extract": "AI_FIELDS_EXTRACTED",
}


def log_ai_run(
    db: Session,
    *,
    scope: str,
    document_id: str,
    provider_result: ProviderResult,
    prompt_text: str,
    parsed_output: dict[str, Any] | None,
    attempts: int,
    actor_id: str | None = None,
) -> None:
    """Record an AI call against the document it was made for.

    Prompt and response are stored as SHA-256 hashes; raw text only when
    ``AI_DEBUG_STORE_RAW=true``.
    """
    settings = get_settings()

    metadata: dict[str, Any] = {
        "scope": scope,
        "provider": provider_result.provider,
        "model": provider_result.model,
        "attempts": attempts,
        "prompt_tokens": provider_result.prompt_tokens,
        "completion_tokens": provider_result.completion_tokens,
        "latency_ms": provider_result.latency_ms,
        "prompt_hash": hashlib.sha256(prompt_text.encode()).hexdigest(),
        "response_hash": hashlib.sha256(provider_result.raw_text.encode()).hexdigest(),
    }
    if settings.ai_debug_store_raw:
        metadata["prompt_raw"] = prompt_text
        metadata["response_raw"] = provider_result.raw_text

    create_audit_log(
        db,
        entity_type="document",
        entity_id=document_id,
        action=SCOPE_ACTIONS.get(scope, "AI_RUN"),
        old_value=None,
        new_value=parsed_output,
        actor_type="SYSTEM",
        actor_id=actor_id,
        metadata=metadata,
    )


def log_ai_failure(
    db: Session,
    *,
    scope: str,
    document_id: str,
    error: str,
    actor_id: str | None = None,
) -> None:
    create_audit_log(
        db,
        entity_type="document",
        entity_id=document_id,
        action="AI_EXTERNAL_SERVICE_ERROR",
        old_value=None,
        new_value=None,
        actor_type="SYSTEM",
        actor_id=actor_id,
        metadata={"scope": scope, "error": error},
    )
