"""Classification scope contracts."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator


class AIClassificationResult(BaseModel):
    """Structured output expected from document classification.

    ``document_type`` stays a free string here; the gateway decides whether it
    belongs to the supported vocabulary.
    """

    document_type: Optional[str] = None
    confidence: float = Field(default=0.0)
    language: Optional[str] = None
    warnings: list[str] = []
    reason: Optional[str] = None

    @field_validator("document_type", "language", "reason", mode="before")
    @classmethod
    def _normalise_token(cls, v):
        if v is None:
            return None
        v = str(v).strip().lower()
        return v or None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        return min(1.0, max(0.0, value))

    @field_validator("warnings", mode="before")
    @classmethod
    def _coerce_warnings(cls, v) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        if not isinstance(v, (list, tuple)):
            return [str(v)]
        return [str(item) for item in v if str(item).strip()]
