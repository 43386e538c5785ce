"""Field extraction scope contracts."""

from __future__ import annotations

import math
from typing import Any, Optional

from pydantic import BaseModel, field_validator


class AIExtractedField(BaseModel):
    """One field as returned by the inference service.

    ``bounding_box`` is ``[x, y, width, height]`` in source-image pixels and is
    kept exactly as received; anything that is not four finite non-negative
    numbers becomes ``None``.
    """

    field_name: str
    value: Optional[str] = None
    confidence: float = 0.0
    bounding_box: Optional[list[float]] = None

    @field_validator("field_name", mode="before")
    @classmethod
    def _normalise_name(cls, v) -> str:
        return str(v or "").strip().lower()

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_value(cls, v) -> Optional[str]:
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        if math.isnan(value):
            return 0.0
        return min(1.0, max(0.0, value))

    @field_validator("bounding_box", mode="before")
    @classmethod
    def _check_box(cls, v: Any) -> Optional[list[float]]:
        if not isinstance(v, (list, tuple)) or len(v) != 4:
            return None
        try:
            box = [float(item) for item in v]
        except (TypeError, ValueError):
            return None
        if any(math.isnan(item) or math.isinf(item) or item < 0 for item in box):
            return None
        return box


class AIExtractionResult(BaseModel):
    fields: list[AIExtractedField] = []

    @field_validator("fields", mode="before")
    @classmethod
    def _drop_malformed(cls, v) -> list:
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, dict) and item.get("field_name")]
