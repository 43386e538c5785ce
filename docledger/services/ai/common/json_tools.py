"""Tolerant JSON object extraction from model responses."""

from __future__ import annotations

import json
import logging
import re

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json_object(text: str) -> dict | None:
    """Return the first JSON object found in *text*, or ``None``.

    Order of attempts: the whole text, the body of a fenced code block, then
    every ``{`` scanned with brace balancing that respects string literals.
    Arrays and scalars are not accepted; callers always expect an object.
    """
    if not text or not text.strip():
        return None

    candidates = [text.strip()]
    fenced = _FENCE_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())

    for candidate in candidates:
        parsed = _loads_object(candidate)
        if parsed is not None:
            return parsed

    start = text.find("{")
    while start != -1:
        end = _matching_brace(text, start)
        if end is not None:
            parsed = _loads_object(text[start : end + 1])
            if parsed is not None:
                return parsed
        start = text.find("{", start + 1)

    logger.debug("No JSON object in model response (%d chars)", len(text))
    return None


def _loads_object(candidate: str) -> dict | None:
    try:
        parsed = json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _matching_brace(text: str, start: int) -> int | None:
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None
