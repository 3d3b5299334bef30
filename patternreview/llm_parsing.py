"""LLM response parsing: extract judgments from JSON or partial responses."""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Optional

from patternreview.errors import JudgmentError
from patternreview.strategies import Judgment

logger = logging.getLogger(__name__)


def strip_code_fence(text: str) -> str:
    """Strip a markdown code fence (```json ... ```) wrapped around a response.

    The closing fence is only stripped when an opening fence was found.
    """
    cleaned = text.strip()
    if not cleaned.startswith("```"):
        return cleaned
    newline_pos = cleaned.find("\n")
    if newline_pos == -1:
        return ""
    cleaned = cleaned[newline_pos + 1 :]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3].rstrip()
    return cleaned


def parse_judgments(response_text: str, truncated: bool = False) -> list[Judgment]:
    """Parse `{"findings": [{line, confidence, detail}]}` into Judgment objects.

    Complete objects are salvaged from truncated or malformed JSON.

    Raises:
        JudgmentError: the response holds nothing that can be read as judgments
    """
    if not response_text.strip():
        return []

    cleaned = strip_code_fence(response_text)
    try:
        data = json.loads(cleaned)
        raw = data["findings"] if isinstance(data, dict) else data
        if not isinstance(raw, list):
            raise TypeError(f"'findings' must be a list, got {type(raw).__name__}")
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        salvaged = salvage_objects(response_text)
        if not salvaged:
            raise JudgmentError(
                "Judge response is not valid judgment JSON",
                stage="detecting",
                cause=e,
                details={"response": response_text[:500]},
            ) from e
        logger.info(
            "Salvaged %d judgment(s) from %s response",
            len(salvaged), "truncated" if truncated else "malformed",
        )
        raw = salvaged

    judgments = []
    for item in raw:
        judgment = judgment_from_dict(item)
        if judgment is not None:
            judgments.append(judgment)
    return judgments


def judgment_from_dict(item: Any) -> Optional[Judgment]:
    """Convert one raw dict, dropping entries without a usable confidence."""
    if not isinstance(item, dict):
        return None
    try:
        confidence = float(item.get("confidence"))
    except (TypeError, ValueError):
        logger.debug("Dropping judgment without confidence: %r", item)
        return None
    if not math.isfinite(confidence):
        logger.debug("Dropping judgment with non-finite confidence: %r", item)
        return None
    confidence = min(max(confidence, 0.0), 1.0)

    line = item.get("line")
    try:
        line = int(line) if line is not None else None
    except (TypeError, ValueError, OverflowError):
        line = None
    detail = item.get("detail") or item.get("description") or ""
    return Judgment(confidence=confidence, detail=str(detail).strip(), line=line)


def salvage_objects(text: str) -> list[dict]:
    """Extract complete judgment-like {...} objects from partial JSON.

    Brace counting skips over string literals so braces inside a detail
    sentence don't unbalance the scan.
    """
    found: list[dict] = []
    i = 0
    while i < len(text):
        if text[i] != "{":
            i += 1
            continue
        end = _matching_brace(text, i)
        if end is None:
            i += 1
            continue
        try:
            obj = json.loads(text[i : end + 1])
        except json.JSONDecodeError:
            i += 1
            continue
        if isinstance(obj, dict) and "confidence" in obj:
            found.append(obj)
            i = end + 1
        else:
            # Wrapper object ({"findings": [...]}): look inside it
            i += 1
    return found


def _matching_brace(text: str, start: int) -> Optional[int]:
    depth = 0
    in_string = False
    escaped = False
    for j in range(start, len(text)):
        ch = text[j]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return j
    return None
