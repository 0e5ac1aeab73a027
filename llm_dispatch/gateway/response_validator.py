"""Response Validator: raw provider output to text that parses as JSON.

``process_response`` runs inside every attempt and fails loudly so the
retry engine can classify the failure. ``clean_json_response`` runs after
a successful attempt and never raises.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from llm_dispatch.gateway.errors import MalformedResponseError, SafetyBlockedError
from llm_dispatch.gateway.types import UsageMetadata

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$", re.IGNORECASE)
_TRAILING_COMMA_OBJECT_RE = re.compile(r",(\s*})")
_TRAILING_COMMA_ARRAY_RE = re.compile(r",(\s*])")

# Finish reasons for which the candidate text must not be trusted
_BLOCKED_FINISH_REASONS = frozenset({"RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII", "OTHER"})


@dataclass(frozen=True)
class ProcessedResponse:
    text: str
    usage_metadata: UsageMetadata | None = None


def strip_code_fence(text: str) -> str:
    """Remove a single fenced code block wrapping the whole text, if present."""
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def repair_trailing_commas(text: str) -> str:
    """Drop commas directly before a closing ``}`` or ``]``."""
    repaired = _TRAILING_COMMA_OBJECT_RE.sub(r"\1", text)
    return _TRAILING_COMMA_ARRAY_RE.sub(r"\1", repaired)


def check_safety(data: dict[str, Any]) -> None:
    """Raise ``SafetyBlockedError`` if the prompt or the first candidate was blocked."""
    block_reason = (data.get("promptFeedback") or {}).get("blockReason")
    if block_reason:
        raise SafetyBlockedError(str(block_reason))

    candidates = data.get("candidates") or []
    if candidates and candidates[0].get("finishReason") == "SAFETY":
        raise SafetyBlockedError("SAFETY")


def _response_text(data: dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate. Raises on anything unusual."""
    candidates = data.get("candidates")
    if not candidates:
        raise ValueError("response has no candidates")
    candidate = candidates[0]
    finish_reason = candidate.get("finishReason", "")
    if finish_reason in _BLOCKED_FINISH_REASONS:
        raise ValueError(f"candidate finished with {finish_reason}")
    parts = candidate["content"]["parts"]
    texts = [p["text"] for p in parts if "text" in p]
    if not texts:
        raise ValueError("candidate has no text parts")
    return "".join(texts)


def _first_part_text(data: dict[str, Any]) -> str:
    try:
        return data["candidates"][0]["content"]["parts"][0].get("text", "") or ""
    except (KeyError, IndexError, TypeError, AttributeError):
        return ""


def extract_text(data: dict[str, Any]) -> str:
    """Response text, falling back to the first candidate's first part."""
    try:
        return _response_text(data)
    except (ValueError, KeyError, IndexError, TypeError) as e:
        logger.warning("Primary text accessor failed (%s), reading first content part", e)
        return _first_part_text(data)


def process_response(data: dict[str, Any]) -> ProcessedResponse:
    """Validate a ``generateContent`` response and return its repaired JSON text.

    Raises:
        SafetyBlockedError: the prompt or response was blocked.
        MalformedResponseError: empty text, or text that does not parse as JSON.
    """
    check_safety(data)
    usage = UsageMetadata.from_api(data.get("usageMetadata"))

    original = extract_text(data)
    if not original.strip():
        raise MalformedResponseError("Empty response text", original_text=original)

    text = repair_trailing_commas(strip_code_fence(original))
    if not text:
        raise MalformedResponseError("Response text is empty after removing code fence", original_text=original)

    try:
        json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedResponseError(
            f"Response is not valid JSON: {e}",
            original_text=original,
            processed_text=text,
        ) from e

    return ProcessedResponse(text=text, usage_metadata=usage)


def clean_json_response(text: str) -> str:
    """Final cleanup after success: the outermost ``{...}`` if it parses, else ``""``."""
    if not text or not text.strip():
        return ""

    stripped = strip_code_fence(text)
    first = stripped.find("{")
    last = stripped.rfind("}")
    if first == -1 or last < first:
        logger.warning("No JSON object found while cleaning response: %.200s", stripped)
        return ""

    candidate = stripped[first : last + 1]
    try:
        json.loads(candidate)
    except json.JSONDecodeError as e:
        logger.warning("Extracted JSON object failed to parse (%s), returning empty", e)
        return ""
    return candidate.strip()
