"""Exception taxonomy and the provider error classifier.

The provider only sometimes gives structured error codes; when it doesn't,
``classify_error`` falls back to matching the free-text message. All
classification lives here so callers never inspect raw exceptions.
"""

from __future__ import annotations

import asyncio

import httpx

from llm_dispatch.gateway.types import ErrorClass


class DispatchError(Exception):
    """Base class for all dispatch gateway errors."""


class ConfigurationError(DispatchError):
    """Invalid provider, limiter or task configuration. Fatal, never retried."""


class PreparationError(DispatchError):
    """A model or request could not be constructed. Aborts the current phase."""


class ProviderError(DispatchError):
    """Non-2xx answer from the provider API."""

    def __init__(self, message: str, status_code: int = 0, status: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.status = status  # google.rpc status, e.g. "RESOURCE_EXHAUSTED"

    @classmethod
    def from_response(cls, response: httpx.Response) -> ProviderError:
        """Build from an error envelope: {"error": {"code", "message", "status"}}."""
        message = response.text[:500]
        status = ""
        try:
            data = response.json()
        except ValueError:
            data = {}
        error = data.get("error", {}) if isinstance(data, dict) else {}
        if isinstance(error, dict):
            message = error.get("message") or message
            status = error.get("status") or ""
        return cls(f"[{response.status_code} {status}] {message}".strip(), response.status_code, status)


class SafetyBlockedError(DispatchError):
    """Response blocked by the provider's safety filters. Never retried."""

    def __init__(self, block_reason: str):
        super().__init__(f"Request blocked by safety settings: {block_reason}")
        self.block_reason = block_reason


class MalformedResponseError(DispatchError):
    """Response text is empty or not valid JSON after repair."""

    def __init__(self, message: str, original_text: str = "", processed_text: str = ""):
        super().__init__(message)
        self.original_text = original_text
        self.processed_text = processed_text


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_STALE_CACHE_PATTERNS: tuple[str, ...] = (
    "cachedcontent not found",
    "cached content not found",
    "permission denied on cached content",
    "cannot find cached content",
)
_SAFETY_PATTERNS: tuple[str, ...] = ("safety",)
_QUOTA_PATTERNS: tuple[str, ...] = ("429", "resource_exhausted", "rate limit", "quota")
_TRANSIENT_PATTERNS: tuple[str, ...] = ("500", "503", "unavailable", "internal", "deadline")

_TRANSIENT_STATUSES = frozenset({"UNAVAILABLE", "INTERNAL", "DEADLINE_EXCEEDED", "UNKNOWN"})


def classify_error(exc: BaseException, used_cache: bool = False) -> ErrorClass:
    """Map an exception raised during an attempt to an ``ErrorClass``.

    Order: typed exceptions, then provider status codes, then message text.
    A 404 or 403 only counts as a stale cache when the call referenced one.
    """
    if isinstance(exc, SafetyBlockedError):
        return ErrorClass.SAFETY_BLOCKED
    if isinstance(exc, MalformedResponseError):
        return ErrorClass.MALFORMED_RESPONSE
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError)):
        return ErrorClass.TRANSIENT_SERVER_ERROR

    message = str(exc).lower()

    if isinstance(exc, ProviderError):
        if exc.status_code == 429 or exc.status == "RESOURCE_EXHAUSTED":
            return ErrorClass.QUOTA_EXCEEDED
        if exc.status_code >= 500 or exc.status in _TRANSIENT_STATUSES:
            return ErrorClass.TRANSIENT_SERVER_ERROR
        if used_cache and exc.status_code in (403, 404):
            return ErrorClass.STALE_CACHE

    if any(p in message for p in _STALE_CACHE_PATTERNS):
        return ErrorClass.STALE_CACHE
    if any(p in message for p in _QUOTA_PATTERNS):
        return ErrorClass.QUOTA_EXCEEDED
    if any(p in message for p in _TRANSIENT_PATTERNS):
        return ErrorClass.TRANSIENT_SERVER_ERROR
    if any(p in message for p in _SAFETY_PATTERNS):
        return ErrorClass.SAFETY_BLOCKED
    return ErrorClass.UNCLASSIFIED
