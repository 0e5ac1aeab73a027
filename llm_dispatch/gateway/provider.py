"""Gemini REST client: text generation and context-cache management.

Thin transport layer. It raises ``ProviderError`` for non-2xx answers and
lets ``httpx`` timeouts propagate; interpreting either is the job of
``classify_error`` and the response validator.
"""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from llm_dispatch.gateway.errors import PreparationError, ProviderError
from llm_dispatch.gateway.types import GenerationParameters

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

_MODEL_NAME_RE = re.compile(r"^(?:models/|tunedModels/)?[A-Za-z0-9][A-Za-z0-9._-]*$")


def model_path(model_name: str) -> str:
    """Resource path for a model name: ``gemini-2.0-flash`` -> ``models/gemini-2.0-flash``.

    Raises:
        PreparationError: if the name is empty or malformed.
    """
    name = (model_name or "").strip()
    if not _MODEL_NAME_RE.match(name):
        raise PreparationError(f"Invalid model name: {model_name!r}")
    if name.startswith(("models/", "tunedModels/")):
        return name
    return f"models/{name}"


class GeminiClient:
    """Async client for the Gemini ``generateContent`` and ``cachedContents`` endpoints.

    A new ``httpx.AsyncClient`` is opened per call.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 180.0,
        cache_ttl_seconds: int = 3600,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.cache_ttl_seconds = cache_ttl_seconds

    async def generate_content(
        self,
        model_name: str,
        body: dict[str, Any],
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """POST ``{model}:generateContent`` and return the decoded response."""
        url = f"{self.base_url}/{model_path(model_name)}:generateContent"
        async with httpx.AsyncClient(timeout=timeout or self.timeout) as client:
            resp = await client.post(
                url,
                json=body,
                params={"key": self.api_key},
                headers={"Content-Type": "application/json"},
            )
        if resp.status_code >= 400:
            raise ProviderError.from_response(resp)
        return resp.json()

    async def create_cached_content(
        self,
        model_name: str,
        contents: list[dict[str, Any]],
        display_name: str,
        system_instruction: str | None = None,
        generation_parameters: GenerationParameters | None = None,
    ) -> dict[str, Any]:
        """Create a cached context and return the resource (``name`` holds the handle).

        ``generation_parameters`` are not part of a cached context resource;
        they are accepted for interface symmetry and sent with every
        ``generateContent`` call instead.
        """
        payload: dict[str, Any] = {
            "model": model_path(model_name),
            "displayName": display_name,
            "contents": contents,
            "ttl": f"{self.cache_ttl_seconds}s",
        }
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(
                f"{self.base_url}/cachedContents",
                json=payload,
                params={"key": self.api_key},
                headers={"Content-Type": "application/json"},
            )
        if resp.status_code >= 400:
            raise ProviderError.from_response(resp)

        data = resp.json()
        logger.debug("Created cached content %s (%s)", data.get("name"), display_name)
        return data

    async def get_cached_content(self, name: str) -> dict[str, Any] | None:
        """Fetch a cached context by handle. Returns None when it no longer exists."""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(f"{self.base_url}/{name}", params={"key": self.api_key})
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise ProviderError.from_response(resp)
        return resp.json()
