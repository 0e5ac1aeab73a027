from unittest.mock import AsyncMock, patch

import httpx
import pytest

from llm_dispatch.core.config import settings

# Override settings for tests
settings.app_env = "test"
settings.gemini_api_key = "test-key"


def make_httpx_response(status_code: int, json_data: dict | list | None = None, text: str = "") -> httpx.Response:
    """Create a proper httpx.Response with request set."""
    request = httpx.Request("POST", "https://example.com")
    if json_data is not None:
        return httpx.Response(status_code, json=json_data, request=request)
    return httpx.Response(status_code, text=text, request=request)


def make_gemini_response(text: str = '{"ok": true}', finish_reason: str = "STOP") -> dict:
    return {
        "candidates": [
            {
                "content": {"role": "model", "parts": [{"text": text}]},
                "finishReason": finish_reason,
            }
        ],
        "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 5, "totalTokenCount": 15},
    }


@pytest.fixture
def gemini_response():
    return make_gemini_response


@pytest.fixture
def httpx_response():
    return make_httpx_response


@pytest.fixture
def mock_httpx_client():
    """Patch the provider module's AsyncClient; yields the client instance mock."""
    with patch("llm_dispatch.gateway.provider.httpx.AsyncClient") as mock_client_cls:
        mock_client = AsyncMock()
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=None)
        mock_client_cls.return_value = mock_client
        yield mock_client


@pytest.fixture
def no_sleep():
    """Skip backoff waits and jitter in the retry engine."""
    with (
        patch("llm_dispatch.gateway.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep,
        patch("llm_dispatch.gateway.retry.random.uniform", return_value=0),
    ):
        yield mock_sleep
