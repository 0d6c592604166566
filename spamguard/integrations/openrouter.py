"""Async client for the hosted OpenRouter API (OpenAI-compatible)."""

import logging

import httpx

from spamguard.errors import ProviderAuthError, TransientBackendError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


class OpenRouterClient:
    """Async HTTP client for OpenRouter chat completions and embeddings.

    Usage::

        async with OpenRouterClient(api_key) as client:
            text = await client.send_message("Classify ...", "openai/gpt-4o-mini")
    """

    def __init__(self, api_key: str, base_url: str = DEFAULT_BASE_URL) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=120.0,
        )

    async def __aenter__(self) -> "OpenRouterClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code in (401, 403):
                raise ProviderAuthError(f"OpenRouter rejected the API key: {exc}") from exc
            raise TransientBackendError(f"OpenRouter {path} failed: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransientBackendError(f"OpenRouter {path} failed: {exc}") from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise TransientBackendError(f"OpenRouter {path} returned invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise TransientBackendError(f"OpenRouter {path} returned {type(data).__name__}, expected an object")
        return data

    async def send_message(self, prompt: str, model: str) -> str:
        data = await self._request(
            "POST",
            "/chat/completions",
            json={"model": model, "messages": [{"role": "user", "content": prompt}]},
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise TransientBackendError("Unexpected OpenRouter chat response shape") from exc

        usage = data.get("usage") or {}
        logger.debug(
            "OpenRouter %s: %s prompt tokens, %s completion tokens",
            model,
            usage.get("prompt_tokens", "?"),
            usage.get("completion_tokens", "?"),
        )
        return content or ""

    async def list_models(self) -> list[str]:
        return await self._model_ids("/models")

    async def list_embedding_models(self) -> list[str]:
        return await self._model_ids("/embeddings/models")

    async def _model_ids(self, path: str) -> list[str]:
        data = await self._request("GET", path)
        try:
            return [m["id"] for m in data.get("data", [])]
        except (KeyError, TypeError) as exc:
            raise TransientBackendError(f"Unexpected OpenRouter {path} response shape") from exc

    async def generate_embedding(self, text: str, model: str) -> list[float]:
        data = await self._request("POST", "/embeddings", json={"model": model, "input": text})
        try:
            return data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as exc:
            raise TransientBackendError("Unexpected OpenRouter embedding response shape") from exc

    async def context_length(self, model: str) -> int | None:
        # Context windows aren't exposed per embedding model; callers use a default budget.
        return None

    async def test_connection(self) -> None:
        await self._request("GET", "/key")
