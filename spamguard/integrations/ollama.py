"""Async client for the Ollama REST API (chat + embeddings)."""

import logging
import re

import httpx
from pydantic import BaseModel, ValidationError

from spamguard.errors import TransientBackendError

logger = logging.getLogger(__name__)


class OllamaGenerateResponse(BaseModel):
    """Raw response from Ollama's /api/generate endpoint (non-streaming)."""

    model: str
    response: str
    done: bool
    done_reason: str = ""
    total_duration: int = 0
    prompt_eval_count: int = 0
    eval_count: int = 0


class OllamaClient:
    """Async HTTP client for a self-hosted Ollama server.

    Usage::

        async with OllamaClient(base_url) as client:
            text = await client.send_message("Classify ...", "llama3.2")
            vector = await client.generate_embedding("hello", "mxbai-embed-large")
    """

    def __init__(self, base_url: str, *, default_keep_alive: str = "5m") -> None:
        self._base_url = base_url.rstrip("/")
        self._default_keep_alive = default_keep_alive
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=120.0,
        )

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict) -> dict:
        try:
            response = await self._client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransientBackendError(f"Ollama {path} failed: {exc}") from exc
        return _json_object(response, path)

    async def _get(self, path: str) -> dict:
        try:
            response = await self._client.get(path)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransientBackendError(f"Ollama {path} failed: {exc}") from exc
        return _json_object(response, path)

    async def send_message(self, prompt: str, model: str) -> str:
        """Send a single prompt and return the raw completion text.

        The request asks Ollama for JSON output, but models may still wrap
        it in commentary.
        """
        data = await self._post(
            "/api/generate",
            {
                "model": model,
                "prompt": prompt,
                "stream": False,
                "format": "json",
                "keep_alive": self._default_keep_alive,
            },
        )
        try:
            raw = OllamaGenerateResponse.model_validate(data)
        except ValidationError as exc:
            raise TransientBackendError(f"Unexpected Ollama response for model {model}: {exc}") from exc
        logger.debug(
            "Ollama %s: %d prompt tokens, %d eval tokens, %.1fs total",
            model,
            raw.prompt_eval_count,
            raw.eval_count,
            raw.total_duration / 1e9,
        )
        return raw.response

    async def list_models(self) -> list[str]:
        """List model names available on the Ollama server."""
        data = await self._get("/api/tags")
        try:
            return [m["name"] for m in data.get("models", [])]
        except (KeyError, TypeError) as exc:
            raise TransientBackendError("Unexpected Ollama model list") from exc

    async def list_embedding_models(self) -> list[str]:
        """Ollama serves chat and embedding models from the same list."""
        return await self.list_models()

    async def pick_instruct_model(self) -> str | None:
        """Auto-detect the best instruct/chat model available on the server."""
        return pick_instruct_model(await self.list_models())

    async def generate_embedding(self, text: str, model: str) -> list[float]:
        data = await self._post("/api/embeddings", {"model": model, "prompt": text})
        embedding = data.get("embedding")
        if not embedding:
            raise TransientBackendError(f"Ollama returned no embedding for model {model}")
        return embedding

    async def context_length(self, model: str) -> int | None:
        """Context window of ``model`` in tokens, or None if it can't be determined."""
        try:
            data = await self._post("/api/show", {"name": model})
        except TransientBackendError:
            logger.debug("Could not read model info for %s", model, exc_info=True)
            return None
        return context_length_from_show(data)

    async def test_connection(self) -> None:
        await self._get("/api/version")


def _json_object(response: httpx.Response, path: str) -> dict:
    try:
        data = response.json()
    except ValueError as exc:
        raise TransientBackendError(f"Ollama {path} returned invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise TransientBackendError(f"Ollama {path} returned {type(data).__name__}, expected an object")
    return data

def context_length_from_show(data: dict) -> int | None:
    """Extract the context length from an /api/show payload.

    Looks for ``<family>.context_length`` in model_info, then the
    ``general.*`` keys, then ``num_ctx`` in the parameters string.
    """
    info = data.get("model_info") or {}
    for key, value in info.items():
        if key.endswith(".context_length") and not key.startswith("general."):
            return int(value)
    for key in ("general.context_length", "general.context_length_max"):
        if info.get(key):
            return int(info[key])

    match = re.search(r"num_ctx\s+(\d+)", data.get("parameters") or "", re.IGNORECASE)
    if match:
        return int(match.group(1))
    return None


def pick_instruct_model(models: list[str]) -> str | None:
    """Select the best instruct/chat model from a list of model names.

    Prefers names containing 'instruct', 'chat', 'qwen', or 'gemma', skipping
    embedding models. Falls back to the first non-embedding model.
    """
    candidates = [m for m in models if "embed" not in m.lower()]
    for name in candidates:
        lowered = name.lower()
        if "instruct" in lowered or "chat" in lowered or "qwen" in lowered or "gemma" in lowered:
            return name
    return candidates[0] if candidates else None
