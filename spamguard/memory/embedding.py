"""Embedding generation for the similarity memory.

Long inputs make embedding servers fail outright, so text is cut to a
character budget derived from the model's context window.
"""

import logging

import numpy as np

from spamguard.errors import ConfigurationError
from spamguard.integrations.protocols import AIBackend

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
SAFETY_FACTOR = 0.8
DEFAULT_MAX_CHARS = 2000

_SAMPLE_TEXT = "dimension check"


def char_budget(context_tokens: int | None) -> int:
    """Safe input length in characters for a context window in tokens."""
    if not context_tokens or context_tokens <= 0:
        return DEFAULT_MAX_CHARS
    return int(context_tokens * CHARS_PER_TOKEN * SAFETY_FACTOR)


class Embedder:
    """Embeds text with one configured model, caching model facts.

    The context window and the output dimension are each looked up once
    per instance.
    """

    def __init__(self, backend: AIBackend, model: str) -> None:
        if not model:
            raise ConfigurationError("No embedding model selected")
        self._backend = backend
        self._model = model
        self._max_chars: int | None = None
        self._dimension: int | None = None

    @property
    def model(self) -> str:
        return self._model

    async def max_chars(self) -> int:
        if self._max_chars is None:
            tokens = await self._backend.context_length(self._model)
            self._max_chars = char_budget(tokens)
            logger.debug(
                "Embedding model %s: context=%s tokens, input budget=%d chars",
                self._model,
                tokens,
                self._max_chars,
            )
        return self._max_chars

    async def embed(self, text: str) -> np.ndarray:
        """Embed ``text`` (truncated to the budget) as a float32 vector."""
        limit = await self.max_chars()
        if len(text) > limit:
            text = text[:limit]
        vector = np.asarray(
            await self._backend.generate_embedding(text, self._model), dtype=np.float32
        )
        if self._dimension is None:
            self._dimension = int(vector.shape[0])
        return vector

    async def dimension(self) -> int:
        """Output width of the model, measured once."""
        if self._dimension is None:
            await self.embed(_SAMPLE_TEXT)
        return self._dimension
