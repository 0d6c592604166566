"""Shared helpers for prompting a chat model that answers in JSON.

Both the spam classifier and the rule generator use the same extraction and
retry policy: malformed answers are retried exactly like network failures.
"""

import json
import logging

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from spamguard.errors import MalformedResponseError, TransientBackendError

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (TransientBackendError, MalformedResponseError)

_decoder = json.JSONDecoder()


def extract_json_object(text: str) -> dict:
    """Decode the first ``{...}`` JSON object found in ``text``.

    Models often wrap their answer in prose or code fences; anything before
    the first decodable object and after its closing brace is ignored.

    Raises:
        MalformedResponseError: If no JSON object can be decoded.
    """
    start = text.find("{")
    while start != -1:
        try:
            value, _end = _decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)

    snippet = text.strip()[:200]
    raise MalformedResponseError(f"No JSON object found in model response: {snippet!r}")


def llm_retrying(max_attempts: int = 3, wait_seconds: float = 0.0) -> AsyncRetrying:
    """Retry controller for one logical LLM call.

    Each attempt is a fresh backend call. After the last failed attempt the
    original exception is re-raised to the caller.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(wait_seconds),
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
