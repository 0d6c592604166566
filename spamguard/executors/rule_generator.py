"""Turn a user's plain-language description of unwanted mail into rule text."""

import logging

from spamguard.errors import ConfigurationError, MalformedResponseError
from spamguard.executors.llm import extract_json_object, llm_retrying
from spamguard.integrations.protocols import AIBackend

logger = logging.getLogger(__name__)

RULE_PROMPT = """\
You are a spam detection expert. Generate a concise, effective rule text that \
helps identify spam emails.

User's description of spam to detect:
{description}

Generate a rule text that:
- Is clear and specific
- Focuses on patterns, keywords, or behaviors that indicate spam
- Is written in a way that an AI can use to classify emails
- Is concise (1-3 sentences maximum)

Respond ONLY with a valid JSON object in this exact format:
{{
  "ruleText": "<the generated rule text>"
}}

Do not include any other text or formatting."""


def parse_rule_text(text: str) -> str:
    data = extract_json_object(text)
    rule_text = data.get("ruleText")
    if not isinstance(rule_text, str) or not rule_text.strip():
        raise MalformedResponseError("Invalid ruleText in AI response")
    return rule_text.strip()


async def generate_rule_text(
    description: str,
    *,
    backend: AIBackend,
    model: str,
    max_attempts: int = 3,
) -> str:
    """Ask the chat model for a rule matching ``description``.

    Raises:
        ConfigurationError: If no chat model is configured.
        TransientBackendError / MalformedResponseError: After the last failed attempt.
    """
    if not model:
        raise ConfigurationError("No chat model selected")

    prompt = RULE_PROMPT.format(description=description.strip())
    async for attempt in llm_retrying(max_attempts):
        with attempt:
            rule_text = parse_rule_text(await backend.send_message(prompt, model))

    logger.info("Generated rule text for %r: %s", description, rule_text)
    return rule_text
