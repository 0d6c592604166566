"""Spam classifier executor: scores an email 0-10 via an LLM.

Stateless apart from its configuration: receives the email, the rules that
apply to its account and optional similarity context, and returns a
ClassificationResult. No side effects on mailboxes or stores.
"""

import logging
import math
from collections.abc import Sequence

from spamguard.errors import ConfigurationError, MalformedResponseError
from spamguard.executors.content import simplify_email_content
from spamguard.executors.llm import extract_json_object, llm_retrying
from spamguard.integrations.protocols import AIBackend
from spamguard.schemas.email import Email, Rule
from spamguard.schemas.memory import SimilarEmail
from spamguard.schemas.processing import (
    ClassificationResult,
    ProcessingSettings,
    SimplifyMode,
)

logger = logging.getLogger(__name__)

# Truncate email body sent to the LLM to stay within context limits.
MAX_BODY_CHARS = 6000

# Per-entry body excerpt for similarity context.
MAX_CONTEXT_BODY_CHARS = 300

RULE_PRECEDENCE_PREAMBLE = """\
You are a spam email detection expert. Analyze the email below and decide \
how likely it is to be spam.

IMPORTANT: The user-defined rules listed below take precedence over the \
default guidelines. When a user rule applies to this email, follow the rule \
even if the default guidelines would suggest a different score.
"""

DEFAULT_GUIDELINES = """\
Provide a spam score from 0 to 10, where:
- 0 = Definitely not spam (legitimate email)
- 5 = Unsure, could be either
- 10 = Definitely spam (100% sure it's spam)

Consider these spam indicators:
- Unsolicited commercial content
- Urgency or pressure tactics
- Poor grammar or suspicious formatting
- Suspicious links or attachments
- Generic greetings
- Requests for personal information
- Too good to be true offers
- Phishing attempts
"""

RESPONSE_FORMAT = """\
Respond ONLY with a valid JSON object in this exact format:
{
  "score": <number between 0 and 10>,
  "reasoning": "<brief explanation of your decision>"
}

Do not include any other text or formatting."""


def applicable_rules(rules: Sequence[Rule], account_id: str) -> list[Rule]:
    """Enabled rules that are global or scoped to ``account_id``."""
    return [rule for rule in rules if rule.applies_to(account_id)]


def resolve_guidelines(settings: ProcessingSettings) -> str:
    """Custom guidelines when enabled and non-blank, otherwise the defaults."""
    if settings.use_custom_guidelines and settings.custom_guidelines.strip():
        return settings.custom_guidelines.strip()
    return DEFAULT_GUIDELINES


def _format_rules(rules: Sequence[Rule]) -> str:
    if not rules:
        return "No additional rules defined."
    return "\n".join(f"- {rule.text}" for rule in rules)


def _verdict(is_spam: bool) -> str:
    return "spam" if is_spam else "not spam"


def _format_similar(context: Sequence[SimilarEmail]) -> str:
    lines: list[str] = []
    for i, item in enumerate(context, 1):
        excerpt = " ".join(item.body.split())[:MAX_CONTEXT_BODY_CHARS]
        lines.append(f"{i}. From: {item.sender or '(unknown)'} | Subject: {item.subject}")
        if excerpt:
            lines.append(f"   Excerpt: {excerpt}")
        lines.append(
            f"   AI verdict: {_verdict(item.is_spam)} (score {item.score}/10). "
            f"Reasoning: {item.reasoning}"
        )

        agrees = item.user_agrees
        if agrees is None:
            lines.append("   Review: not reviewed by the user.")
        elif agrees:
            lines.append(
                "   Review: CONFIRMED by the user. This verdict is trustworthy."
            )
        else:
            actual = _verdict(not item.is_spam)
            lines.append(
                f"   Review: CORRECTED by the user, the email was actually {actual}. "
                "The AI verdict above is unreliable."
            )
    return "\n".join(lines)


def _email_body(email: Email, simplify: bool, mode: SimplifyMode) -> str:
    if simplify:
        body = simplify_email_content(email.body, email.body_html, mode)
    else:
        body = email.body or email.body_html
    body = body or "(no body)"
    if len(body) > MAX_BODY_CHARS:
        body = body[:MAX_BODY_CHARS] + "\n\n[... content truncated ...]"
    return body


def build_prompt(
    email: Email,
    rules: Sequence[Rule],
    similarity_context: Sequence[SimilarEmail] = (),
    guidelines: str = DEFAULT_GUIDELINES,
    *,
    simplify: bool = True,
    simplify_mode: SimplifyMode = SimplifyMode.AGGRESSIVE,
) -> str:
    """Assemble the classification prompt.

    Sections, in order: rule-precedence preamble, scoring guidelines, user
    rules, similar past emails (if any), the email itself, response format.
    """
    sections = [
        RULE_PRECEDENCE_PREAMBLE,
        f"## Scoring guidelines\n\n{guidelines.strip()}\n",
        f"## User-defined rules\n\n{_format_rules(rules)}\n",
    ]

    if similarity_context:
        sections.append(
            "## Previously classified similar emails\n\n"
            "Use these as reference. Verdicts confirmed by the user are reliable; "
            "verdicts corrected by the user show mistakes to avoid.\n\n"
            f"{_format_similar(similarity_context)}\n"
        )

    body = _email_body(email, simplify, simplify_mode)
    sections.append(
        "## Email to analyze\n\n"
        "---\n"
        f"From: {email.sender}\n"
        f"Subject: {email.subject}\n"
        f"Date: {email.received_at.isoformat()}\n\n"
        f"{body}\n"
        "---\n"
    )
    sections.append(RESPONSE_FORMAT)
    return "\n".join(sections)


def parse_classification(text: str) -> ClassificationResult:
    """Parse and validate a model answer.

    Raises:
        MalformedResponseError: If there is no JSON object, or ``score`` is
            missing, not a number, or outside 0-10.
    """
    data = extract_json_object(text)
    score = data.get("score")

    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise MalformedResponseError(f"Invalid spam score in AI response: {score!r}")
    if not math.isfinite(score) or not 0 <= score <= 10:
        raise MalformedResponseError(f"Spam score out of range: {score!r}")

    reasoning = data.get("reasoning")
    return ClassificationResult(
        score=math.floor(score + 0.5),
        reasoning=str(reasoning) if reasoning else "No reasoning provided",
    )


class SpamClassifier:
    """LLM-backed spam scorer with a fixed retry budget.

    Usage::

        classifier = SpamClassifier.from_settings(backend, settings)
        result = await classifier.classify(email, rules, context, guidelines)
        if result.is_spam(settings.sensitivity):
            ...
    """

    def __init__(
        self,
        backend: AIBackend,
        model: str,
        *,
        max_attempts: int = 3,
        retry_wait_seconds: float = 0.0,
        simplify_content: bool = True,
        simplify_mode: SimplifyMode = SimplifyMode.AGGRESSIVE,
        max_context: int = 5,
    ) -> None:
        self._backend = backend
        self._model = model
        self._max_attempts = max_attempts
        self._retry_wait_seconds = retry_wait_seconds
        self._simplify_content = simplify_content
        self._simplify_mode = simplify_mode
        self._max_context = max_context

    @classmethod
    def from_settings(cls, backend: AIBackend, settings: ProcessingSettings) -> "SpamClassifier":
        return cls(
            backend,
            settings.chat_model,
            max_attempts=settings.max_attempts,
            retry_wait_seconds=settings.retry_wait_seconds,
            simplify_content=settings.simplify_content,
            simplify_mode=settings.simplify_mode,
            max_context=settings.similarity_k,
        )

    @property
    def model(self) -> str:
        return self._model

    async def classify(
        self,
        email: Email,
        rules: Sequence[Rule],
        similarity_context: Sequence[SimilarEmail] = (),
        guidelines: str = DEFAULT_GUIDELINES,
    ) -> ClassificationResult:
        """Score an email.

        Args:
            email: The email to classify.
            rules: Rules applicable to the email's account.
            similarity_context: Similar past classifications, most similar first.
            guidelines: Scoring guidelines text (default or user override).

        Returns:
            A validated ClassificationResult.

        Raises:
            ConfigurationError: If no chat model is configured.
            TransientBackendError: If the last attempt failed on the network.
            MalformedResponseError: If the last attempt returned an invalid answer.
        """
        if not self._model:
            raise ConfigurationError("No chat model selected")

        prompt = build_prompt(
            email,
            rules,
            list(similarity_context)[: self._max_context],
            guidelines,
            simplify=self._simplify_content,
            simplify_mode=self._simplify_mode,
        )

        logger.info("Classifying email: %s from %s", email.subject, email.from_address)

        async for attempt in llm_retrying(self._max_attempts, self._retry_wait_seconds):
            with attempt:
                raw = await self._backend.send_message(prompt, self._model)
                result = parse_classification(raw)

        logger.info(
            "Email %s: score=%d (%d attempt(s)) reasoning=%s",
            email.id,
            result.score,
            attempt.retry_state.attempt_number,
            result.reasoning,
        )
        return result
