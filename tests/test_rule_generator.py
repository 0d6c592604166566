"""Tests for spamguard.executors.rule_generator."""

from unittest.mock import AsyncMock

import pytest

from spamguard.errors import ConfigurationError, MalformedResponseError, TransientBackendError
from spamguard.executors.rule_generator import generate_rule_text, parse_rule_text


def _backend(*responses) -> AsyncMock:
    backend = AsyncMock()
    backend.send_message.side_effect = list(responses)
    return backend


class TestParseRuleText:
    def test_valid(self):
        assert parse_rule_text('{"ruleText": "  Flag crypto giveaways. "}') == "Flag crypto giveaways."

    def test_wrapped_in_prose(self):
        text = 'Sure! Here is the rule:\n```json\n{"ruleText": "Flag lottery wins."}\n```'
        assert parse_rule_text(text) == "Flag lottery wins."

    @pytest.mark.parametrize(
        "text",
        ['{"ruleText": ""}', '{"ruleText": "   "}', '{"ruleText": 5}', '{"other": "x"}', "no json"],
    )
    def test_invalid(self, text):
        with pytest.raises(MalformedResponseError):
            parse_rule_text(text)


class TestGenerateRuleText:
    async def test_success(self):
        backend = _backend('{"ruleText": "Emails promising free gift cards are spam."}')

        rule = await generate_rule_text("gift card scams", backend=backend, model="llama3")

        assert rule == "Emails promising free gift cards are spam."
        prompt, model = backend.send_message.call_args.args
        assert "gift card scams" in prompt
        assert model == "llama3"

    async def test_retries_malformed_then_succeeds(self):
        backend = _backend("not json", '{"ruleText": ""}', '{"ruleText": "Flag fake invoices."}')

        assert await generate_rule_text("invoices", backend=backend, model="m") == "Flag fake invoices."
        assert backend.send_message.await_count == 3

    async def test_gives_up_after_max_attempts(self):
        backend = _backend(TransientBackendError("down"), TransientBackendError("down"))

        with pytest.raises(TransientBackendError):
            await generate_rule_text("x", backend=backend, model="m", max_attempts=2)
        assert backend.send_message.await_count == 2

    async def test_missing_model(self):
        backend = _backend()
        with pytest.raises(ConfigurationError):
            await generate_rule_text("x", backend=backend, model="")
        backend.send_message.assert_not_called()
