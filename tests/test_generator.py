"""
Tests for AI letter drafting providers. HTTP is patched, nothing leaves
the process.
"""
from types import SimpleNamespace
from unittest.mock import patch

import httpx
import pytest

from lawletters import config
from lawletters.errors import GenerationError
from lawletters.services.letters.generator import (
    GeminiGenerator, LetterPrompt, OpenAIGenerator, build_prompt, get_letter_generator,
)


def _prompt(**overrides):
    fields = dict(
        title="Unpaid invoice #1042",
        sender_name="Jane Customer",
        recipient_name="Acme Corp",
        matter="Invoice #1042 for $2,400 is 60 days overdue.",
        letter_type="general_demand_letter",
        priority="high",
        desired_resolution="Payment in full within 14 days",
    )
    fields.update(overrides)
    return LetterPrompt(**fields)


def _response(url, payload, status_code=200):
    return httpx.Response(status_code, json=payload, request=httpx.Request("POST", url))


# =============================================================================
# TEST: PROMPT
# =============================================================================

class TestBuildPrompt:

    def test_includes_letter_details(self):
        text = build_prompt(_prompt(recipient_address="99 Industrial Way"))

        assert "Title: Unpaid invoice #1042" in text
        assert "Recipient: Acme Corp" in text
        assert "Recipient Address: 99 Industrial Way" in text
        assert "Letter Type: general demand letter" in text
        assert "Desired Resolution: Payment in full within 14 days" in text

    def test_optional_fields_omitted(self):
        text = build_prompt(_prompt(desired_resolution=None))

        assert "Sender Address" not in text
        assert "Desired Resolution: Not specified" in text

    def test_from_letter_reads_enum_values(self):
        letter = SimpleNamespace(
            title="T", sender_name="S", recipient_name="R", description="D",
            letter_type=SimpleNamespace(value="cease_and_desist"),
            priority=SimpleNamespace(value="urgent"),
            desired_resolution=None, sender_address=None, recipient_address=None,
        )
        prompt = LetterPrompt.from_letter(letter)

        assert prompt.letter_type == "cease_and_desist"
        assert prompt.priority == "urgent"
        assert prompt.matter == "D"


# =============================================================================
# TEST: PROVIDERS
# =============================================================================

class TestGemini:

    def test_joins_candidate_parts(self):
        url = "https://generativelanguage.googleapis.com/v1beta/models/gemini-1.5-flash:generateContent"
        payload = {"candidates": [{"content": {"parts": [{"text": "Dear Acme, "}, {"text": "pay up."}]}}]}

        with patch.object(httpx.Client, "post", return_value=_response(url, payload)) as post:
            text = GeminiGenerator("key").generate(_prompt())

        assert text == "Dear Acme, pay up."
        assert post.call_args.kwargs["params"] == {"key": "key"}

    def test_unexpected_shape(self):
        url = "https://generativelanguage.googleapis.com/v1beta/x"
        with patch.object(httpx.Client, "post", return_value=_response(url, {"candidates": []})):
            with pytest.raises(GenerationError):
                GeminiGenerator("key").generate(_prompt())

    def test_http_error_is_retryable(self):
        url = "https://generativelanguage.googleapis.com/v1beta/x"
        with patch.object(httpx.Client, "post", return_value=_response(url, {}, status_code=503)):
            with pytest.raises(GenerationError) as exc:
                GeminiGenerator("key").generate(_prompt())
        assert exc.value.retryable


class TestOpenAI:

    def test_reads_first_choice(self):
        url = "https://api.openai.com/v1/chat/completions"
        payload = {"choices": [{"message": {"content": "Dear Acme"}}]}

        with patch.object(httpx.Client, "post", return_value=_response(url, payload)) as post:
            text = OpenAIGenerator("sk-test").generate(_prompt())

        assert text == "Dear Acme"
        assert post.call_args.kwargs["headers"]["Authorization"] == "Bearer sk-test"

    def test_connection_failure(self):
        with patch.object(httpx.Client, "post", side_effect=httpx.ConnectError("refused")):
            with pytest.raises(GenerationError):
                OpenAIGenerator("sk-test").generate(_prompt())


class TestProviderSelection:

    def test_unconfigured(self, monkeypatch):
        monkeypatch.setattr(config, "AI_API_KEY", "")
        with pytest.raises(GenerationError):
            get_letter_generator()

    @pytest.mark.parametrize("provider,cls", [("gemini", GeminiGenerator), ("openai", OpenAIGenerator)])
    def test_by_provider(self, monkeypatch, provider, cls):
        monkeypatch.setattr(config, "AI_API_KEY", "k")
        monkeypatch.setattr(config, "AI_PROVIDER", provider)
        monkeypatch.setattr(config, "AI_MODEL", "")
        assert isinstance(get_letter_generator(), cls)
