"""Tests for the OpenAI wrapper: usage reporting, JSON mode and failures."""
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from storyloop.engine.errors import CollaboratorError
from storyloop.utils.api_client import LLMClient, UsageReport, price_usage


def _response(content, prompt_tokens=120, completion_tokens=30, model="gpt-4o-mini"):
    return SimpleNamespace(
        model=model,
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
    )


@pytest.fixture
def client():
    llm = LLMClient()
    llm.reset_cost()
    fake = MagicMock()
    with patch.object(LLMClient, "client", new=fake):
        yield llm, fake


class TestUsageReport:
    def test_pricing(self):
        report = price_usage("gpt-4o-mini", 1_000_000, 1_000_000, 250)
        assert report.input_cost == pytest.approx(0.15)
        assert report.output_cost == pytest.approx(0.60)
        assert report.total_cost == pytest.approx(0.75)
        assert report.total_tokens == 2_000_000

    def test_unknown_model_uses_default_pricing(self):
        assert price_usage("mystery", 1_000_000, 0).input_cost == pytest.approx(0.15)

    def test_to_dict(self):
        data = UsageReport(input_tokens=3, output_tokens=4).to_dict()
        assert data["total_tokens"] == 7


class TestLLMClient:
    def test_singleton(self):
        assert LLMClient() is LLMClient()

    def test_chat_returns_text_and_usage(self, client):
        llm, fake = client
        fake.chat.completions.create.return_value = _response("Once upon a time")
        text, usage = llm.chat([{"role": "user", "content": "hi"}])
        assert text == "Once upon a time"
        assert usage.total_tokens == 150
        assert usage.model == "gpt-4o-mini"
        assert llm.total_input_tokens == 120

    def test_chat_json(self, client):
        llm, fake = client
        fake.chat.completions.create.return_value = _response('{"narration": "x"}')
        data, _ = llm.chat_json([{"role": "user", "content": "hi"}])
        assert data == {"narration": "x"}
        kwargs = fake.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}

    def test_malformed_json(self, client):
        llm, fake = client
        fake.chat.completions.create.return_value = _response("not json")
        with pytest.raises(CollaboratorError):
            llm.chat_json([{"role": "user", "content": "hi"}])

    def test_empty_message(self, client):
        llm, fake = client
        fake.chat.completions.create.return_value = _response("   ")
        with pytest.raises(CollaboratorError):
            llm.chat([{"role": "user", "content": "hi"}])

    def test_transport_failure_is_not_retried_by_default(self, client):
        llm, fake = client
        fake.chat.completions.create.side_effect = TimeoutError("slow")
        with pytest.raises(CollaboratorError):
            llm.chat([{"role": "user", "content": "hi"}])
        assert fake.chat.completions.create.call_count == 1
