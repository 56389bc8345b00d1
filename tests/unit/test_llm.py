from types import SimpleNamespace

import pytest
from pydantic import ValidationError

from shelfmatch.matching.models import ComparisonResponse, MatchStatus
from shelfmatch.services.llm import LLMClient


class FakeCompletions:
    def __init__(self, content: str):
        self.content = content
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_client(content: str):
    completions = FakeCompletions(content)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


class TestCallStructured:

    @pytest.mark.asyncio
    async def test_parses_fenced_json(self):
        client, completions = fake_client(
            '```json\n{"matchStatus": "identical", "confidence": 0.93, "reason": "same pack"}\n```'
        )
        llm = LLMClient(client=client, model="test-model")

        result = await llm.call_structured(
            "compare", ComparisonResponse, system="judge", images=["data:crop", "https://ref.jpg"]
        )

        assert result.match_status == MatchStatus.IDENTICAL
        assert result.confidence == 0.93
        assert completions.kwargs["model"] == "test-model"
        assert completions.kwargs["temperature"] == 0
        assert completions.kwargs["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client, _ = fake_client("I think they match")

        with pytest.raises(ValueError, match="invalid JSON"):
            await LLMClient(client=client, model="m").call_structured("x", ComparisonResponse)

    @pytest.mark.asyncio
    async def test_schema_violation(self):
        client, _ = fake_client('{"matchStatus": "maybe", "confidence": 2}')

        with pytest.raises(ValidationError):
            await LLMClient(client=client, model="m").call_structured("x", ComparisonResponse)


class TestMessages:

    def test_images_follow_prompt_text(self):
        messages = LLMClient._build_messages("compare", "judge", ["data:crop", "https://ref.jpg"])

        assert messages[0] == {"role": "system", "content": "judge"}
        content = messages[1]["content"]
        assert content[0] == {"type": "text", "text": "compare"}
        assert [part["image_url"]["url"] for part in content[1:]] == ["data:crop", "https://ref.jpg"]

    def test_text_only(self):
        assert LLMClient._build_messages("hi", None, None) == [{"role": "user", "content": "hi"}]

    def test_strip_plain_fences(self):
        assert LLMClient._strip_fences('```\n{"a": 1}\n```') == '{"a": 1}'
