"""
Vision LLM client via OpenRouter (OpenAI-compatible API).
"""

import json
from typing import Type, TypeVar

from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from shelfmatch.config.settings import settings
from shelfmatch.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


class LLMClient:
    def __init__(self, client: AsyncOpenAI | None = None, model: str | None = None):
        self.client = client or AsyncOpenAI(
            base_url=settings.openrouter_base_url,
            api_key=settings.openrouter_api_key,
        )
        self.model = model or settings.llm_model

    async def call_structured(
        self,
        prompt: str,
        response_model: Type[T],
        system: str | None = None,
        images: list[str] | None = None,
    ) -> T:
        """
        Call LLM with JSON mode and validate against a Pydantic model.

        `images` are URLs or data URLs, sent after the prompt text in order.
        Pydantic validates the schema. Malformed output never reaches the
        application logic.
        """
        messages = self._build_messages(prompt, system, images)

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=0,
            response_format={"type": "json_object"},
        )
        raw = self._strip_fences(response.choices[0].message.content or "")

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error("json_parse_failed", raw=raw[:300], error=str(e))
            raise ValueError(f"LLM returned invalid JSON: {e}")

        try:
            return response_model.model_validate(parsed)
        except ValidationError:
            logger.error(
                "response_validation_failed",
                model=response_model.__name__,
                parsed=parsed,
            )
            raise

    @staticmethod
    def _strip_fences(text: str) -> str:
        text = text.strip()
        if text.startswith("```json"):
            text = text[7:]
        elif text.startswith("```"):
            text = text[3:]
        if text.endswith("```"):
            text = text[:-3]
        return text.strip()

    @staticmethod
    def _build_messages(
        prompt: str, system: str | None, images: list[str] | None
    ) -> list[dict]:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        if images:
            content: list[dict] = [{"type": "text", "text": prompt}]
            content.extend(
                {"type": "image_url", "image_url": {"url": url}} for url in images
            )
            messages.append({"role": "user", "content": content})
        else:
            messages.append({"role": "user", "content": prompt})
        return messages
