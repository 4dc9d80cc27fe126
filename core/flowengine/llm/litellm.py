"""LiteLLM-backed provider: one interface over Anthropic, OpenAI and friends."""

import logging
from typing import Any

import litellm

from flowengine.config import DEFAULT_MODEL
from flowengine.llm.provider import LLMProvider, LLMResponse

logger = logging.getLogger(__name__)

DEFAULT_NUM_RETRIES = 3


class LiteLLMProvider(LLMProvider):
    """
    Provider that routes calls through ``litellm.completion`` and
    ``litellm.acompletion``.

    Model strings use LiteLLM's ``provider/model`` convention, e.g.
    ``anthropic/claude-sonnet-4-20250514``. Rate limits and transient API
    errors are retried by LiteLLM itself (``num_retries``).
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        api_key: str | None = None,
        api_base: str | None = None,
        temperature: float = 0.7,
        num_retries: int = DEFAULT_NUM_RETRIES,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.temperature = temperature
        self.num_retries = num_retries

    def _request(
        self,
        messages: list[dict[str, Any]],
        system: str,
        max_tokens: int,
        json_mode: bool,
        model: str | None,
    ) -> dict[str, Any]:
        full_messages = list(messages)
        if system:
            full_messages.insert(0, {"role": "system", "content": system})

        kwargs: dict[str, Any] = {
            "model": model or self.model,
            "messages": full_messages,
            "max_tokens": max_tokens,
            "temperature": self.temperature,
            "num_retries": self.num_retries,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    @staticmethod
    def _to_response(response: Any, requested_model: str) -> LLMResponse:
        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=choice.message.content or "",
            model=response.model or requested_model,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            stop_reason=choice.finish_reason or "",
            raw_response=response,
        )

    def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        json_mode: bool = False,
        model: str | None = None,
    ) -> LLMResponse:
        kwargs = self._request(messages, system, max_tokens, json_mode, model)
        return self._to_response(litellm.completion(**kwargs), kwargs["model"])

    async def acomplete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        json_mode: bool = False,
        model: str | None = None,
    ) -> LLMResponse:
        kwargs = self._request(messages, system, max_tokens, json_mode, model)
        logger.debug(f"LLM call to {kwargs['model']} ({len(kwargs['messages'])} messages)")
        return self._to_response(await litellm.acompletion(**kwargs), kwargs["model"])
