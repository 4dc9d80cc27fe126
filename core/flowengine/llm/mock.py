"""Deterministic provider for tests and offline runs."""

from collections.abc import Callable
from typing import Any

from flowengine.llm.provider import LLMProvider, LLMResponse


class MockLLMProvider(LLMProvider):
    """
    Returns canned responses without any network access.

    ``responses`` is consumed in order; once exhausted the last entry repeats.
    Alternatively pass ``responder`` to compute a reply from the prompt.
    Every call is recorded in ``calls``.
    """

    def __init__(
        self,
        responses: list[str] | None = None,
        responder: Callable[[list[dict[str, Any]], str], str] | None = None,
        model: str = "mock-model",
        fail_with: Exception | None = None,
    ):
        self.responses = list(responses or ["OK"])
        self.responder = responder
        self.model = model
        self.fail_with = fail_with
        self.calls: list[dict[str, Any]] = []
        self._index = 0

    def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        json_mode: bool = False,
        model: str | None = None,
    ) -> LLMResponse:
        self.calls.append({"messages": messages, "system": system, "json_mode": json_mode})
        if self.fail_with is not None:
            raise self.fail_with

        if self.responder is not None:
            content = self.responder(messages, system)
        else:
            content = self.responses[min(self._index, len(self.responses) - 1)]
            self._index += 1

        prompt_chars = sum(len(str(m.get("content", ""))) for m in messages) + len(system)
        return LLMResponse(
            content=content,
            model=model or self.model,
            input_tokens=prompt_chars // 4,
            output_tokens=len(content) // 4,
            stop_reason="end_turn",
        )
