"""LLM provider abstraction - the injected "complete text" capability."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass
class LLMResponse:
    """Response from an LLM call."""

    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    raw_response: Any = None


class LLMProvider(ABC):
    """
    Abstract LLM provider - plug in any LLM backend.

    Node executors, the L2 scorer, the L3 judge and the optimizer only ever
    see this interface; no executor constructs its own client.
    """

    @abstractmethod
    def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        json_mode: bool = False,
        model: str | None = None,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation history [{role: "user"|"assistant", content: str}]
            system: System prompt
            max_tokens: Maximum tokens to generate
            json_mode: If True, request structured JSON output
            model: Override the provider's default model for this call

        Returns:
            LLMResponse with content and token usage
        """

    async def acomplete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        json_mode: bool = False,
        model: str | None = None,
    ) -> LLMResponse:
        """Async variant of complete(); runs the blocking call in a worker thread."""
        return await asyncio.to_thread(
            self.complete,
            messages,
            system=system,
            max_tokens=max_tokens,
            json_mode=json_mode,
            model=model,
        )

    async def complete_text(self, prompt: str, system: str = "", **kwargs: Any) -> str:
        """Single-turn convenience wrapper returning only the text."""
        response = await self.acomplete([{"role": "user", "content": prompt}], system, **kwargs)
        return response.content
