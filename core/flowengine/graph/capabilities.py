"""
Side-effecting collaborators handed to node executors.

Executors never construct clients themselves. The host builds one
``Capabilities`` per execution (so the tracer and status publisher are
bound to that execution) and passes it to every node.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

if TYPE_CHECKING:
    import httpx

    from flowengine.eval.gate import EvalGate
    from flowengine.llm.provider import LLMProvider
    from flowengine.observability.tracer import Tracer

logger = logging.getLogger(__name__)

R = TypeVar("R")


class NodeStatus(StrEnum):
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


PublishStatus = Callable[[str, NodeStatus], Awaitable[None]]


async def _discard_status(node_id: str, status: NodeStatus) -> None:
    return None


class ActionSink(Protocol):
    """External messaging / document capability (email, chat, docs)."""

    async def perform(self, action: str, args: dict[str, Any], user_id: str) -> dict[str, Any]: ...


class CalendarSource(Protocol):
    """Lists a user's calendar events overlapping a time window."""

    async def list_events(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[dict[str, Any]]: ...


class StepRunner:
    """
    Named step wrapper with optional in-process retry.

    Whole-job retry is the default recovery mechanism, so ``attempts``
    defaults to 1. Executors opt into more attempts only for calls that are
    safe to repeat.
    """

    def __init__(self, attempts: int = 1, backoff_s: float = 0.5):
        self.attempts = max(1, attempts)
        self.backoff_s = backoff_s

    async def run(
        self,
        name: str,
        fn: Callable[[], Awaitable[R]],
        attempts: int | None = None,
    ) -> R:
        max_attempts = max(1, attempts or self.attempts)
        for attempt in range(1, max_attempts + 1):
            try:
                return await fn()
            except Exception as e:
                if attempt >= max_attempts:
                    raise
                wait = self.backoff_s * (2 ** (attempt - 1))
                logger.warning(
                    f"Step '{name}' failed ({attempt}/{max_attempts}): {e}; retrying in {wait:.1f}s"
                )
                await asyncio.sleep(wait)
        raise RuntimeError("unreachable")


@dataclass
class Capabilities:
    publish_status: PublishStatus = _discard_status
    step: StepRunner = field(default_factory=StepRunner)
    llm: LLMProvider | None = None
    http: httpx.AsyncClient | None = None
    actions: ActionSink | None = None
    calendar: CalendarSource | None = None
    tracer: Tracer | None = None
    gate: EvalGate | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    def bind(self, **overrides: Any) -> Capabilities:
        """Copy with some collaborators swapped (e.g. a per-execution tracer)."""
        return replace(self, **overrides)

    def require(self, name: str) -> Any:
        value = getattr(self, name)
        if value is None:
            raise RuntimeError(f"Capability '{name}' is not configured")
        return value
