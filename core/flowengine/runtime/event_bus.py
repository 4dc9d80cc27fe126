"""
Event Bus - in-process pub/sub for workflow runs, triggers and approvals.

The workflow executor reports each run's lifecycle and per-node status
(loading/success/error) here, pollers report fired triggers and the eval
gate reports its decisions. Realtime channels, UIs and tests subscribe.
A failing handler is logged and never reaches the publisher.
"""

import asyncio
import itertools
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    EXECUTION_STARTED = "execution_started"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"

    NODE_STATUS = "node_status"
    NODE_SKIPPED = "node_skipped"

    TRIGGER_FIRED = "trigger_fired"

    EVAL_DECISION = "eval_decision"
    CONFIRMATION_REQUESTED = "confirmation_requested"


@dataclass
class EngineEvent:
    type: EventType
    workflow_id: str | None = None
    execution_id: str | None = None
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": str(self.type),
            "workflow_id": self.workflow_id,
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[EngineEvent], Awaitable[None]]


@dataclass
class Subscription:
    id: str
    event_types: frozenset[EventType]
    handler: EventHandler
    workflow_id: str | None = None
    execution_id: str | None = None

    def wants(self, event: EngineEvent) -> bool:
        return (
            event.type in self.event_types
            and (self.workflow_id is None or self.workflow_id == event.workflow_id)
            and (self.execution_id is None or self.execution_id == event.execution_id)
        )


class EventBus:
    """
    Usage::

        bus = EventBus()

        async def on_failed(event: EngineEvent):
            alert(event.workflow_id, event.data["error"])

        bus.subscribe([EventType.EXECUTION_FAILED], on_failed)
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        self._subscriptions: dict[str, Subscription] = {}
        self._history: deque[EngineEvent] = deque(maxlen=max_history)
        self._handler_slots = asyncio.Semaphore(max_concurrent_handlers)
        self._ids = itertools.count(1)

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_workflow: str | None = None,
        filter_execution: str | None = None,
    ) -> str:
        """Register ``handler``; the returned id is what ``unsubscribe`` takes."""
        sub_id = f"sub_{next(self._ids)}"
        self._subscriptions[sub_id] = Subscription(
            sub_id, frozenset(event_types), handler, filter_workflow, filter_execution
        )
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    async def publish(self, event: EngineEvent) -> None:
        self._history.append(event)
        targets = [s for s in list(self._subscriptions.values()) if s.wants(event)]
        if targets:
            await asyncio.gather(*(self._deliver(s, event) for s in targets))

    async def _deliver(self, subscription: Subscription, event: EngineEvent) -> None:
        async with self._handler_slots:
            try:
                await subscription.handler(event)
            except Exception as e:
                logger.error(f"Event handler {subscription.id} failed on {event.type}: {e}")

    async def _emit(
        self,
        event_type: EventType,
        workflow_id: str | None = None,
        execution_id: str | None = None,
        node_id: str | None = None,
        **data: Any,
    ) -> None:
        await self.publish(EngineEvent(event_type, workflow_id, execution_id, node_id, data))

    # === Publishers used by the engine ===

    async def emit_execution_started(
        self, workflow_id: str, execution_id: str, triggered_by: str
    ) -> None:
        await self._emit(
            EventType.EXECUTION_STARTED, workflow_id, execution_id, triggered_by=triggered_by
        )

    async def emit_execution_completed(
        self, workflow_id: str, execution_id: str, output: dict[str, Any] | None = None
    ) -> None:
        await self._emit(
            EventType.EXECUTION_COMPLETED, workflow_id, execution_id, output=output or {}
        )

    async def emit_execution_failed(
        self, workflow_id: str, execution_id: str, error: str, node_id: str | None = None
    ) -> None:
        await self._emit(
            EventType.EXECUTION_FAILED, workflow_id, execution_id, node_id, error=error
        )

    async def emit_node_status(
        self, workflow_id: str, execution_id: str, node_id: str, status: str
    ) -> None:
        await self._emit(
            EventType.NODE_STATUS, workflow_id, execution_id, node_id, status=str(status)
        )

    async def emit_node_skipped(self, workflow_id: str, execution_id: str, node_id: str) -> None:
        await self._emit(EventType.NODE_SKIPPED, workflow_id, execution_id, node_id)

    async def emit_trigger_fired(
        self, trigger_id: str, workflow_id: str | None, source: str
    ) -> None:
        await self._emit(
            EventType.TRIGGER_FIRED, workflow_id, trigger_id=trigger_id, source=source
        )

    # === Queries ===

    def get_history(
        self,
        event_type: EventType | None = None,
        execution_id: str | None = None,
        limit: int = 100,
    ) -> list[EngineEvent]:
        """Most recent first."""
        matching = (
            e
            for e in reversed(self._history)
            if (event_type is None or e.type == event_type)
            and (execution_id is None or e.execution_id == execution_id)
        )
        return list(itertools.islice(matching, limit))

    async def wait_for(
        self,
        event_type: EventType,
        execution_id: str | None = None,
        timeout: float | None = None,
    ) -> EngineEvent | None:
        """Block until a matching event is published; None if ``timeout`` passes first."""
        arrived: asyncio.Future[EngineEvent] = asyncio.get_running_loop().create_future()

        async def capture(event: EngineEvent) -> None:
            if not arrived.done():
                arrived.set_result(event)

        sub_id = self.subscribe([event_type], capture, filter_execution=execution_id)
        try:
            return await asyncio.wait_for(arrived, timeout=timeout)
        except TimeoutError:
            return None
        finally:
            self.unsubscribe(sub_id)
