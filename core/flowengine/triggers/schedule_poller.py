"""
Schedule trigger poller.

Runs as a single repeatable job (concurrency 1) every poll interval. Each
enabled Schedule trigger is checked with ``should_run_now``; problems with
one trigger are logged and never stop the rest of the poll.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from flowengine.config import SchedulerConfig
from flowengine.errors import TriggerParseError
from flowengine.graph.executor import JobPayload
from flowengine.observability.logging import set_trace_context
from flowengine.runtime.event_bus import EventBus
from flowengine.storage.backend import RecordStore
from flowengine.triggers.cron import compute_next_run_at, should_run_now
from flowengine.triggers.models import Trigger, TriggerType

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = "This is a scheduled run. Execute your tasks according to your instructions."

EnqueueFn = Callable[[JobPayload], Awaitable[Any]]


class SchedulePoller:
    def __init__(
        self,
        triggers: RecordStore[Trigger],
        enqueue: EnqueueFn,
        config: SchedulerConfig | None = None,
        event_bus: EventBus | None = None,
    ):
        self.triggers = triggers
        self.enqueue = enqueue
        self.config = config or SchedulerConfig()
        self.event_bus = event_bus

    async def due_triggers(self) -> list[Trigger]:
        return await self.triggers.list(
            lambda t: t.type == TriggerType.SCHEDULE and t.enabled and bool(t.cron_expression)
        )

    async def poll_once(self, now: datetime | None = None) -> list[str]:
        """Check every enabled schedule trigger once; return the ids that fired."""
        now = now or datetime.now(UTC)
        interval = timedelta(seconds=self.config.poll_interval_s)
        fired: list[str] = []

        for trigger in await self.due_triggers():
            set_trace_context(trigger_id=trigger.id)
            try:
                if not should_run_now(trigger.cron_expression, trigger.last_run_at, now, interval):
                    continue
                if await self._fire(trigger, now):
                    fired.append(trigger.id)
            except TriggerParseError as e:
                logger.warning(f"Skipping trigger {trigger.id}: {e}")
            except Exception as e:
                logger.error(
                    f"Failed to fire trigger '{trigger.name}' ({trigger.id}): {e}", exc_info=True
                )
            finally:
                set_trace_context(trigger_id=None)

        if fired:
            logger.info(f"Schedule poll fired {len(fired)} trigger(s)")
        return fired

    async def _fire(self, trigger: Trigger, now: datetime) -> bool:
        if not trigger.workflow_id:
            logger.warning(f"Trigger {trigger.id} has no workflow, skipping")
            return False

        prompt = trigger.config.get("promptTemplate") or DEFAULT_PROMPT
        await self.enqueue(
            JobPayload(
                workflow_id=trigger.workflow_id,
                user_id=trigger.user_id,
                initial_data={
                    "agentId": trigger.agent_id,
                    "triggerId": trigger.id,
                    "prompt": prompt,
                    "scheduledAt": now.isoformat(),
                },
                triggered_by="schedule",
            )
        )

        # Persisted after the enqueue: a crash in between repeats a fire, never skips one
        trigger.last_run_at = now
        trigger.next_run_at = compute_next_run_at(trigger.cron_expression, now)
        await self.triggers.save(trigger.id, trigger)

        next_run = trigger.next_run_at.isoformat() if trigger.next_run_at else "unknown"
        logger.info(f"Fired trigger '{trigger.name}' ({trigger.id}), next run: {next_run}")
        if self.event_bus:
            await self.event_bus.emit_trigger_fired(trigger.id, trigger.workflow_id, "schedule")
        return True
