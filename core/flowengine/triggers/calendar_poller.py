"""
Calendar trigger poller.

Every poll looks at workflows with a ``calendar_trigger`` node, asks the
calendar source for events starting inside ``[now + offset, now + offset +
window]`` and enqueues one run per new event. Seen events are remembered as
``workflow_id:event_id`` keys; the set is bounded and forgets the oldest
keys first, and it is process-local (a restart may fire an event again).
"""

import logging
from collections import OrderedDict
from datetime import UTC, datetime, timedelta
from typing import Any

from flowengine.config import SchedulerConfig
from flowengine.graph.capabilities import CalendarSource
from flowengine.graph.executor import JobPayload
from flowengine.graph.models import Workflow
from flowengine.runtime.event_bus import EventBus
from flowengine.storage.backend import RecordStore
from flowengine.triggers.schedule_poller import EnqueueFn

logger = logging.getLogger(__name__)

CALENDAR_NODE_TYPE = "calendar_trigger"


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _start_of(event: dict[str, Any]) -> str | None:
    start = event.get("start")
    if isinstance(start, dict):
        return start.get("dateTime")
    return start


def _end_of(event: dict[str, Any]) -> str | None:
    end = event.get("end")
    if isinstance(end, dict):
        return end.get("dateTime")
    return end


def meeting_url(event: dict[str, Any]) -> str | None:
    if event.get("hangoutLink"):
        return event["hangoutLink"]
    entry_points = (event.get("conferenceData") or {}).get("entryPoints") or []
    for entry in entry_points:
        if entry.get("entryPointType") == "video":
            return entry.get("uri")
    return event.get("meetingUrl")


def build_calendar_event(event: dict[str, Any]) -> dict[str, Any]:
    """Normalize a provider event into the ``calendarEvent`` context shape."""
    start = _start_of(event)
    organizer = event.get("organizer")
    return {
        "id": event["id"],
        "title": event.get("summary") or event.get("title") or "Untitled Meeting",
        "start": start,
        "end": _end_of(event) or start,
        "meetingUrl": meeting_url(event),
        "attendees": [
            {
                "email": a.get("email") or "",
                "displayName": a.get("displayName"),
                "organizer": a.get("organizer"),
            }
            for a in event.get("attendees") or []
        ],
        "organizer": {"email": organizer.get("email") or ""} if organizer else None,
    }


class CalendarPoller:
    def __init__(
        self,
        workflows: RecordStore[Workflow],
        calendar: CalendarSource,
        enqueue: EnqueueFn,
        config: SchedulerConfig | None = None,
        event_bus: EventBus | None = None,
    ):
        self.workflows = workflows
        self.calendar = calendar
        self.enqueue = enqueue
        self.config = config or SchedulerConfig()
        self.event_bus = event_bus
        self._seen: OrderedDict[str, None] = OrderedDict()

    def _remember(self, key: str) -> None:
        self._seen[key] = None
        while len(self._seen) > self.config.dedupe_capacity:
            self._seen.popitem(last=False)

    def has_seen(self, workflow_id: str, event_id: str) -> bool:
        return f"{workflow_id}:{event_id}" in self._seen

    async def poll_once(self, now: datetime | None = None) -> list[str]:
        """Enqueue runs for new events; return the dedupe keys that fired."""
        now = now or datetime.now(UTC)
        workflows = await self.workflows.list(lambda w: bool(w.nodes_of_type(CALENDAR_NODE_TYPE)))
        fired: list[str] = []

        for workflow in workflows:
            try:
                fired += await self._poll_workflow(workflow, now)
            except Exception as e:
                logger.error(
                    f"Failed to check events for workflow {workflow.id}: {e}", exc_info=True
                )
        return fired

    async def _poll_workflow(self, workflow: Workflow, now: datetime) -> list[str]:
        node = workflow.nodes_of_type(CALENDAR_NODE_TYPE)[0]
        offset = node.data.get("minutesOffset")
        if offset is None:
            offset = self.config.calendar_default_offset_minutes
        window_start = now + timedelta(minutes=offset)
        window_end = window_start + timedelta(minutes=self.config.calendar_window_minutes)

        events = await self.calendar.list_events(workflow.user_id or "", window_start, window_end)
        fired: list[str] = []
        for event in events or []:
            event_start = _parse_time(_start_of(event))
            if not event.get("id") or event_start is None:
                continue
            key = f"{workflow.id}:{event['id']}"
            if key in self._seen:
                continue
            if event_start < window_start or event_start > window_end:
                continue

            calendar_event = build_calendar_event(event)
            logger.info(
                f"Triggering workflow {workflow.id} for event "
                f"'{calendar_event['title']}' ({event['id']})"
            )
            try:
                await self.enqueue(
                    JobPayload(
                        workflow_id=workflow.id,
                        user_id=workflow.user_id,
                        initial_data={
                            "calendarEvent": calendar_event,
                            "agentId": workflow.agent_id,
                        },
                        triggered_by="calendar",
                    )
                )
            except Exception as e:
                # Not remembered, so the next poll inside the window tries again
                logger.error(f"Failed to enqueue {key}: {e}", exc_info=True)
                continue
            self._remember(key)
            if self.event_bus:
                await self.event_bus.emit_trigger_fired(key, workflow.id, "calendar")
            fired.append(key)
        return fired
