"""Trigger node executors.

Trigger nodes sit at the root of a workflow. They run through the registry
like any other node and only normalise what the trigger put in the context.
"""

from datetime import UTC, datetime
from typing import Any

from flowengine.graph.capabilities import Capabilities
from flowengine.graph.models import ExecutionContext


async def manual_trigger(
    data: dict[str, Any],
    node_id: str,
    user_id: str,
    context: ExecutionContext,
    capabilities: Capabilities,
) -> ExecutionContext:
    return context


async def calendar_trigger(
    data: dict[str, Any],
    node_id: str,
    user_id: str,
    context: ExecutionContext,
    capabilities: Capabilities,
) -> ExecutionContext:
    """Expose the triggering calendar event, or a placeholder for manual runs."""
    if context.get("calendarEvent"):
        return context

    now = datetime.now(UTC).isoformat()
    return context.with_values(
        calendarEvent={
            "id": "manual",
            "title": "Manual trigger",
            "start": now,
            "end": now,
            "meetingUrl": context.get("meetingUrl"),
            "attendees": [],
        }
    )
