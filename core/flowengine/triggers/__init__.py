"""Triggers: cron matching, schedule/calendar pollers and system schedules."""

from flowengine.triggers.calendar_poller import CalendarPoller, build_calendar_event
from flowengine.triggers.cron import compute_next_run_at, previous_fire, should_run_now
from flowengine.triggers.models import Trigger, TriggerType
from flowengine.triggers.schedule_poller import SchedulePoller

__all__ = [
    "CalendarPoller",
    "SchedulePoller",
    "Trigger",
    "TriggerType",
    "build_calendar_event",
    "compute_next_run_at",
    "previous_fire",
    "should_run_now",
]
