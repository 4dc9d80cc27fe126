"""Fixed-cadence system jobs, registered once at boot as Celery beat entries."""

import logging
from dataclasses import dataclass

from flowengine.runtime.queue import JobQueue

logger = logging.getLogger(__name__)

GENERATE_INSIGHTS = "generate-insights"
RUN_OPTIMIZATION = "run-optimization"
PROPOSE_MODIFICATIONS = "propose-modifications"
CHECK_SCHEDULE_TRIGGERS = "check-schedule-triggers"
CHECK_CALENDAR_EVENTS = "check-calendar-events"


@dataclass(frozen=True)
class SystemSchedule:
    name: str
    pattern: str | None = None
    every_s: float | None = None
    description: str = ""


BATCH_SCHEDULES = (
    SystemSchedule(GENERATE_INSIGHTS, pattern="0 3 * * *", description="Daily at 3 AM"),
    SystemSchedule(RUN_OPTIMIZATION, pattern="0 4 * * 1", description="Weekly, Monday 4 AM"),
    SystemSchedule(PROPOSE_MODIFICATIONS, pattern="0 4 * * 2", description="Weekly, Tuesday 4 AM"),
)


def polling_schedules(poll_interval_s: float) -> tuple[SystemSchedule, ...]:
    return (
        SystemSchedule(CHECK_SCHEDULE_TRIGGERS, every_s=poll_interval_s, description="Cron"),
        SystemSchedule(CHECK_CALENDAR_EVENTS, every_s=poll_interval_s, description="Calendar"),
    )


def register_system_schedules(
    queue: JobQueue, schedules: tuple[SystemSchedule, ...] | list[SystemSchedule]
) -> None:
    for schedule in schedules:
        queue.add_repeatable(schedule.name, pattern=schedule.pattern, every_s=schedule.every_s)
    logger.info(f"Registered {len(schedules)} system schedule(s) on '{queue.name}'")
