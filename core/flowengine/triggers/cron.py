"""
Cron matching for polled schedule triggers.

A trigger fires in a poll when its most recent scheduled instant ``prev``
lies inside ``[now - poll_interval, now]`` and it has not already run for
that instant (``last_run_at`` is unset or strictly before ``prev``). The
window catches every slot once; the ``last_run_at`` guard stops a second
fire when the same minute is polled twice.
"""

from datetime import UTC, datetime, timedelta

from croniter import croniter

from flowengine.errors import TriggerParseError

DEFAULT_POLL_INTERVAL = timedelta(seconds=60)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _parse(expression: str, base: datetime) -> croniter:
    try:
        return croniter(expression, base)
    except (ValueError, KeyError) as e:
        raise TriggerParseError(expression, str(e)) from e


def previous_fire(expression: str, now: datetime) -> datetime:
    """Latest scheduled instant at or before ``now``."""
    now = _aware(now)
    # Cron has minute granularity, so starting one second later makes an
    # instant equal to ``now`` count as the previous fire.
    base = now.replace(microsecond=0) + timedelta(seconds=1)
    return _parse(expression, base).get_prev(datetime)


def should_run_now(
    expression: str,
    last_run_at: datetime | None,
    now: datetime | None = None,
    poll_interval: timedelta = DEFAULT_POLL_INTERVAL,
) -> bool:
    """
    Decide whether this poll should fire the trigger.

    Raises:
        TriggerParseError: If the expression is not a valid cron expression
    """
    now = _aware(now or datetime.now(UTC))
    prev = previous_fire(expression, now)
    if not (now - poll_interval <= prev <= now):
        return False
    return last_run_at is None or _aware(last_run_at) < prev


def compute_next_run_at(expression: str, now: datetime | None = None) -> datetime | None:
    """Next scheduled instant after ``now``, or None if the expression is invalid."""
    try:
        return _parse(expression, _aware(now or datetime.now(UTC))).get_next(datetime)
    except TriggerParseError:
        return None


def is_valid_expression(expression: str) -> bool:
    return croniter.is_valid(expression)
