"""
Schedule evaluation for retrieval configurations.

Thin layer over ``cron_parser`` that speaks UTC instants, answers "is this
configuration due" and turns schedule problems into validation messages.
"""

from __future__ import annotations

from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from filepoll.service.cron_parser import CronParseError, next_fire_time_cron, parse_cron


def next_run(cron: str, timezone: str, after: datetime) -> datetime:
    """
    Next instant (UTC) at which ``cron`` fires in ``timezone``, strictly after ``after``.

    Naive ``after`` values are taken as UTC.
    """
    if after.tzinfo is None:
        after = after.replace(tzinfo=UTC)
    return next_fire_time_cron(cron, now=after, timezone=timezone).astimezone(UTC)


def is_due(cron: str, timezone: str, last_run: datetime | None, now: datetime) -> bool:
    """
    Whether a schedule that last ran at ``last_run`` should run at ``now``.

    A schedule that never ran is due immediately.
    """
    if last_run is None:
        return True
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return next_run(cron, timezone, last_run) <= now


def validate_schedule(cron: str, timezone: str) -> list[str]:
    """Return human-readable problems with a cron expression / IANA zone pair."""
    errors: list[str] = []
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        errors.append(f"unknown timezone {timezone!r}")

    try:
        parse_cron(cron)
    except CronParseError as e:
        errors.append(f"invalid cron expression: {e}")
        return errors

    if not errors:
        try:
            next_run(cron, timezone, datetime.now(UTC))
        except CronParseError as e:
            errors.append(f"cron expression never fires: {e}")
    return errors
