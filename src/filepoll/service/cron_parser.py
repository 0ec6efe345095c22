"""
Cron expression parser for filepoll scheduling.

Parses standard 5-field crontab expressions and computes next fire times.
Used by ``filepoll.service.schedule`` to compute ``next_scheduled_run``.

Cron support:
- Standard 5 fields: minute hour day month day_of_week
- Supported tokens per field: '*', '*/n', 'a', 'a,b,c', 'a-b', 'a-b/n'
- Day-of-month vs day-of-week semantics: if both are restricted (not '*'),
  then match if (dom matches OR dow matches). This matches traditional cron.

Matching happens on local wall-clock time; each matching wall-clock minute is
then mapped to an instant with a fixed daylight-saving policy:
- a local time inside a spring-forward gap fires at the first wall-clock
  minute after the gap (the transition instant);
- a local time repeated by a fall-back transition fires once, at its first
  occurrence.

Uses stdlib ``zoneinfo`` for timezone handling.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo

# Feb 29 on a given weekday can be more than four years away.
_SEARCH_WINDOW = timedelta(days=366 * 8 + 2)
# Largest clock jump on record is a full skipped day.
_MAX_GAP_MINUTES = 24 * 60 + 1


class CronParseError(ValueError):
    pass


@dataclass(frozen=True)
class CronSpec:
    minutes: frozenset[int]
    hours: frozenset[int]
    dom: frozenset[int]  # 1-31
    months: frozenset[int]  # 1-12
    dow: frozenset[int]  # 0-6 (0=Sunday)
    dom_any: bool
    dow_any: bool


def next_fire_time_cron(expr: str, *, now: datetime, timezone: str | None = None) -> datetime:
    """
    Compute next fire time for a standard 5-field cron expression.

    Args:
        expr: Cron expression (e.g. "0 6 * * *" for daily at 6am)
        now: Reference instant; naive values are read as local time in ``timezone``
        timezone: Optional timezone name (e.g. "UTC", "America/New_York")

    Returns:
        Aware datetime (in ``timezone``) strictly after ``now``

    Raises:
        CronParseError: If the expression is invalid or produces no match
    """
    tz = ZoneInfo(timezone) if timezone else ZoneInfo("UTC")
    if now.tzinfo is None:
        now = now.replace(tzinfo=tz)

    spec = parse_cron(expr)
    local = now.astimezone(tz).replace(tzinfo=None, second=0, microsecond=0)
    limit = local + _SEARCH_WINDOW
    cursor = local + timedelta(minutes=1)

    while cursor <= limit:
        candidate = _find_next_match(spec, cursor, limit)
        instant = _to_instant(candidate, tz)
        # Gap and repeated-hour mappings can land at or before ``now``.
        if instant > now:
            return instant.astimezone(tz)
        cursor = candidate + timedelta(minutes=1)

    raise CronParseError(f"cron expression {expr!r} produced no next fire time within safety window")


def _to_instant(local: datetime, tz: ZoneInfo) -> datetime:
    """Map a naive wall-clock time in ``tz`` to a UTC instant."""
    instant = local.replace(tzinfo=tz, fold=0).astimezone(UTC)
    if _exists(local, instant, tz):
        # fold=0 is the first occurrence of an ambiguous time
        return instant

    probe = local
    for _ in range(_MAX_GAP_MINUTES):
        probe += timedelta(minutes=1)
        instant = probe.replace(tzinfo=tz, fold=0).astimezone(UTC)
        if _exists(probe, instant, tz):
            return instant
    raise CronParseError(f"no valid local time after {local.isoformat()} in {tz.key}")


def _exists(local: datetime, instant: datetime, tz: ZoneInfo) -> bool:
    return instant.astimezone(tz).replace(tzinfo=None) == local


def _find_next_match(spec: CronSpec, cursor: datetime, limit: datetime) -> datetime:
    cur = cursor

    while cur <= limit:
        if cur.month not in spec.months:
            cur = _ceil_month(cur, spec)
            continue

        # Evaluate dom/dow with cron OR semantics (when both restricted).
        if not _dom_or_dow_match(spec, cur):
            cur = _ceil_day(cur)
            continue

        if cur.hour not in spec.hours:
            cur = _ceil_hour(cur)
            continue
        if cur.minute not in spec.minutes:
            cur = _ceil_minute(cur)
            continue
        return cur

    raise CronParseError("cron expression produced no next fire time within safety window")


def _dom_or_dow_match(spec: CronSpec, dt: datetime) -> bool:
    dom_match = dt.day in spec.dom
    # Python: Monday=0..Sunday=6; cron: Sunday=0..Saturday=6
    cron_dow = (dt.weekday() + 1) % 7
    dow_match = cron_dow in spec.dow

    if spec.dom_any and spec.dow_any:
        return True
    if spec.dom_any and not spec.dow_any:
        return dow_match
    if spec.dow_any and not spec.dom_any:
        return dom_match
    # Both restricted -> OR semantics
    return dom_match or dow_match


def _ceil_month(dt: datetime, spec: CronSpec) -> datetime:
    # Advance to next allowed month, set day/hour/minute minimal.
    for _ in range(24):
        dt = (dt.replace(day=1, hour=0, minute=0) + timedelta(days=32)).replace(day=1)
        if dt.month in spec.months:
            return dt
    return dt


def _ceil_day(dt: datetime) -> datetime:
    return (dt + timedelta(days=1)).replace(hour=0, minute=0)


def _ceil_hour(dt: datetime) -> datetime:
    return (dt + timedelta(hours=1)).replace(minute=0)


def _ceil_minute(dt: datetime) -> datetime:
    return dt + timedelta(minutes=1)


@lru_cache(maxsize=512)
def parse_cron(expr: str) -> CronSpec:
    """Parse a 5-field cron expression, raising CronParseError when invalid."""
    parts = [p for p in expr.strip().split() if p]
    if len(parts) != 5:
        raise CronParseError(f"cron must have 5 fields, got {len(parts)}: {expr!r}")

    return CronSpec(
        minutes=frozenset(_parse_field(parts[0], min_v=0, max_v=59)),
        hours=frozenset(_parse_field(parts[1], min_v=0, max_v=23)),
        dom=frozenset(_parse_field(parts[2], min_v=1, max_v=31)),
        months=frozenset(_parse_field(parts[3], min_v=1, max_v=12)),
        dow=frozenset(_parse_field(parts[4], min_v=0, max_v=6, allow_7_as_0=True)),
        dom_any=parts[2] == "*",
        dow_any=parts[4] == "*",
    )


def _parse_field(
    token: str,
    *,
    min_v: int,
    max_v: int,
    allow_7_as_0: bool = False,
) -> set[int]:
    token = token.strip()
    if token == "*":
        return set(range(min_v, max_v + 1))

    # 7 is accepted as Sunday in ranges, so the range bound is one wider.
    range_max = 7 if allow_7_as_0 else max_v

    values: set[int] = set()
    for part in token.split(","):
        part = part.strip()
        if not part:
            raise CronParseError(f"empty list item in field: {token!r}")
        step = 1
        if "/" in part:
            base, step_s = part.split("/", 1)
            step_s = step_s.strip()
            if not step_s.isdigit() or int(step_s) == 0:
                raise CronParseError(f"invalid step in field: {token!r}")
            step = int(step_s)
            part = base.strip()

        if part == "*":
            values.update(range(min_v, max_v + 1, step))
            continue

        if "-" in part:
            a_s, b_s = part.split("-", 1)
            if not (a_s.strip().isdigit() and b_s.strip().isdigit()):
                raise CronParseError(f"invalid range in field: {token!r}")
            a = int(a_s)
            b = int(b_s)
            if a > b:
                raise CronParseError(f"range start > end in field: {token!r}")
            if a < min_v or b > range_max:
                raise CronParseError(f"range out of bounds in field: {token!r}")
            # "5-7" in day-of-week means Fri, Sat, Sun
            values.update(0 if allow_7_as_0 and v == 7 else v for v in range(a, b + 1, step))
            continue

        if not part.isdigit():
            raise CronParseError(f"invalid value in field: {token!r}")
        v = int(part)
        if allow_7_as_0 and v == 7:
            v = 0
        if v < min_v or v > max_v:
            raise CronParseError(f"value out of bounds in field: {token!r}")
        if step > 1:
            # "5/15" means every 15 starting at 5
            values.update(range(v, max_v + 1, step))
        else:
            values.add(v)

    if not values:
        raise CronParseError(f"empty field: {token!r}")
    return values
