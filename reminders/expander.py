"""Expand repeat rules into concrete occurrence times.

Pure functions, no I/O. Repeating occurrences are always computed as
anchor + k * period with calendar arithmetic (dateutil.relativedelta), so:
- month/year steps clamp the day of month (Jan 31 + 1 month = Feb 28/29)
- the series never drifts (Jan 31 -> Feb 29 -> Mar 31, not Mar 29)
- wall-clock time survives DST changes
"""

from datetime import datetime, time
from typing import Optional

from dateutil.relativedelta import relativedelta

import config
from .models import RepeatFrequency, RepeatRule

_UNITS = {
    RepeatFrequency.DAILY: "days",
    RepeatFrequency.WEEKLY: "weeks",
    RepeatFrequency.MONTHLY: "months",
    RepeatFrequency.YEARLY: "years",
}


def floor_to_minute(dt: datetime) -> datetime:
    """Floor a timestamp to the start of its minute."""
    return dt.replace(second=0, microsecond=0)


def next_occurrence(rule: RepeatRule, from_: datetime, anchor: datetime) -> Optional[datetime]:
    """Get the next occurrence strictly after `from_`.

    Args:
        rule: The reminder's repeat rule
        from_: Reference time (usually now)
        anchor: First occurrence of the series

    Returns:
        The next occurrence, or None when the series is complete
        (already fired, exhausted or malformed)
    """
    if rule.frequency == RepeatFrequency.NONE:
        return anchor if anchor > from_ else None

    if rule.frequency == RepeatFrequency.CUSTOM:
        return _next_custom(rule, from_, anchor)

    if rule.interval < 1:
        return None

    if anchor > from_:
        return anchor

    unit = _UNITS[rule.frequency]
    # Jump close to from_ so long-running series don't loop from the anchor
    k = max(0, _periods_between(rule.frequency, anchor, from_) // rule.interval - 1)
    while True:
        candidate = anchor + relativedelta(**{unit: k * rule.interval})
        if candidate > from_:
            return candidate
        k += 1


def upcoming_occurrences(
    rule: RepeatRule,
    from_: datetime,
    anchor: datetime,
    limit: int
) -> list[datetime]:
    """Get up to `limit` consecutive occurrences after `from_`."""
    occurrences = []
    cursor = from_
    while len(occurrences) < limit:
        nxt = next_occurrence(rule, cursor, anchor)
        if nxt is None:
            break
        occurrences.append(nxt)
        cursor = nxt
    return occurrences


def _periods_between(frequency: RepeatFrequency, start: datetime, end: datetime) -> int:
    """Whole calendar units from start to end (may overshoot by one)."""
    if frequency == RepeatFrequency.DAILY:
        return (end - start).days
    if frequency == RepeatFrequency.WEEKLY:
        return (end - start).days // 7
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if frequency == RepeatFrequency.MONTHLY:
        return months
    return months // 12


def _next_custom(rule: RepeatRule, from_: datetime, anchor: datetime) -> Optional[datetime]:
    """Smallest custom date on or after from_'s day that still lies ahead.

    Dates are compared at day granularity; the time of day of every
    occurrence is the rule's time_of_day (config default otherwise).
    """
    if not rule.dates:
        return None

    fire_time: time = rule.time_of_day or config.CUSTOM_DATES_FIRE_TIME
    tz = anchor.tzinfo or from_.tzinfo
    for day in sorted(d for d in rule.dates if d >= from_.date()):
        candidate = datetime.combine(day, fire_time, tzinfo=tz)
        if candidate > from_:
            return candidate
    return None
