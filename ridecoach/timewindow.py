"""Interval overlap, proximity and free-slot search."""

from collections.abc import Iterable, Sequence
from datetime import UTC, date, datetime, time, timedelta, tzinfo


def utc_now() -> datetime:
    return datetime.now(UTC)


def overlaps(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    """True iff the half-open intervals [a_start, a_end) and [b_start, b_end) intersect."""
    return a_start < b_end and b_start < a_end


def within(delta: timedelta, limit: timedelta) -> bool:
    """True if ``delta`` (either sign) is strictly inside ``limit``."""
    return abs(delta) < limit


def duration_or_default(minutes: int | None, default_minutes: int) -> timedelta:
    return timedelta(minutes=minutes or default_minutes)


def parse_slot(value: str | time) -> time:
    """Accept ``"HH:MM"`` strings from settings as well as ``time`` objects."""
    if isinstance(value, time):
        return value
    hour, _, minute = value.partition(":")
    return time(int(hour), int(minute or 0))


def first_free_slot(
    day: date,
    candidate_times: Sequence[time | str],
    duration: timedelta,
    busy_intervals: Iterable[tuple[datetime, datetime]],
    tz: tzinfo | None = None,
) -> datetime | None:
    """Return the first candidate start on ``day`` whose window avoids every busy interval.

    Candidates are tried in the order given; ``tz`` is attached to each
    candidate so comparisons against aware busy intervals are valid.
    """
    if duration <= timedelta(0):
        raise ValueError(f"duration must be positive, got {duration}")

    busy = list(busy_intervals)
    for candidate in candidate_times:
        slot_start = datetime.combine(day, parse_slot(candidate), tzinfo=tz)
        slot_end = slot_start + duration
        if not any(
            overlaps(slot_start, slot_end, busy_start, busy_end)
            for busy_start, busy_end in busy
        ):
            return slot_start
    return None
