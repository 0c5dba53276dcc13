from datetime import datetime, date, time, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cohort_scheduler.utils.errors import TimezoneError
from cohort_scheduler.utils.logging import get_logger

logger = get_logger()


def utc_now() -> datetime:
    """
    Get current UTC datetime as a timezone-aware datetime.

    Returns:
        datetime: Current UTC datetime with timezone info
    """
    return datetime.now(timezone.utc)


def naive_utc_now() -> datetime:
    """
    Get current UTC datetime as a naive datetime (no timezone info).
    All instants are stored this way.

    Returns:
        datetime: Current UTC datetime without timezone info
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime object to UTC timezone-aware datetime.

    Args:
        dt: Datetime object to convert

    Returns:
        datetime: UTC timezone-aware datetime
    """
    if dt.tzinfo is None:
        # Assume naive datetime is in UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_naive_utc(dt: datetime) -> datetime:
    """
    Convert a datetime object to naive UTC (no timezone info).

    Args:
        dt: Datetime object to convert

    Returns:
        datetime: Naive UTC datetime
    """
    if dt.tzinfo is None:
        # Already naive, assume it's UTC
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def get_zone(zone_name: str) -> ZoneInfo:
    """Load an IANA zone, raising TimezoneError when it cannot be resolved."""
    if not zone_name:
        raise TimezoneError("Timezone name is empty")
    try:
        return ZoneInfo(zone_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise TimezoneError(f"Unknown timezone '{zone_name}': {str(e)}")


def resolve_local_datetime(zone_name: str, local_dt: datetime) -> datetime:
    """
    Convert a naive wall-clock datetime in `zone_name` to an aware UTC instant.

    DST policy:
    - Ambiguous local times (clocks fall back) resolve to the later instant.
    - Nonexistent local times (clocks spring forward) resolve to the instant
      after the gap, i.e. the wall time shifted forward by the gap length.

    Both cases reduce to taking the later of the two `fold` interpretations.

    Args:
        zone_name: IANA timezone name, e.g. "America/New_York"
        local_dt: Naive local datetime

    Returns:
        datetime: UTC timezone-aware datetime

    Raises:
        TimezoneError: If the zone is unknown or the datetime is already aware
    """
    if local_dt.tzinfo is not None:
        raise TimezoneError("Local datetime must be naive (wall-clock time)")

    zone = get_zone(zone_name)

    first = local_dt.replace(tzinfo=zone, fold=0).astimezone(timezone.utc)
    second = local_dt.replace(tzinfo=zone, fold=1).astimezone(timezone.utc)
    resolved = max(first, second)

    if first != second:
        round_trip = resolved.astimezone(zone).replace(tzinfo=None)
        if round_trip != local_dt:
            logger.info(
                f"Local time {local_dt.isoformat()} does not exist in {zone_name}, "
                f"shifted to {round_trip.isoformat()}"
            )
        else:
            logger.debug(
                f"Local time {local_dt.isoformat()} is ambiguous in {zone_name}, "
                f"using later instant {resolved.isoformat()}"
            )

    return resolved


def combine_local(day: date, time_of_day: time) -> datetime:
    """Combine a calendar day and a wall-clock time into a naive local datetime."""
    return datetime.combine(day, time_of_day.replace(tzinfo=None))


def local_today(zone_name: str, now: datetime) -> date:
    """Return the calendar date in `zone_name` at the instant `now`."""
    return to_utc(now).astimezone(get_zone(zone_name)).date()


class Clock(Protocol):
    """Source of the current instant."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock returning aware UTC datetimes."""

    def now(self) -> datetime:
        return utc_now()


class FixedClock:
    """Clock pinned to a given instant; used for deterministic passes and tests."""

    def __init__(self, instant: datetime):
        self._instant = to_utc(instant)

    def now(self) -> datetime:
        return self._instant

    def advance(self, delta: timedelta) -> None:
        self._instant = self._instant + delta

    def set(self, instant: datetime) -> None:
        self._instant = to_utc(instant)
