from datetime import date, timedelta
from typing import Optional

from cohort_scheduler.utils.errors import ValidationError

SUNDAY = 0
SATURDAY = 6


def sunday_based_weekday(day: date) -> int:
    """Weekday with Sunday = 0 ... Saturday = 6."""
    return (day.weekday() + 1) % 7


def validate_offset(offset_days: int, field: str = "offset_days") -> None:
    if offset_days is None or offset_days < 0:
        raise ValidationError(f"{field} must be a non-negative integer, got {offset_days}")


def validate_day_of_week(day_of_week: Optional[int]) -> None:
    if day_of_week is not None and not (SUNDAY <= day_of_week <= SATURDAY):
        raise ValidationError(
            f"day_of_week must be between {SUNDAY} and {SATURDAY}, got {day_of_week}"
        )


def resolve_start_date(
    anchor: date, offset_days: int, day_of_week: Optional[int] = None
) -> date:
    """
    Compute a start date from an anchor, a day offset and an optional weekday.

    The candidate is `anchor + offset_days`. When a weekday is given, the result
    is the earliest date on or after the candidate that falls on that weekday.

    Args:
        anchor: Date the offset counts from
        offset_days: Days to add, >= 0
        day_of_week: Required weekday (0 = Sunday ... 6 = Saturday) or None

    Returns:
        date: The resolved start date

    Raises:
        ValidationError: If the offset is negative or the weekday is out of range
    """
    validate_offset(offset_days)
    validate_day_of_week(day_of_week)

    candidate = anchor + timedelta(days=offset_days)
    if day_of_week is None:
        return candidate

    delta = (day_of_week - sunday_based_weekday(candidate) + 7) % 7
    return candidate + timedelta(days=delta)
