import pytest
from datetime import datetime, date, time, timedelta, timezone

from cohort_scheduler.utils.datetime_utils import (
    FixedClock,
    combine_local,
    local_today,
    resolve_local_datetime,
    to_naive_utc,
)
from cohort_scheduler.utils.errors import TimezoneError

NEW_YORK = "America/New_York"


class TestResolveLocalDatetime:
    """Test wall-clock to instant conversion and its DST policy."""

    def test_regular_time(self):
        resolved = resolve_local_datetime(NEW_YORK, datetime(2023, 4, 10, 9, 0))
        assert resolved == datetime(2023, 4, 10, 13, 0, tzinfo=timezone.utc)

    def test_ambiguous_time_takes_later_instant(self):
        """01:30 happens twice on 2023-11-05; the second one is 06:30 UTC."""
        resolved = resolve_local_datetime(NEW_YORK, datetime(2023, 11, 5, 1, 30))
        assert resolved == datetime(2023, 11, 5, 6, 30, tzinfo=timezone.utc)

    def test_nonexistent_time_lands_after_gap(self):
        """02:30 never happens on 2023-03-12; it becomes 03:30 EDT (07:30 UTC)."""
        resolved = resolve_local_datetime(NEW_YORK, datetime(2023, 3, 12, 2, 30))
        assert resolved == datetime(2023, 3, 12, 7, 30, tzinfo=timezone.utc)

    def test_utc_zone(self):
        resolved = resolve_local_datetime("UTC", datetime(2023, 4, 10, 9, 0))
        assert resolved == datetime(2023, 4, 10, 9, 0, tzinfo=timezone.utc)

    def test_unknown_zone_raises(self):
        with pytest.raises(TimezoneError):
            resolve_local_datetime("Mars/Olympus_Mons", datetime(2023, 4, 10, 9, 0))

    def test_empty_zone_raises(self):
        with pytest.raises(TimezoneError):
            resolve_local_datetime("", datetime(2023, 4, 10, 9, 0))

    def test_aware_input_rejected(self):
        with pytest.raises(TimezoneError):
            resolve_local_datetime(
                NEW_YORK, datetime(2023, 4, 10, 9, 0, tzinfo=timezone.utc)
            )


class TestLocalHelpers:
    def test_local_today_differs_from_utc_date(self):
        # 02:00 UTC on the 11th is still the 10th in New York
        now = datetime(2023, 4, 11, 2, 0, tzinfo=timezone.utc)
        assert local_today(NEW_YORK, now) == date(2023, 4, 10)
        assert local_today("Asia/Tokyo", now) == date(2023, 4, 11)

    def test_combine_local(self):
        assert combine_local(date(2023, 4, 10), time(9, 15)) == datetime(2023, 4, 10, 9, 15)

    def test_to_naive_utc(self):
        aware = datetime(2023, 4, 10, 9, 0, tzinfo=timezone(timedelta(hours=-4)))
        assert to_naive_utc(aware) == datetime(2023, 4, 10, 13, 0)


class TestFixedClock:
    def test_advance_and_set(self):
        clock = FixedClock(datetime(2023, 4, 10, 14, 0))
        assert clock.now() == datetime(2023, 4, 10, 14, 0, tzinfo=timezone.utc)

        clock.advance(timedelta(days=1))
        assert clock.now() == datetime(2023, 4, 11, 14, 0, tzinfo=timezone.utc)

        clock.set(datetime(2024, 1, 1, tzinfo=timezone.utc))
        assert clock.now().year == 2024
