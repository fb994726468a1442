from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from azi.util.time import current_period, from_iso, month_range, parse_period, to_iso


@pytest.mark.parametrize("value", ["202402", "2024-02", " 202402 "])
def test_parse_period_accepts_both_forms(value: str) -> None:
    assert parse_period(value) == (2024, 2)


@pytest.mark.parametrize("value", ["2024", "202413", "2024-00", "Feb 2024", ""])
def test_parse_period_rejects_invalid(value: str) -> None:
    with pytest.raises(ValueError):
        parse_period(value)


def test_month_range_handles_leap_years() -> None:
    assert month_range(2024, 2) == (date(2024, 2, 1), date(2024, 2, 29))
    assert month_range(2023, 2) == (date(2023, 2, 1), date(2023, 2, 28))
    assert month_range(2024, 12)[1] == date(2024, 12, 31)


def test_iso_round_trip_is_utc() -> None:
    ts = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    assert to_iso(ts) == "2024-03-01T12:00:00+00:00"
    assert from_iso("2024-03-01T12:00:00Z") == ts
    assert from_iso("2024-03-01T12:00:00") == ts
    assert current_period(ts) == "2024-03"
