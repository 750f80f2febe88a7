from datetime import datetime, timezone

import pytest

from m365_admin.quiet_hours import QuietHours


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_unknown_location_uses_default_zone():
    qh = QuietHours(default_timezone="Europe/Berlin")
    assert str(qh.zone_for("XX")) == "Europe/Berlin"
    assert str(qh.zone_for(None)) == "Europe/Berlin"
    assert str(qh.zone_for("jp")) == "Asia/Tokyo"


@pytest.mark.parametrize("now,location,quiet", [
    (utc(2026, 3, 2, 12, 0), "GB", False),
    (utc(2026, 3, 2, 23, 30), "GB", True),
    (utc(2026, 3, 2, 3, 0), "US", True),      # 22:00 in New York
    (utc(2026, 3, 2, 2, 59), "US", False),    # 21:59 in New York
    (utc(2026, 3, 2, 0, 30), "IN", True),     # 06:00 in Kolkata
])
def test_is_quiet(now, location, quiet):
    assert QuietHours(22, 7).is_quiet(now, location) is quiet


def test_next_allowed_same_morning():
    qh = QuietHours(22, 7)
    # 03:00 London → 07:00 London
    assert qh.next_allowed(utc(2026, 1, 15, 3, 0), "GB") == utc(2026, 1, 15, 7, 0)


def test_next_allowed_after_midnight_rollover():
    qh = QuietHours(22, 7)
    # 23:00 London → 07:00 next day
    assert qh.next_allowed(utc(2026, 1, 15, 23, 0), "GB") == utc(2026, 1, 16, 7, 0)


def test_next_allowed_outside_window_is_now():
    now = utc(2026, 1, 15, 12, 0)
    assert QuietHours(22, 7).next_allowed(now, "GB") == now


def test_daytime_window():
    qh = QuietHours(12, 14)
    assert qh.is_quiet(utc(2026, 1, 15, 13, 0), None)
    assert qh.next_allowed(utc(2026, 1, 15, 13, 0), None) == utc(2026, 1, 15, 14, 0)


def test_equal_hours_disable_quiet_time():
    assert not QuietHours(7, 7).is_quiet(utc(2026, 1, 15, 7, 0), None)


def test_invalid_hours_rejected():
    with pytest.raises(ValueError):
        QuietHours(24, 7)
