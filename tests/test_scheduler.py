"""Smart publish schedule."""

from datetime import datetime, timedelta, timezone

from scheduler import first_slot, smart_schedule

NOW = datetime(2026, 3, 14, 10, 37, 12, 500, tzinfo=timezone.utc)


def test_single_item_gets_next_hour_slot():
    schedule = smart_schedule(["a"], NOW)
    assert schedule == [("a", datetime(2026, 3, 14, 11, 0, tzinfo=timezone.utc))]


def test_three_items_are_eight_hours_apart():
    schedule = smart_schedule(["a", "b", "c"], NOW)
    times = [when for _, when in schedule]
    assert [item_id for item_id, _ in schedule] == ["a", "b", "c"]
    assert times[0] == datetime(2026, 3, 14, 11, 0, tzinfo=timezone.utc)
    assert times[1] - times[0] == timedelta(hours=8)
    assert times[2] - times[1] == timedelta(hours=8)


def test_slots_stay_within_the_window():
    ids = [str(i) for i in range(7)]
    schedule = smart_schedule(ids, NOW)
    first = schedule[0][1]
    assert all(first <= when < first + timedelta(hours=24) for _, when in schedule)


def test_empty_input():
    assert smart_schedule([], NOW) == []


def test_first_slot_on_exact_hour():
    now = datetime(2026, 3, 14, 23, 0, tzinfo=timezone.utc)
    assert first_slot(now) == datetime(2026, 3, 15, 0, 0, tzinfo=timezone.utc)


def test_first_slot_late_in_the_hour_is_the_next_top_of_hour():
    now = datetime(2026, 3, 14, 10, 59, 59, tzinfo=timezone.utc)
    assert first_slot(now) == datetime(2026, 3, 14, 11, 0, tzinfo=timezone.utc)


def test_deterministic():
    assert smart_schedule(["x", "y"], NOW) == smart_schedule(["x", "y"], NOW)
