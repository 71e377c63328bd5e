from datetime import datetime, timezone

import pytest

from taskhub.recurrence import (
    RecurrenceError,
    anchor_pattern,
    describe_recurrence,
    dump_recurrence_pattern,
    is_recurring_todo,
    load_stored_pattern,
    next_occurrence,
    parse_recurrence_pattern,
    pattern_to_rrule_string,
    reanchor_pattern,
    recurrence_icon,
    upcoming_occurrences,
)
from taskhub.utils import localize, to_display


def berlin(*args):
    """UTC instant of a Berlin wall-clock time."""
    return localize(datetime(*args)).astimezone(timezone.utc)


def wall(dt):
    return to_display(dt).replace(tzinfo=None)


def p(**kw):
    return parse_recurrence_pattern(kw)


def test_daily_with_interval():
    nxt = next_occurrence(p(type='daily', interval=2), berlin(2024, 1, 10, 9, 0))
    assert wall(nxt) == datetime(2024, 1, 12, 9, 0)


def test_daily_keeps_wall_clock_across_dst():
    nxt = next_occurrence(p(type='daily'), berlin(2024, 3, 30, 9, 0))
    assert wall(nxt) == datetime(2024, 3, 31, 9, 0)
    assert nxt == datetime(2024, 3, 31, 7, 0, tzinfo=timezone.utc)


def test_weekly_without_weekdays_adds_weeks():
    nxt = next_occurrence(p(type='weekly', interval=3), berlin(2024, 1, 15, 9, 0))
    assert wall(nxt) == datetime(2024, 2, 5, 9, 0)


def test_weekly_weekday_set():
    pattern = p(type='weekly', weekdays=[3, 1])  # Mon, Wed
    assert pattern.weekdays == [1, 3]
    assert wall(next_occurrence(pattern, berlin(2024, 1, 15, 9, 0))) == datetime(2024, 1, 17, 9, 0)
    assert wall(next_occurrence(pattern, berlin(2024, 1, 17, 9, 0))) == datetime(2024, 1, 22, 9, 0)


def test_biweekly_weekday_set_skips_a_week():
    pattern = p(type='weekly', interval=2, weekdays=[1, 3])
    assert wall(next_occurrence(pattern, berlin(2024, 1, 17, 9, 0))) == datetime(2024, 1, 29, 9, 0)


def test_monthly_day_clamps_to_month_end():
    start = berlin(2024, 1, 31, 18, 0)
    pattern = anchor_pattern(p(type='monthly'), start)
    assert pattern.month_day == 31
    feb = next_occurrence(pattern, start)
    assert wall(feb) == datetime(2024, 2, 29, 18, 0)
    assert wall(next_occurrence(pattern, feb)) == datetime(2024, 3, 31, 18, 0)


def test_monthly_last_weekday():
    pattern = p(type='monthly', monthWeek=-1, monthWeekday=5)  # last Friday
    nxt = next_occurrence(pattern, berlin(2024, 1, 26, 9, 0))
    assert wall(nxt) == datetime(2024, 2, 23, 9, 0)


def test_monthly_second_tuesday():
    pattern = p(type='monthly', month_week=2, month_weekday=2)
    nxt = next_occurrence(pattern, berlin(2024, 1, 9, 9, 0))
    assert wall(nxt) == datetime(2024, 2, 13, 9, 0)


def test_monthly_weekday_from_due_date_off_the_rule():
    # 1 Jan 2025 is a Wednesday; the series moves to next month's second Tuesday
    pattern = p(type='monthly', month_week=2, month_weekday=2)
    nxt = next_occurrence(pattern, berlin(2025, 1, 1, 9, 0))
    assert wall(nxt) == datetime(2025, 2, 11, 9, 0)


def test_monthly_weekday_every_other_month():
    pattern = p(type='monthly', interval=2, month_week=2, month_weekday=2)
    nxt = next_occurrence(pattern, berlin(2024, 1, 9, 9, 0))
    assert wall(nxt) == datetime(2024, 3, 12, 9, 0)


@pytest.mark.parametrize('pattern', [
    {'type': 'daily'},
    {'type': 'weekly', 'weekdays': [1]},
    {'type': 'monthly', 'monthDay': 31},
    {'type': 'monthly', 'monthWeek': -1, 'monthWeekday': 5},
    {'type': 'yearly'},
])
def test_series_ends_at_calendar_limit(pattern):
    assert next_occurrence(p(**pattern), berlin(9999, 12, 31, 9, 0)) is None


def test_reanchor_follows_moved_due_date():
    old_due = berlin(2030, 3, 15, 9, 0)
    pattern = anchor_pattern(p(type='monthly'), old_due)
    moved = reanchor_pattern(pattern, old_due, berlin(2030, 3, 20, 9, 0))
    assert moved.month_day == 20
    # a day clamped to month end still counts as following the due date
    feb = berlin(2024, 2, 29, 9, 0)
    assert reanchor_pattern(p(type='monthly', month_day=31), feb, berlin(2024, 2, 10, 9, 0)).month_day == 10


def test_reanchor_keeps_unrelated_rules():
    old_due = berlin(2030, 3, 15, 9, 0)
    new_due = berlin(2030, 3, 20, 9, 0)
    first_of_month = p(type='monthly', month_day=1)
    assert reanchor_pattern(first_of_month, old_due, new_due) is first_of_month
    weekday_rule = p(type='monthly', month_week=3, month_weekday=5)
    assert reanchor_pattern(weekday_rule, old_due, new_due) is weekday_rule
    weekly = p(type='weekly')
    assert reanchor_pattern(weekly, old_due, new_due) is weekly


def test_yearly_from_leap_day():
    nxt = next_occurrence(p(type='yearly'), berlin(2024, 2, 29, 8, 0))
    assert wall(nxt) == datetime(2025, 2, 28, 8, 0)


def test_end_after_occurrences():
    pattern = p(type='daily', end_type='occurrences', max_occurrences=3)
    start = berlin(2024, 1, 1, 9, 0)
    assert next_occurrence(pattern, start, occurrence_count=2) is not None
    assert next_occurrence(pattern, start, occurrence_count=3) is None
    assert len(upcoming_occurrences(pattern, start, 10)) == 3


def test_end_on_date_is_inclusive():
    pattern = p(type='daily', endType='date', endDate='2024-01-12')
    assert pattern.end_date == '2024-01-12'
    assert wall(next_occurrence(pattern, berlin(2024, 1, 11, 9, 0))) == datetime(2024, 1, 12, 9, 0)
    assert next_occurrence(pattern, berlin(2024, 1, 12, 9, 0)) is None


def test_end_date_accepts_timestamps():
    pattern = p(type='daily', end_type='date', end_date='2024-01-12T22:30:00Z')
    # 23:30 in Berlin is still the 12th
    assert pattern.end_date == '2024-01-12'


def test_upcoming_occurrences_starts_with_current_due():
    start = berlin(2024, 1, 1, 9, 0)
    dates = upcoming_occurrences(p(type='weekly'), start, 3)
    assert [wall(d).date().isoformat() for d in dates] == ['2024-01-01', '2024-01-08', '2024-01-15']


@pytest.mark.parametrize('raw', [
    {'type': 'hourly'},
    {'type': 'daily', 'interval': 0},
    {'type': 'weekly', 'weekdays': [7]},
    {'type': 'monthly', 'month_week': 2},
    {'type': 'monthly', 'month_week': 5, 'month_weekday': 1},
    {'type': 'daily', 'end_type': 'date'},
    {'type': 'daily', 'end_type': 'occurrences'},
    '{"type": ',
    ['daily'],
])
def test_invalid_patterns(raw):
    with pytest.raises(RecurrenceError):
        parse_recurrence_pattern(raw)


def test_empty_pattern_is_none():
    assert parse_recurrence_pattern(None) is None
    assert parse_recurrence_pattern({}) is None
    assert parse_recurrence_pattern('') is None


def test_stored_pattern_round_trip_and_corrupt_rows():
    pattern = p(type='monthly', monthWeek=1, monthWeekday=1)
    assert load_stored_pattern(dump_recurrence_pattern(pattern)) == pattern
    assert load_stored_pattern('not json') is None
    assert load_stored_pattern(None) is None


@pytest.mark.parametrize('raw,text', [
    ({'type': 'daily'}, 'Repeats daily'),
    ({'type': 'weekly', 'interval': 2, 'weekdays': [1, 3]}, 'Repeats every 2 weeks on Mon, Wed'),
    ({'type': 'monthly', 'month_week': -1, 'month_weekday': 5}, 'Repeats monthly on the last Friday'),
    ({'type': 'monthly', 'month_day': 15}, 'Repeats monthly on day 15'),
    ({'type': 'yearly', 'interval': 2}, 'Repeats every 2 years'),
    ({'type': 'daily', 'end_type': 'date', 'end_date': '2024-12-31'}, 'Repeats daily (until 31.12.2024)'),
    ({'type': 'daily', 'end_type': 'occurrences', 'max_occurrences': 5}, 'Repeats daily (5x)'),
])
def test_describe_recurrence(raw, text):
    assert describe_recurrence(p(**raw)) == text


def test_rrule_export():
    assert pattern_to_rrule_string(p(type='weekly', interval=2, weekdays=[1, 3])) == 'FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE'
    assert pattern_to_rrule_string(p(type='monthly', month_week=-1, month_weekday=5)) == 'FREQ=MONTHLY;BYDAY=-1FR'
    assert pattern_to_rrule_string(
        p(type='daily', end_type='occurrences', max_occurrences=4)
    ) == 'FREQ=DAILY;COUNT=4'


def test_is_recurring_todo():
    assert is_recurring_todo({'recurrence_pattern': '{"type": "daily"}'})
    assert is_recurring_todo({'parent_task_id': 3})
    assert not is_recurring_todo({'title': 'plain'})


def test_recurrence_icon_depends_on_type():
    assert recurrence_icon(p(type='yearly')) != recurrence_icon(p(type='daily'))
    assert recurrence_icon(None) == recurrence_icon(p(type='daily'))
