from datetime import date, datetime, timedelta, timezone

import pytest

from taskhub.utils import (
    convert_dates_for_display,
    create_date_info,
    ensure_utc,
    format_date_german,
    format_datetime_german,
    format_relative_time,
    format_smart_date,
    format_utc_iso,
    is_overdue,
    is_valid_date,
    local_day_bounds,
    localize,
    parse_datetime_input,
    week_bounds,
)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_plain_date_is_local_midnight_without_time():
    dt, has_time = parse_datetime_input('2024-01-15')
    assert dt == utc(2024, 1, 14, 23, 0)
    assert has_time is False


def test_space_separated_datetime_is_read_in_display_timezone():
    # CEST, UTC+2
    dt, has_time = parse_datetime_input('2024-07-15 14:30')
    assert dt == utc(2024, 7, 15, 12, 30)
    assert has_time is True


@pytest.mark.parametrize('value,expected', [
    ('2024-01-15T14:30:00Z', utc(2024, 1, 15, 14, 30)),
    ('2024-01-15T14:30:00+02:00', utc(2024, 1, 15, 12, 30)),
    ('2024-01-15T14:30:00.123+02:00', utc(2024, 1, 15, 12, 30, 0, 123000)),
    ('2024-01-15T14:30', utc(2024, 1, 15, 13, 30)),
])
def test_iso_datetimes(value, expected):
    dt, has_time = parse_datetime_input(value)
    assert dt == expected
    assert has_time is True


def test_german_formats():
    assert parse_datetime_input('15.01.2024 14:30') == (utc(2024, 1, 15, 13, 30), True)
    assert parse_datetime_input('5.1.2024') == (utc(2024, 1, 4, 23, 0), False)


def test_date_and_datetime_objects():
    assert parse_datetime_input(date(2024, 7, 1)) == (utc(2024, 6, 30, 22, 0), False)
    aware = datetime(2024, 7, 1, 12, 0, tzinfo=timezone(timedelta(hours=5)))
    assert parse_datetime_input(aware) == (utc(2024, 7, 1, 7, 0), True)


@pytest.mark.parametrize('value', [
    'tomorrow', '', '2024-02-30', '31.02.2024', '2024/01/15', 42, None,
    # representable as given but not once shifted into UTC or the display zone
    '0001-01-01', '01.01.0001', '0001-01-01T00:30+01:00', '9999-12-31T23:30Z',
])
def test_invalid_input_raises_value_error(value):
    with pytest.raises(ValueError):
        parse_datetime_input(value)
    assert is_valid_date(value) is False


def test_nonexistent_wall_time_moves_forward():
    # 02:30 does not exist on 2024-03-31 in Berlin
    dt = localize(datetime(2024, 3, 31, 2, 30))
    assert dt.astimezone(timezone.utc) == utc(2024, 3, 31, 1, 30)


def test_ambiguous_wall_time_uses_summer_time():
    dt = localize(datetime(2024, 10, 27, 2, 30))
    assert dt.astimezone(timezone.utc) == utc(2024, 10, 27, 0, 30)


def test_ensure_utc_treats_naive_as_utc():
    assert ensure_utc(datetime(2024, 1, 1, 12, 0)) == utc(2024, 1, 1, 12, 0)
    assert ensure_utc(None) is None


def test_day_bounds_on_short_dst_day():
    start, end = local_day_bounds(date(2024, 3, 31))
    assert start == utc(2024, 3, 30, 23, 0)
    assert end == utc(2024, 3, 31, 22, 0)


@pytest.mark.parametrize('d', [date.min, date.max])
def test_day_bounds_at_calendar_limits(d):
    with pytest.raises(ValueError):
        local_day_bounds(d)


def test_week_bounds_monday_to_sunday():
    assert week_bounds(date(2024, 1, 17)) == (date(2024, 1, 15), date(2024, 1, 21))
    assert week_bounds(date(2024, 1, 21)) == (date(2024, 1, 15), date(2024, 1, 21))


def test_date_only_due_is_overdue_after_local_day_ends():
    due, has_time = parse_datetime_input('2024-01-15')
    # 23:00 local on the due day
    assert not is_overdue(due, has_time, now=utc(2024, 1, 15, 22, 0))
    # 00:30 local on the next day
    assert is_overdue(due, has_time, now=utc(2024, 1, 15, 23, 30))


def test_timed_due_is_overdue_after_instant():
    due = utc(2024, 1, 15, 10, 0)
    assert not is_overdue(due, True, now=utc(2024, 1, 15, 9, 59))
    assert is_overdue(due, True, now=utc(2024, 1, 15, 10, 1))
    assert not is_overdue(None, True)


def test_relative_time():
    now = utc(2024, 1, 20, 12, 0)
    assert format_relative_time(now - timedelta(seconds=30), now) == 'just now'
    assert format_relative_time(now - timedelta(minutes=5), now) == '5 min ago'
    assert format_relative_time(now - timedelta(hours=3), now) == '3 h ago'
    assert format_relative_time(now - timedelta(days=1), now) == '1 day ago'
    assert format_relative_time(now - timedelta(days=2), now) == '2 days ago'
    assert format_relative_time(now - timedelta(days=10), now) == '10.01.2024'


def test_smart_date():
    now = utc(2024, 1, 20, 12, 0)
    assert format_smart_date(utc(2024, 1, 20, 8, 15), now) == 'Today, 09:15'
    assert format_smart_date(utc(2024, 1, 19, 8, 15), now) == 'Yesterday, 09:15'
    assert format_smart_date(utc(2024, 1, 10, 8, 15), now) == '10.01.2024 09:15'


def test_german_formatting_uses_display_timezone():
    dt = utc(2024, 12, 31, 23, 30)
    assert format_datetime_german(dt) == '01.01.2025 00:30'
    assert format_date_german(dt) == '01.01.2025'
    assert format_utc_iso(dt) == '2024-12-31T23:30:00Z'


def test_create_date_info():
    info = create_date_info(utc(2024, 7, 1, 10, 0))
    assert info == {
        'utc': '2024-07-01T10:00:00Z',
        'local': '2024-07-01 12:00:00',
        'local_date': '2024-07-01',
        'local_time': '12:00:00',
        'german': '01.07.2024 12:00',
        'timestamp': 1719828000000,
    }
    assert create_date_info(None) is None


def test_convert_dates_for_display_adds_renderings():
    out = convert_dates_for_display({'id': 1, 'due_date': utc(2024, 7, 1, 10, 0), 'created_at': None})
    assert out['due_date'] == '2024-07-01T10:00:00Z'
    assert out['due_date_local'] == '2024-07-01 12:00:00'
    assert out['due_date_german'] == '01.07.2024 12:00'
    assert out['created_at'] is None
    assert 'created_at_local' not in out
