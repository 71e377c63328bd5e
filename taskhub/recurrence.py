"""Recurring todo rules and the next-occurrence calculator.

Rules are evaluated on the wall clock of the display timezone so a todo due
at 09:00 keeps being due at 09:00 across DST changes; results are UTC.
"""
from __future__ import annotations

import calendar
import json
import logging
from datetime import date, datetime, timezone
from typing import Literal, Optional

from dateutil import rrule as dr
from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from . import config
from .utils import ensure_utc, localize, parse_datetime_input, to_display

logger = logging.getLogger(__name__)

# Weekday numbering follows the web client: 0 = Sunday .. 6 = Saturday.
WEEKDAY_SHORT = ['Sun', 'Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat']
WEEKDAY_LONG = ['Sunday', 'Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday']
_RRULE_WEEKDAYS = [dr.SU, dr.MO, dr.TU, dr.WE, dr.TH, dr.FR, dr.SA]
_ORDINALS = {1: 'first', 2: 'second', 3: 'third', 4: 'fourth', -1: 'last'}
_ICONS = {'daily': '🔄', 'weekly': '📅', 'monthly': '🗓️', 'yearly': '🎂'}


class RecurrenceError(ValueError):
    pass


class RecurrencePattern(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    type: Literal['daily', 'weekly', 'monthly', 'yearly']
    interval: int = Field(default=1, ge=1, le=999)
    weekdays: Optional[list[int]] = None
    month_day: Optional[int] = Field(default=None, ge=1, le=31, alias='monthDay')
    month_week: Optional[int] = Field(default=None, alias='monthWeek')
    month_weekday: Optional[int] = Field(default=None, ge=0, le=6, alias='monthWeekday')
    end_type: Literal['never', 'date', 'occurrences'] = Field(default='never', alias='endType')
    end_date: Optional[str] = Field(default=None, alias='endDate')
    max_occurrences: Optional[int] = Field(default=None, ge=1, alias='maxOccurrences')

    @field_validator('weekdays')
    @classmethod
    def _check_weekdays(cls, v):
        if v is None:
            return v
        for d in v:
            if not isinstance(d, int) or d < 0 or d > 6:
                raise ValueError('weekdays must be integers 0 (Sunday) .. 6 (Saturday)')
        return sorted(set(v)) or None

    @field_validator('month_week')
    @classmethod
    def _check_month_week(cls, v):
        if v is not None and v not in _ORDINALS:
            raise ValueError('month_week must be 1..4 or -1 (last)')
        return v

    @field_validator('end_date', mode='before')
    @classmethod
    def _normalize_end_date(cls, v):
        if v is None or v == '':
            return None
        # the client sends either a plain date or a full ISO timestamp
        dt, _ = parse_datetime_input(v)
        return to_display(dt).date().isoformat()

    @model_validator(mode='after')
    def _check_consistency(self):
        if (self.month_week is None) != (self.month_weekday is None):
            raise ValueError('month_week and month_weekday must be given together')
        if self.end_type == 'date' and not self.end_date:
            raise ValueError("end_date is required when end_type is 'date'")
        if self.end_type == 'occurrences' and not self.max_occurrences:
            raise ValueError("max_occurrences is required when end_type is 'occurrences'")
        return self

    @property
    def end_day(self) -> date | None:
        return date.fromisoformat(self.end_date) if self.end_date else None


def parse_recurrence_pattern(value) -> RecurrencePattern | None:
    """Build a pattern from a dict, JSON string or pattern. Empty -> None."""
    if value is None or value == '' or value == {}:
        return None
    if isinstance(value, RecurrencePattern):
        return value
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise RecurrenceError(f'recurrence_pattern is not valid JSON: {e.msg}') from e
    if not isinstance(value, dict):
        raise RecurrenceError('recurrence_pattern must be an object')
    try:
        return RecurrencePattern.model_validate(value)
    except ValidationError as e:
        first = e.errors()[0]
        loc = '.'.join(str(p) for p in first.get('loc', ())) or 'recurrence_pattern'
        raise RecurrenceError(f"invalid recurrence_pattern ({loc}): {first.get('msg')}") from e


def dump_recurrence_pattern(pattern: RecurrencePattern | None) -> str | None:
    if pattern is None:
        return None
    return json.dumps(pattern.model_dump(exclude_none=True), sort_keys=True)


def load_stored_pattern(raw: str | None) -> RecurrencePattern | None:
    """Parse a pattern read from the database, logging instead of raising on
    corrupt rows so listing endpoints keep working."""
    if not raw:
        return None
    try:
        return parse_recurrence_pattern(raw)
    except RecurrenceError:
        logger.exception('ignoring unreadable stored recurrence pattern %r', raw)
        return None


def anchor_pattern(pattern: RecurrencePattern, due_utc: datetime) -> RecurrencePattern:
    """Pin a monthly rule without day or weekday to the due date's day so
    a series started on the 31st keeps returning to month end."""
    if pattern.type != 'monthly' or pattern.month_day or pattern.month_week:
        return pattern
    return pattern.model_copy(update={'month_day': to_display(due_utc).day})


def reanchor_pattern(pattern: RecurrencePattern, old_due_utc: datetime, new_due_utc: datetime) -> RecurrencePattern:
    """Move a monthly day rule that followed the old due date onto the new
    due date's day. Rules set to some other day are left alone."""
    if pattern.type != 'monthly' or pattern.month_week is not None or not pattern.month_day:
        return pattern
    old = to_display(ensure_utc(old_due_utc))
    last = calendar.monthrange(old.year, old.month)[1]
    if old.day != min(pattern.month_day, last):
        return pattern
    return pattern.model_copy(update={'month_day': to_display(ensure_utc(new_due_utc)).day})


def _add_months_clamped(local: datetime, months: int, day: int) -> datetime:
    target = local + relativedelta(months=months, day=1)
    last = calendar.monthrange(target.year, target.month)[1]
    return target.replace(day=min(day, last))


def _rule_after(local: datetime, **kwargs) -> datetime | None:
    rule = dr.rrule(dtstart=local, count=config.MAX_RECURRENCE_LOOKAHEAD, **kwargs)
    return rule.after(local, inc=False)


def _next_local(pattern: RecurrencePattern, local: datetime) -> datetime | None:
    n = pattern.interval
    if pattern.type == 'daily':
        return local + relativedelta(days=n)
    if pattern.type == 'weekly':
        if not pattern.weekdays:
            return local + relativedelta(weeks=n)
        return _rule_after(
            local,
            freq=dr.WEEKLY,
            interval=n,
            wkst=dr.MO,
            byweekday=[_RRULE_WEEKDAYS[d] for d in pattern.weekdays],
        )
    if pattern.type == 'monthly':
        if pattern.month_week is not None:
            wd = _RRULE_WEEKDAYS[pattern.month_weekday](pattern.month_week)
            # every month has a first..fourth and a last weekday
            target = local + relativedelta(months=n, day=1)
            return dr.rrule(dr.MONTHLY, dtstart=target, count=1, byweekday=wd)[0]
        return _add_months_clamped(local, n, pattern.month_day or local.day)
    # yearly; relativedelta maps Feb 29 onto Feb 28 in common years
    return local + relativedelta(years=n)


def next_occurrence(pattern: RecurrencePattern, current_due: datetime, occurrence_count: int = 1) -> datetime | None:
    """Return the UTC due date following ``current_due``, or None when the
    series is over.

    ``occurrence_count`` is the position of the todo owning ``current_due``
    within its series (1 for the root).
    """
    if pattern.end_type == 'occurrences' and occurrence_count >= (pattern.max_occurrences or 0):
        return None
    try:
        local = to_display(ensure_utc(current_due)).replace(tzinfo=None)
        nxt = _next_local(pattern, local)
    except (OverflowError, ValueError):
        logger.info('series %s runs past the supported date range after %s', pattern, current_due)
        return None
    if nxt is None:
        logger.info('no occurrence of %s found within %d iterations', pattern, config.MAX_RECURRENCE_LOOKAHEAD)
        return None
    if pattern.end_type == 'date' and nxt.date() > pattern.end_day:
        return None
    try:
        return localize(nxt).astimezone(timezone.utc)
    except OverflowError:
        logger.info('series %s runs past the supported date range after %s', pattern, current_due)
        return None


def upcoming_occurrences(pattern: RecurrencePattern, first_due: datetime, count: int, occurrence_count: int = 1) -> list[datetime]:
    out = [ensure_utc(first_due)]
    current = out[0]
    position = occurrence_count
    while len(out) < count:
        nxt = next_occurrence(pattern, current, position)
        if nxt is None:
            break
        out.append(nxt)
        current = nxt
        position += 1
    return out


def describe_recurrence(pattern: RecurrencePattern) -> str:
    n = pattern.interval
    if pattern.type == 'daily':
        text = 'daily' if n == 1 else f'every {n} days'
    elif pattern.type == 'weekly':
        text = 'weekly' if n == 1 else f'every {n} weeks'
        if pattern.weekdays:
            text += ' on ' + ', '.join(WEEKDAY_SHORT[d] for d in pattern.weekdays)
    elif pattern.type == 'monthly':
        text = 'monthly' if n == 1 else f'every {n} months'
        if pattern.month_week is not None:
            text += f' on the {_ORDINALS[pattern.month_week]} {WEEKDAY_LONG[pattern.month_weekday]}'
        elif pattern.month_day:
            text += f' on day {pattern.month_day}'
    else:
        text = 'yearly' if n == 1 else f'every {n} years'

    if pattern.end_type == 'date' and pattern.end_day:
        text += f" (until {pattern.end_day.strftime('%d.%m.%Y')})"
    elif pattern.end_type == 'occurrences' and pattern.max_occurrences:
        text += f' ({pattern.max_occurrences}x)'
    return f'Repeats {text}'


def recurrence_icon(pattern: RecurrencePattern | None) -> str:
    if pattern is None:
        return _ICONS['daily']
    return _ICONS.get(pattern.type, _ICONS['daily'])


def is_recurring_todo(todo) -> bool:
    get = todo.get if isinstance(todo, dict) else (lambda k: getattr(todo, k, None))
    return bool(get('recurrence_pattern') or get('parent_task_id') or get('is_recurring_instance'))


def pattern_to_rrule_string(pattern: RecurrencePattern) -> str:
    """Export as an RFC 5545 RRULE body (no leading 'RRULE:')."""
    parts = [f'FREQ={pattern.type.upper()}']
    if pattern.interval != 1:
        parts.append(f'INTERVAL={pattern.interval}')
    if pattern.type == 'weekly' and pattern.weekdays:
        parts.append('BYDAY=' + ','.join(str(_RRULE_WEEKDAYS[d]) for d in pattern.weekdays))
    if pattern.type == 'monthly':
        if pattern.month_week is not None:
            parts.append(f'BYDAY={pattern.month_week}{_RRULE_WEEKDAYS[pattern.month_weekday]}')
        elif pattern.month_day:
            parts.append(f'BYMONTHDAY={pattern.month_day}')
    if pattern.end_type == 'date' and pattern.end_day:
        parts.append(f"UNTIL={pattern.end_day.strftime('%Y%m%d')}")
    elif pattern.end_type == 'occurrences' and pattern.max_occurrences:
        parts.append(f'COUNT={pattern.max_occurrences}')
    return ';'.join(parts)
