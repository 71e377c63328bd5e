"""Timezone normalization helpers.

Everything is stored as UTC. Input without an explicit offset is read as
wall time in the display timezone (``config.DISPLAY_TIMEZONE``) and every
rendering for humans is done in that zone.
"""
from datetime import date, datetime, time, timedelta, timezone
import logging
import re
import zoneinfo

from dateutil import parser as du_parser
from dateutil import tz as du_tz

from . import config

logger = logging.getLogger(__name__)

DISPLAY_FORMAT = '%Y-%m-%d %H:%M:%S'
DATE_FORMAT = '%Y-%m-%d'
TIME_FORMAT = '%H:%M:%S'
GERMAN_DATETIME_FORMAT = '%d.%m.%Y %H:%M'
GERMAN_DATE_FORMAT = '%d.%m.%Y'

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
# 2024-01-15 14:30, 2024-01-15T14:30:00.123, optionally with Z or +01:00
_ISO_DATETIME_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(:\d{2}(\.\d{1,6})?)?(Z|[+-]\d{2}:?\d{2})?$"
)
_GERMAN_RE = re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{4})(?:\s+(\d{1,2}):(\d{2}))?$")


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(timezone.utc)


def display_tz() -> zoneinfo.ZoneInfo:
    return zoneinfo.ZoneInfo(config.DISPLAY_TIMEZONE)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Return dt as an aware UTC datetime. Naive values are assumed UTC,
    which is what SQLite hands back for stored instants."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def localize(naive: datetime) -> datetime:
    """Attach the display timezone to a naive wall-clock datetime.

    Wall times that do not exist (spring-forward gap) are moved forward by the
    size of the gap; ambiguous ones (fall-back) resolve to the first, summer
    time, occurrence.
    """
    aware = naive.replace(tzinfo=display_tz(), fold=0)
    return du_tz.resolve_imaginary(aware)


def to_display(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    return ensure_utc(dt).astimezone(display_tz())


def _local_to_utc(naive: datetime) -> datetime:
    try:
        return localize(naive).astimezone(timezone.utc)
    except OverflowError as e:
        raise ValueError(f'date out of range: {naive.isoformat()}') from e


def _aware_to_utc(aware: datetime) -> datetime:
    try:
        out = aware.astimezone(timezone.utc)
        # must stay representable on the display wall clock as well
        out.astimezone(display_tz())
        return out
    except OverflowError as e:
        raise ValueError(f'date out of range: {aware.isoformat()}') from e


def parse_datetime_input(value) -> tuple[datetime, bool]:
    """Normalize user input to ``(utc_datetime, has_time)``.

    Accepted: ``YYYY-MM-DD``, ``YYYY-MM-DD HH:MM[:SS]``, ISO 8601 with ``T``
    and optional fraction, any of these with ``Z`` or ``+HH:MM``, and the
    German ``DD.MM.YYYY[ HH:MM]``. Also accepts ``date``/``datetime`` objects.
    Raises ValueError for anything else.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return _local_to_utc(value), True
        return _aware_to_utc(value), True
    if isinstance(value, date):
        return _local_to_utc(datetime.combine(value, time.min)), False
    if not isinstance(value, str):
        raise ValueError('date must be a string')
    s = value.strip()
    if not s:
        raise ValueError('date is empty')

    if _ISO_DATE_RE.match(s):
        d = date.fromisoformat(s)
        return _local_to_utc(datetime.combine(d, time.min)), False

    m = _GERMAN_RE.match(s)
    if m:
        day, month, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
        if m.group(4) is None:
            d = date(year, month, day)
            return _local_to_utc(datetime.combine(d, time.min)), False
        naive = datetime(year, month, day, int(m.group(4)), int(m.group(5)))
        return _local_to_utc(naive), True

    if _ISO_DATETIME_RE.match(s):
        try:
            parsed = du_parser.isoparse(s.replace(' ', 'T', 1))
        except (ValueError, OverflowError) as e:
            raise ValueError(f'invalid date: {value!r}') from e
        if parsed.tzinfo is None:
            return _local_to_utc(parsed), True
        return _aware_to_utc(parsed), True

    raise ValueError(f'unsupported date format: {value!r}')


def convert_local_to_utc(value) -> datetime:
    """Convert display-zone input (e.g. ``'2024-01-15 14:30'``) to UTC."""
    dt, _ = parse_datetime_input(value)
    return dt


def is_valid_date(value) -> bool:
    try:
        parse_datetime_input(value)
    except ValueError:
        return False
    return True


def format_in_display(dt: datetime | None, fmt: str = DISPLAY_FORMAT) -> str:
    if dt is None:
        return ''
    return to_display(dt).strftime(fmt)


def format_date_for_display(dt: datetime | None) -> str:
    return format_in_display(dt, DISPLAY_FORMAT)


def format_date_only_for_display(dt: datetime | None) -> str:
    return format_in_display(dt, DATE_FORMAT)


def format_time_for_display(dt: datetime | None) -> str:
    return format_in_display(dt, TIME_FORMAT)


def format_datetime_german(dt: datetime | None) -> str:
    return format_in_display(dt, GERMAN_DATETIME_FORMAT)


def format_date_german(dt: datetime | None) -> str:
    return format_in_display(dt, GERMAN_DATE_FORMAT)


def format_utc_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return ensure_utc(dt).strftime('%Y-%m-%dT%H:%M:%SZ')


def local_today(now: datetime | None = None) -> date:
    return to_display(now or now_utc()).date()


def local_date(dt: datetime | None) -> date | None:
    if dt is None:
        return None
    return to_display(dt).date()


def local_day_bounds(d: date) -> tuple[datetime, datetime]:
    """UTC instants of the start of local day d and of the following day."""
    try:
        following = d + timedelta(days=1)
    except OverflowError as e:
        raise ValueError(f'date out of range: {d.isoformat()}') from e
    start = _local_to_utc(datetime.combine(d, time.min))
    end = _local_to_utc(datetime.combine(following, time.min))
    return start, end


def week_bounds(d: date) -> tuple[date, date]:
    """Monday and Sunday of the week containing d."""
    monday = d - timedelta(days=d.weekday())
    return monday, monday + timedelta(days=6)


def is_today(dt: datetime | None, now: datetime | None = None) -> bool:
    if dt is None:
        return False
    return local_date(dt) == local_today(now)


def is_yesterday(dt: datetime | None, now: datetime | None = None) -> bool:
    if dt is None:
        return False
    return local_date(dt) == local_today(now) - timedelta(days=1)


def is_overdue(dt: datetime | None, has_time: bool = True, now: datetime | None = None) -> bool:
    """Timed due dates are overdue once the instant passed; date-only ones
    once their local day is over."""
    if dt is None:
        return False
    now = now or now_utc()
    if has_time:
        return ensure_utc(dt) < ensure_utc(now)
    return local_date(dt) < local_today(now)


def format_relative_time(dt: datetime | None, now: datetime | None = None) -> str:
    if dt is None:
        return ''
    now = now or now_utc()
    minutes = int((ensure_utc(now) - ensure_utc(dt)).total_seconds() // 60)
    if minutes < 1:
        return 'just now'
    if minutes < 60:
        return f'{minutes} min ago'
    hours = minutes // 60
    if hours < 24:
        return f'{hours} h ago'
    days = hours // 24
    if days < 7:
        return f"{days} day{'' if days == 1 else 's'} ago"
    return format_date_german(dt)


def format_smart_date(dt: datetime | None, now: datetime | None = None) -> str:
    if dt is None:
        return ''
    if is_today(dt, now):
        return f"Today, {format_in_display(dt, '%H:%M')}"
    if is_yesterday(dt, now):
        return f"Yesterday, {format_in_display(dt, '%H:%M')}"
    return format_datetime_german(dt)


def create_date_info(dt: datetime | None) -> dict | None:
    if dt is None:
        return None
    aware = ensure_utc(dt)
    return {
        'utc': format_utc_iso(aware),
        'local': format_date_for_display(aware),
        'local_date': format_date_only_for_display(aware),
        'local_time': format_time_for_display(aware),
        'german': format_datetime_german(aware),
        'timestamp': int(aware.timestamp() * 1000),
    }


def convert_dates_for_display(obj: dict, fields=('created_at', 'updated_at', 'due_date')) -> dict:
    """Return a copy of obj where each datetime field becomes its UTC ISO
    string and ``<field>_local`` / ``<field>_german`` renderings are added."""
    out = dict(obj)
    for field in fields:
        val = out.get(field)
        if not isinstance(val, datetime):
            continue
        info = create_date_info(val)
        out[field] = info['utc']
        out[f'{field}_local'] = info['local']
        out[f'{field}_german'] = info['german']
    return out
