"""Aggregated views over a user's todos: counters, digest and calendar grid.

The functions here take already loaded Todo rows and do all day arithmetic in
the display timezone; the routes at the bottom only load and serialize.
"""
import calendar
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from .auth import require_login
from .db import async_session
from .models import ACTIVE_STATUSES, Category, User
from .todos_api import categories_for_todos, serialize_todo, todos_for_user
from .utils import ensure_utc, is_overdue, local_date, local_today, now_utc, week_bounds

router = APIRouter(tags=['dashboard'])
logger = logging.getLogger(__name__)

CATEGORY_STATS_LIMIT = 8
CALENDAR_VIEWS = ('month', 'week')
WEEKDAY_NAMES = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']


def _is_active(todo) -> bool:
    return todo.status in ACTIVE_STATUSES


def _is_overdue(todo, now: datetime) -> bool:
    return _is_active(todo) and is_overdue(todo.due_date, bool(todo.due_has_time), now)


def status_counts(todos, now: Optional[datetime] = None) -> dict:
    now = now or now_utc()
    today = local_today(now)
    monday, sunday = week_bounds(today)
    counts = {'open': 0, 'in_progress': 0, 'done_today': 0, 'overdue': 0, 'this_week': 0}
    for t in todos:
        if t.status == 'open':
            counts['open'] += 1
        elif t.status == 'in_progress':
            counts['in_progress'] += 1
        elif t.status == 'completed':
            # rows completed before completed_at existed only carry updated_at
            if local_date(t.completed_at or t.updated_at) == today:
                counts['done_today'] += 1
        if _is_overdue(t, now):
            counts['overdue'] += 1
        due_day = local_date(t.due_date)
        if _is_active(t) and due_day is not None and monday <= due_day <= sunday:
            counts['this_week'] += 1
    return counts


def category_stats(todos, categories_by_todo: dict, limit: int = CATEGORY_STATS_LIMIT) -> list[dict]:
    """Open and in-progress todos per category, busiest first."""
    seen: dict[int, Category] = {}
    counts: dict[int, int] = {}
    for t in todos:
        if not _is_active(t):
            continue
        for cat in categories_by_todo.get(t.id, ()):
            seen[cat.id] = cat
            counts[cat.id] = counts.get(cat.id, 0) + 1
    ranked = sorted(seen.values(), key=lambda c: (-counts[c.id], c.name.lower()))
    return [
        {'id': c.id, 'name': c.name, 'color': c.color, 'count': counts[c.id]}
        for c in ranked[:limit]
    ]


def workload_level(due_today: int) -> str:
    if due_today > 5:
        return 'high'
    if due_today > 2:
        return 'medium'
    return 'low'


def _due_sort_key(todo):
    due = ensure_utc(todo.due_date)
    return (due is None, due or datetime.min.replace(tzinfo=timezone.utc), -todo.priority)


def daily_digest(todos, now: Optional[datetime] = None) -> dict:
    now = now or now_utc()
    today = local_today(now)
    due_today = sorted(
        (t for t in todos if _is_active(t) and local_date(t.due_date) == today),
        key=_due_sort_key,
    )
    overdue = sorted(
        (t for t in todos if _is_overdue(t, now) and local_date(t.due_date) < today),
        key=_due_sort_key,
    )
    completed = sum(
        1 for t in todos if t.status == 'completed' and local_date(t.completed_at or t.updated_at) == today
    )
    in_progress = sum(1 for t in todos if t.status == 'in_progress')
    average = round(sum(t.priority for t in due_today) / len(due_today), 1) if due_today else 0.0
    return {
        'date': today.isoformat(),
        'weekday': WEEKDAY_NAMES[today.weekday()],
        'today': due_today,
        'overdue': overdue,
        'stats': {
            'due_today': len(due_today),
            'overdue': len(overdue),
            'completed': completed,
            'in_progress': in_progress,
            'average_priority': average,
        },
        'workload': workload_level(len(due_today)),
    }


def calendar_range(year: int, month: int, view: str = 'month', day: Optional[int] = None,
                   today: Optional[date] = None) -> tuple[date, date]:
    """First and last day shown by the grid. Raises ValueError on bad input."""
    if month < 1 or month > 12:
        raise ValueError('month must be between 1 and 12')
    if view not in CALENDAR_VIEWS:
        raise ValueError(f"view must be one of {', '.join(CALENDAR_VIEWS)}")
    first = date(year, month, 1)
    try:
        if view == 'month':
            start = first - timedelta(days=first.weekday())
            return start, start + timedelta(days=41)
        if day is None:
            today = today or local_today()
            day = today.day if (today.year, today.month) == (year, month) else 1
        if day < 1 or day > calendar.monthrange(year, month)[1]:
            raise ValueError('day is out of range for this month')
        return week_bounds(date(year, month, day))
    except OverflowError as e:
        # the grid spills into the neighbouring weeks, past date.max/date.min
        raise ValueError('year out of range') from e


def calendar_grid(todos, year: int, month: int, view: str = 'month', day: Optional[int] = None,
                  now: Optional[datetime] = None) -> dict:
    now = now or now_utc()
    today = local_today(now)
    start, end = calendar_range(year, month, view, day, today)
    by_day: dict[date, list] = {}
    for t in todos:
        d = local_date(t.due_date)
        if d is not None and start <= d <= end:
            by_day.setdefault(d, []).append(t)
    days = []
    cur = start
    while cur <= end:
        days.append({
            'date': cur,
            'is_current_month': cur.month == month and cur.year == year,
            'is_today': cur == today,
            'todos': sorted(by_day.get(cur, []), key=_due_sort_key),
        })
        cur += timedelta(days=1)
    return {'year': year, 'month': month, 'view': view, 'start': start, 'end': end, 'days': days}


@router.get('/api/dashboard/stats')
async def dashboard_stats(current_user: User = Depends(require_login)):
    async with async_session() as sess:
        todos = await todos_for_user(sess, current_user.id)
        cats = await categories_for_todos(sess, [t.id for t in todos])
    now = now_utc()
    return {
        'counts': status_counts(todos, now),
        'categories': category_stats(todos, cats),
        'total': len(todos),
    }


@router.get('/api/dashboard/digest')
async def dashboard_digest(current_user: User = Depends(require_login)):
    async with async_session() as sess:
        todos = await todos_for_user(sess, current_user.id)
        cats = await categories_for_todos(sess, [t.id for t in todos])
    digest = daily_digest(todos)
    digest['today'] = [serialize_todo(t, categories=cats[t.id]) for t in digest['today']]
    digest['overdue'] = [serialize_todo(t, categories=cats[t.id]) for t in digest['overdue']]
    return {'digest': digest}


@router.get('/api/calendar')
async def calendar_view(
    year: Optional[int] = None,
    month: Optional[int] = None,
    view: str = 'month',
    day: Optional[int] = None,
    current_user: User = Depends(require_login),
):
    today = local_today()
    year = year or today.year
    month = month or today.month
    async with async_session() as sess:
        todos = await todos_for_user(sess, current_user.id)
        cats = await categories_for_todos(sess, [t.id for t in todos])
    try:
        grid = calendar_grid(todos, year, month, view, day)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    grid['start'] = grid['start'].isoformat()
    grid['end'] = grid['end'].isoformat()
    for cell in grid['days']:
        cell['date'] = cell['date'].isoformat()
        cell['todos'] = [serialize_todo(t, categories=cats[t.id]) for t in cell['todos']]
    return grid
