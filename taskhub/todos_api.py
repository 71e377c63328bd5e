import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy import and_, func, or_
from sqlalchemy import delete as sqlalchemy_delete
from sqlalchemy import update as sqlalchemy_update
from sqlmodel import select

from .auth import read_json_body, require_login
from .categories_api import serialize_category
from .db import async_session
from .models import Category, Label, Todo, TodoCategory, TodoLabel, TODO_STATUSES, User
from .recurrence import (
    RecurrenceError,
    anchor_pattern,
    describe_recurrence,
    dump_recurrence_pattern,
    load_stored_pattern,
    next_occurrence,
    parse_recurrence_pattern,
    pattern_to_rrule_string,
    reanchor_pattern,
    recurrence_icon,
    upcoming_occurrences,
)
from .utils import (
    convert_dates_for_display,
    create_date_info,
    ensure_utc,
    format_date_only_for_display,
    is_overdue,
    local_date,
    local_day_bounds,
    local_today,
    now_utc,
    parse_datetime_input,
)

router = APIRouter(prefix='/api/todos', tags=['todos'])
logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 255
MAX_LABEL_LENGTH = 100
MIN_PRIORITY, MAX_PRIORITY = 0, 10
MAX_OCCURRENCE_PREVIEW = 50
SORT_FIELDS = ('created_at', 'due_date', 'priority')
CLOSED_STATUSES = ('completed', 'cancelled')

_DATE_FIELDS = ('created_at', 'updated_at', 'due_date', 'completed_at')


def serialize_label(label: Label) -> dict:
    return {'id': label.id, 'name': label.name}


def serialize_todo(todo: Todo, categories=None, labels=None) -> dict:
    pattern = load_stored_pattern(todo.recurrence_pattern)
    out = convert_dates_for_display(
        {
            'id': todo.id,
            'user_id': todo.user_id,
            'title': todo.title,
            'description': todo.description,
            'status': todo.status,
            'priority': todo.priority,
            'due_date': todo.due_date,
            'due_has_time': bool(todo.due_has_time),
            'created_at': todo.created_at,
            'updated_at': todo.updated_at,
            'completed_at': todo.completed_at,
            'recurrence_pattern': pattern.model_dump(exclude_none=True) if pattern else None,
            'parent_task_id': todo.parent_task_id,
            'is_recurring_instance': bool(todo.is_recurring_instance),
            'occurrence_count': todo.occurrence_count,
        },
        fields=_DATE_FIELDS,
    )
    out['recurrence_text'] = describe_recurrence(pattern) if pattern else None
    out['recurrence_icon'] = recurrence_icon(pattern) if pattern else None
    out['is_overdue'] = todo.status not in CLOSED_STATUSES and is_overdue(todo.due_date, bool(todo.due_has_time))
    out['due_date_only'] = format_date_only_for_display(todo.due_date) or None
    if categories is not None:
        out['categories'] = [serialize_category(c) for c in categories]
    if labels is not None:
        out['labels'] = [serialize_label(lb) for lb in labels]
    return out


async def categories_for_todos(sess, todo_ids) -> dict[int, list[Category]]:
    out: dict[int, list[Category]] = {tid: [] for tid in todo_ids}
    if not todo_ids:
        return out
    q = await sess.exec(
        select(TodoCategory.todo_id, Category)
        .join(Category, Category.id == TodoCategory.category_id)
        .where(TodoCategory.todo_id.in_(todo_ids))
        .order_by(Category.name.asc())
    )
    for todo_id, cat in q.all():
        out.setdefault(todo_id, []).append(cat)
    return out


async def labels_for_todos(sess, todo_ids) -> dict[int, list[Label]]:
    out: dict[int, list[Label]] = {tid: [] for tid in todo_ids}
    if not todo_ids:
        return out
    q = await sess.exec(
        select(TodoLabel.todo_id, Label)
        .join(Label, Label.id == TodoLabel.label_id)
        .where(TodoLabel.todo_id.in_(todo_ids))
        .order_by(Label.name.asc())
    )
    for todo_id, label in q.all():
        out.setdefault(todo_id, []).append(label)
    return out


async def todos_for_user(sess, user_id: int) -> list[Todo]:
    """All todos of a user, oldest first. Used by the dashboard views."""
    q = await sess.exec(select(Todo).where(Todo.user_id == user_id).order_by(Todo.created_at.asc(), Todo.id.asc()))
    return list(q.all())


def _clean_title(value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise HTTPException(status_code=400, detail='title is required')
    value = value.strip()
    if len(value) > MAX_TITLE_LENGTH:
        raise HTTPException(status_code=400, detail=f'title must be at most {MAX_TITLE_LENGTH} characters')
    return value


def _clean_description(value) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise HTTPException(status_code=400, detail='description must be a string')
    return value.strip() or None


def _clean_status(value) -> str:
    if value not in TODO_STATUSES:
        raise HTTPException(status_code=400, detail=f"invalid status, expected one of {', '.join(TODO_STATUSES)}")
    return value


def _clean_priority(value) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool):
        raise HTTPException(status_code=400, detail='priority must be an integer')
    if isinstance(value, str) and value.strip().lstrip('-').isdigit():
        value = int(value.strip())
    if not isinstance(value, int):
        raise HTTPException(status_code=400, detail='priority must be an integer')
    if value < MIN_PRIORITY or value > MAX_PRIORITY:
        raise HTTPException(status_code=400, detail=f'priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}')
    return value


def _parse_due(value):
    """Return (utc_datetime, has_time); (None, False) clears the due date."""
    if value is None or value == '':
        return None, False
    try:
        return parse_datetime_input(value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f'invalid due_date: {e}')


def _parse_pattern(value):
    try:
        return parse_recurrence_pattern(value)
    except RecurrenceError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _clean_category_ids(value) -> list[int]:
    if value is None:
        return []
    if not isinstance(value, list) or any(isinstance(v, bool) or not isinstance(v, int) for v in value):
        raise HTTPException(status_code=400, detail='category_ids must be a list of integers')
    return list(dict.fromkeys(value))


async def _check_categories_owned(sess, category_ids: list[int], user: User) -> None:
    if not category_ids:
        return
    q = await sess.exec(select(Category.id).where(Category.id.in_(category_ids)).where(Category.user_id == user.id))
    found = set(q.all())
    missing = [cid for cid in category_ids if cid not in found]
    if missing:
        raise HTTPException(status_code=400, detail=f'unknown category ids: {missing}')


async def _replace_categories(sess, todo_id: int, category_ids: list[int]) -> None:
    await sess.exec(sqlalchemy_delete(TodoCategory).where(TodoCategory.todo_id == todo_id))
    for cid in category_ids:
        sess.add(TodoCategory(todo_id=todo_id, category_id=cid))


async def _owned_todo(sess, todo_id: int, user: User, forbidden_status: int = 404) -> Todo:
    todo = await sess.get(Todo, todo_id)
    if not todo:
        raise HTTPException(status_code=404, detail='todo not found')
    if todo.user_id != user.id:
        if forbidden_status == 403:
            raise HTTPException(status_code=403, detail='forbidden')
        raise HTTPException(status_code=404, detail='todo not found')
    return todo


def _apply_pattern(todo: Todo, pattern) -> None:
    if pattern is None:
        todo.recurrence_pattern = None
        return
    if todo.due_date is None:
        raise HTTPException(status_code=400, detail='a recurring todo needs a due_date')
    todo.recurrence_pattern = dump_recurrence_pattern(anchor_pattern(pattern, ensure_utc(todo.due_date)))
    if not todo.occurrence_count:
        todo.occurrence_count = 1


async def spawn_next_instance(sess, todo: Todo) -> Optional[Todo]:
    """Create the follow-up todo of a completed recurring todo.

    Returns None when the todo does not recur, the series has ended or the
    next instance already exists.
    """
    pattern = load_stored_pattern(todo.recurrence_pattern)
    if pattern is None or todo.due_date is None:
        return None
    position = todo.occurrence_count or 1
    due = next_occurrence(pattern, ensure_utc(todo.due_date), position)
    if due is None:
        logger.info('recurring series of todo id=%s ended at occurrence %d', todo.id, position)
        return None
    root_id = todo.parent_task_id or todo.id
    q = await sess.exec(
        select(Todo).where(Todo.parent_task_id == root_id).where(Todo.occurrence_count == position + 1)
    )
    if q.first():
        return None
    child = Todo(
        user_id=todo.user_id,
        title=todo.title,
        description=todo.description,
        status='open',
        priority=todo.priority,
        due_date=due,
        due_has_time=todo.due_has_time,
        recurrence_pattern=todo.recurrence_pattern,
        parent_task_id=root_id,
        is_recurring_instance=True,
        occurrence_count=position + 1,
    )
    sess.add(child)
    await sess.flush()
    q = await sess.exec(select(TodoCategory.category_id).where(TodoCategory.todo_id == todo.id))
    for cid in q.all():
        sess.add(TodoCategory(todo_id=child.id, category_id=cid))
    logger.info('spawned todo id=%s (occurrence %d of series %s)', child.id, child.occurrence_count, root_id)
    return child


async def _set_status(sess, todo: Todo, new_status: str) -> Optional[Todo]:
    previous = todo.status
    todo.status = new_status
    if new_status == 'completed' and previous != 'completed':
        todo.completed_at = now_utc()
        return await spawn_next_instance(sess, todo)
    if new_status != 'completed':
        todo.completed_at = None
    return None


async def _todo_response(sess, todo: Todo, next_todo: Optional[Todo] = None) -> dict:
    ids = [todo.id] + ([next_todo.id] if next_todo else [])
    cats = await categories_for_todos(sess, ids)
    out = {'todo': serialize_todo(todo, categories=cats[todo.id])}
    if next_todo is not None:
        out['next_todo'] = serialize_todo(next_todo, categories=cats[next_todo.id])
    return out


@router.get('')
async def list_todos(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    category_id: Optional[int] = None,
    label: Optional[str] = None,
    due_from: Optional[str] = None,
    due_to: Optional[str] = None,
    overdue: bool = False,
    q: Optional[str] = None,
    recurring: Optional[bool] = None,
    include_labels: bool = False,
    sort: Optional[str] = None,
    current_user: User = Depends(require_login),
):
    stmt = select(Todo).where(Todo.user_id == current_user.id)
    if status:
        stmt = stmt.where(Todo.status == _clean_status(status))
    min_priority = None
    if priority is not None:
        try:
            min_priority = int(priority)
        except ValueError:
            # a non-numeric filter is ignored rather than rejected
            min_priority = None
    if min_priority is not None:
        stmt = stmt.where(Todo.priority >= min_priority)
    if category_id is not None:
        stmt = stmt.where(Todo.id.in_(select(TodoCategory.todo_id).where(TodoCategory.category_id == category_id)))
    if label:
        stmt = stmt.where(
            Todo.id.in_(
                select(TodoLabel.todo_id)
                .join(Label, Label.id == TodoLabel.label_id)
                .where(func.lower(Label.name) == label.strip().lower())
            )
        )
    for raw, is_start in ((due_from, True), (due_to, False)):
        if not raw:
            continue
        try:
            bound, _ = parse_datetime_input(raw)
            start, end = local_day_bounds(local_date(bound))
        except (ValueError, OverflowError) as e:
            raise HTTPException(status_code=400, detail=f"invalid {'due_from' if is_start else 'due_to'}: {e}")
        stmt = stmt.where(Todo.due_date >= start) if is_start else stmt.where(Todo.due_date < end)
    if overdue:
        now = now_utc()
        today_start, _ = local_day_bounds(local_today(now))
        stmt = stmt.where(Todo.status.not_in(CLOSED_STATUSES)).where(
            or_(
                and_(Todo.due_has_time == True, Todo.due_date < now),  # noqa: E712
                and_(Todo.due_has_time == False, Todo.due_date < today_start),  # noqa: E712
            )
        )
    if q and q.strip():
        needle = q.strip().lower()
        stmt = stmt.where(
            or_(
                func.lower(Todo.title).contains(needle, autoescape=True),
                func.lower(func.coalesce(Todo.description, '')).contains(needle, autoescape=True),
            )
        )
    if recurring is not None:
        is_rec = or_(Todo.recurrence_pattern.is_not(None), Todo.parent_task_id.is_not(None))
        stmt = stmt.where(is_rec if recurring else ~is_rec)

    if sort is not None and sort not in SORT_FIELDS:
        raise HTTPException(status_code=400, detail=f"invalid sort, expected one of {', '.join(SORT_FIELDS)}")
    if sort is None and min_priority is not None:
        sort = 'priority'
    if sort == 'due_date':
        stmt = stmt.order_by(Todo.due_date.is_(None), Todo.due_date.asc(), Todo.id.asc())
    elif sort == 'priority':
        stmt = stmt.order_by(Todo.priority.desc(), Todo.created_at.desc(), Todo.id.desc())
    else:
        stmt = stmt.order_by(Todo.created_at.desc(), Todo.id.desc())

    async with async_session() as sess:
        todos = (await sess.exec(stmt)).all()
        ids = [t.id for t in todos]
        cats = await categories_for_todos(sess, ids)
        labels = await labels_for_todos(sess, ids) if include_labels else None
    return {
        'todos': [
            serialize_todo(t, categories=cats[t.id], labels=labels[t.id] if labels is not None else None)
            for t in todos
        ]
    }


@router.get('/{todo_id}')
async def get_todo(todo_id: int, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        todo = await _owned_todo(sess, todo_id, current_user, forbidden_status=403)
        cats = await categories_for_todos(sess, [todo.id])
        labels = await labels_for_todos(sess, [todo.id])
    out = serialize_todo(todo, categories=cats[todo.id], labels=labels[todo.id])
    pattern = load_stored_pattern(todo.recurrence_pattern)
    preview = None
    if pattern is not None and todo.due_date is not None:
        preview = next_occurrence(pattern, ensure_utc(todo.due_date), todo.occurrence_count or 1)
    out['next_occurrence'] = create_date_info(preview)
    out['rrule'] = pattern_to_rrule_string(pattern) if pattern else None
    return {'todo': out}


@router.post('', status_code=201)
async def create_todo(request: Request, current_user: User = Depends(require_login)):
    payload = await read_json_body(request)
    title = _clean_title(payload.get('title'))
    description = _clean_description(payload.get('description'))
    status = _clean_status(payload.get('status') or 'open')
    priority = _clean_priority(payload['priority']) if payload.get('priority') is not None else 0
    due, has_time = _parse_due(payload.get('due_date'))
    pattern = _parse_pattern(payload.get('recurrence_pattern'))
    category_ids = _clean_category_ids(payload.get('category_ids'))

    async with async_session() as sess:
        await _check_categories_owned(sess, category_ids, current_user)
        todo = Todo(
            user_id=current_user.id,
            title=title,
            description=description,
            status=status,
            priority=priority,
            due_date=due,
            due_has_time=has_time,
        )
        _apply_pattern(todo, pattern)
        if status == 'completed':
            todo.completed_at = now_utc()
        sess.add(todo)
        await sess.flush()
        await _replace_categories(sess, todo.id, category_ids)
        await sess.commit()
        await sess.refresh(todo)
        logger.info('created todo id=%s for user id=%s', todo.id, current_user.id)
        return await _todo_response(sess, todo)


@router.patch('/{todo_id}')
async def update_todo(todo_id: int, request: Request, current_user: User = Depends(require_login)):
    payload = await read_json_body(request)
    async with async_session() as sess:
        todo = await _owned_todo(sess, todo_id, current_user)
        if 'title' in payload:
            todo.title = _clean_title(payload.get('title'))
        if 'description' in payload:
            todo.description = _clean_description(payload.get('description'))
        if 'priority' in payload:
            todo.priority = _clean_priority(payload.get('priority'))
        old_due = todo.due_date
        if 'due_date' in payload:
            todo.due_date, todo.due_has_time = _parse_due(payload.get('due_date'))
        if 'recurrence_pattern' in payload:
            _apply_pattern(todo, _parse_pattern(payload.get('recurrence_pattern')))
        elif todo.recurrence_pattern and todo.due_date is None:
            raise HTTPException(status_code=400, detail='a recurring todo needs a due_date')
        elif todo.recurrence_pattern and old_due is not None and 'due_date' in payload:
            pattern = load_stored_pattern(todo.recurrence_pattern)
            if pattern is not None:
                todo.recurrence_pattern = dump_recurrence_pattern(reanchor_pattern(pattern, old_due, todo.due_date))
        if 'category_ids' in payload:
            category_ids = _clean_category_ids(payload.get('category_ids'))
            await _check_categories_owned(sess, category_ids, current_user)
            await _replace_categories(sess, todo.id, category_ids)
        next_todo = None
        if 'status' in payload:
            next_todo = await _set_status(sess, todo, _clean_status(payload.get('status')))
        todo.updated_at = now_utc()
        sess.add(todo)
        await sess.commit()
        await sess.refresh(todo)
        if next_todo is not None:
            await sess.refresh(next_todo)
        out = await _todo_response(sess, todo, next_todo)
    out.setdefault('next_todo', None)
    return out


@router.post('/{todo_id}/complete')
async def complete_todo(todo_id: int, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        todo = await _owned_todo(sess, todo_id, current_user)
        next_todo = await _set_status(sess, todo, 'completed')
        todo.updated_at = now_utc()
        sess.add(todo)
        await sess.commit()
        await sess.refresh(todo)
        if next_todo is not None:
            await sess.refresh(next_todo)
        out = await _todo_response(sess, todo, next_todo)
    out.setdefault('next_todo', None)
    return out


@router.delete('/{todo_id}')
async def delete_todo(todo_id: int, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        todo = await _owned_todo(sess, todo_id, current_user)
        await sess.exec(sqlalchemy_delete(TodoCategory).where(TodoCategory.todo_id == todo.id))
        await sess.exec(sqlalchemy_delete(TodoLabel).where(TodoLabel.todo_id == todo.id))
        # spawned instances outlive their root
        await sess.exec(sqlalchemy_update(Todo).where(Todo.parent_task_id == todo.id).values(parent_task_id=None))
        await sess.delete(todo)
        await sess.commit()
    logger.info('deleted todo id=%s', todo_id)
    return {'message': 'todo deleted'}


@router.get('/{todo_id}/occurrences')
async def list_occurrences(todo_id: int, count: int = 5, current_user: User = Depends(require_login)):
    if count < 1 or count > MAX_OCCURRENCE_PREVIEW:
        raise HTTPException(status_code=400, detail=f'count must be between 1 and {MAX_OCCURRENCE_PREVIEW}')
    async with async_session() as sess:
        todo = await _owned_todo(sess, todo_id, current_user)
    pattern = load_stored_pattern(todo.recurrence_pattern)
    if pattern is None or todo.due_date is None:
        raise HTTPException(status_code=400, detail='todo is not recurring')
    dates = upcoming_occurrences(pattern, todo.due_date, count, todo.occurrence_count or 1)
    return {
        'todo_id': todo.id,
        'recurrence_text': describe_recurrence(pattern),
        'occurrences': [create_date_info(d) for d in dates],
    }


@router.get('/{todo_id}/labels')
async def list_todo_labels(todo_id: int, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        todo = await _owned_todo(sess, todo_id, current_user)
        labels = await labels_for_todos(sess, [todo.id])
    return {'labels': [serialize_label(lb) for lb in labels[todo.id]]}


@router.post('/{todo_id}/labels', status_code=201)
async def add_todo_label(todo_id: int, request: Request, response: Response, current_user: User = Depends(require_login)):
    payload = await read_json_body(request)
    name = payload.get('name')
    if not isinstance(name, str) or not name.strip():
        raise HTTPException(status_code=400, detail='name is required')
    name = name.strip()
    if len(name) > MAX_LABEL_LENGTH:
        raise HTTPException(status_code=400, detail=f'name must be at most {MAX_LABEL_LENGTH} characters')
    async with async_session() as sess:
        todo = await _owned_todo(sess, todo_id, current_user)
        label = (await sess.exec(select(Label).where(Label.name == name))).first()
        if label is None:
            label = Label(name=name)
            sess.add(label)
            await sess.flush()
        link = await sess.get(TodoLabel, (todo.id, label.id))
        if link is not None:
            response.status_code = 200
        else:
            sess.add(TodoLabel(todo_id=todo.id, label_id=label.id))
        await sess.commit()
        await sess.refresh(label)
    return {'label': serialize_label(label)}


@router.delete('/{todo_id}/labels/{label_id}')
async def remove_todo_label(todo_id: int, label_id: int, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        todo = await _owned_todo(sess, todo_id, current_user)
        link = await sess.get(TodoLabel, (todo.id, label_id))
        if link is None:
            raise HTTPException(status_code=404, detail='label not attached to this todo')
        await sess.delete(link)
        await sess.commit()
    return {'message': 'label removed'}
