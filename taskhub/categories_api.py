import logging
import re

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import delete as sqlalchemy_delete
from sqlalchemy import func
from sqlmodel import select

from .auth import read_json_body, require_login
from .db import async_session
from .models import Category, DEFAULT_CATEGORY_COLOR, DEFAULT_CATEGORY_COLORS, TodoCategory, User
from .utils import format_utc_iso

router = APIRouter(prefix='/api/categories', tags=['categories'])
logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100
COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")


def serialize_category(c: Category, usage_count: int | None = None) -> dict:
    out = {
        'id': c.id,
        'name': c.name,
        'color': c.color,
        'user_id': c.user_id,
        'created_at': format_utc_iso(c.created_at),
    }
    if usage_count is not None:
        out['usage_count'] = usage_count
    return out


def _clean_name(name) -> str:
    if not isinstance(name, str) or not name.strip():
        raise HTTPException(status_code=400, detail='name is required')
    name = name.strip()
    if len(name) > MAX_NAME_LENGTH:
        raise HTTPException(status_code=400, detail=f'name must be at most {MAX_NAME_LENGTH} characters')
    return name


def _clean_color(color) -> str:
    if not isinstance(color, str) or not COLOR_RE.match(color):
        raise HTTPException(status_code=400, detail='invalid color format, use #RRGGBB')
    return color.lower()


async def _find_by_name(sess, user_id: int, name: str) -> Category | None:
    q = await sess.exec(
        select(Category).where(Category.user_id == user_id).where(func.lower(Category.name) == name.lower())
    )
    return q.first()


async def _usage_count(sess, category_id: int) -> int:
    q = await sess.exec(select(func.count()).select_from(TodoCategory).where(TodoCategory.category_id == category_id))
    return int(q.one())


async def _owned_category(sess, category_id: int, user: User, forbidden_status: int = 404) -> Category:
    cat = await sess.get(Category, category_id)
    if not cat:
        raise HTTPException(status_code=404, detail='category not found')
    if cat.user_id != user.id:
        if forbidden_status == 403:
            raise HTTPException(status_code=403, detail='forbidden')
        raise HTTPException(status_code=404, detail='category not found')
    return cat


@router.get('')
async def list_categories(include_usage: bool = False, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        if include_usage:
            q = (
                select(Category, func.count(TodoCategory.todo_id))
                .join(TodoCategory, TodoCategory.category_id == Category.id, isouter=True)
                .where(Category.user_id == current_user.id)
                .group_by(Category.id)
                .order_by(Category.name.asc())
            )
            rows = (await sess.exec(q)).all()
            return {'categories': [serialize_category(c, int(n)) for c, n in rows]}
        q = select(Category).where(Category.user_id == current_user.id).order_by(Category.name.asc())
        cats = (await sess.exec(q)).all()
    return {'categories': [serialize_category(c) for c in cats]}


# registered before /{category_id} so the literal path wins
@router.get('/colors/defaults')
async def default_colors(current_user: User = Depends(require_login)):
    return {'colors': list(DEFAULT_CATEGORY_COLORS)}


@router.get('/{category_id}')
async def get_category(category_id: int, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        cat = await _owned_category(sess, category_id, current_user, forbidden_status=403)
        usage = await _usage_count(sess, cat.id)
    return {'category': serialize_category(cat, usage)}


@router.post('', status_code=201)
async def create_category(request: Request, current_user: User = Depends(require_login)):
    payload = await read_json_body(request)
    name = _clean_name(payload.get('name'))
    color = payload.get('color')
    color = DEFAULT_CATEGORY_COLOR if color is None else _clean_color(color)
    async with async_session() as sess:
        if await _find_by_name(sess, current_user.id, name):
            raise HTTPException(status_code=409, detail='a category with this name already exists')
        cat = Category(name=name, color=color, user_id=current_user.id)
        sess.add(cat)
        await sess.commit()
        await sess.refresh(cat)
    return {'category': serialize_category(cat)}


@router.patch('/{category_id}')
async def update_category(category_id: int, request: Request, current_user: User = Depends(require_login)):
    payload = await read_json_body(request)
    async with async_session() as sess:
        cat = await _owned_category(sess, category_id, current_user)
        if 'name' in payload:
            name = _clean_name(payload.get('name'))
            clash = await _find_by_name(sess, current_user.id, name)
            if clash and clash.id != cat.id:
                raise HTTPException(status_code=409, detail='a category with this name already exists')
            cat.name = name
        if payload.get('color') is not None:
            cat.color = _clean_color(payload.get('color'))
        sess.add(cat)
        await sess.commit()
        await sess.refresh(cat)
    return {'category': serialize_category(cat)}


@router.delete('/{category_id}')
async def delete_category(category_id: int, force: bool = False, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        cat = await _owned_category(sess, category_id, current_user)
        usage = await _usage_count(sess, cat.id)
        if usage > 0 and not force:
            raise HTTPException(
                status_code=409,
                detail={
                    'message': f'category is used by {usage} todo(s); pass force=true to delete anyway',
                    'usage_count': usage,
                },
            )
        await sess.exec(sqlalchemy_delete(TodoCategory).where(TodoCategory.category_id == cat.id))
        await sess.delete(cat)
        await sess.commit()
    logger.info('deleted category id=%s (unlinked from %d todos)', category_id, usage)
    return {'message': 'category deleted', 'affected_todos': usage}
