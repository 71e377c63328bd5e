import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import delete as sqlalchemy_delete
from sqlalchemy import update as sqlalchemy_update
from sqlmodel import select

from . import config
from .db import async_session
from .models import Category, Todo, TodoCategory, TodoLabel, User
from .utils import format_utc_iso

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
MIN_PASSWORD_LENGTH = 6
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# prefer a pure-Python, widely-available scheme for tests and portability;
# keep bcrypt as a fallback if available.
pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

router = APIRouter(prefix='/api/auth', tags=['auth'])


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def get_user_by_email(email: str) -> Optional[User]:
    async with async_session() as sess:
        q = await sess.exec(select(User).where(User.email == normalize_email(email)))
        return q.first()


async def get_user_by_id(user_id: int) -> Optional[User]:
    async with async_session() as sess:
        return await sess.get(User, user_id)


async def authenticate_user(email: str, password: str) -> Optional[User]:
    user = await get_user_by_email(email)
    if not user:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> tuple[str, datetime]:
    """Encode a signed JWT and return it with its expiry instant."""
    to_encode = data.copy()
    if expires_delta is None:
        expires_delta = timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    expire = datetime.now(timezone.utc) + expires_delta
    # RFC 7519 recommends NumericDate (seconds since epoch). Encode as int.
    to_encode.update({"exp": int(expire.timestamp())})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=ALGORITHM), expire


def token_for_user(user: User, remember_me: bool = False) -> tuple[str, datetime]:
    if remember_me:
        delta = timedelta(days=config.REMEMBER_ME_EXPIRE_DAYS)
    else:
        delta = timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    return create_access_token({"sub": str(user.id), "email": user.email}, expires_delta=delta)


def user_public(user: User) -> dict:
    return {
        'id': user.id,
        'email': user.email,
        'name': user.name,
        'created_at': format_utc_iso(user.created_at),
    }


async def get_current_user(token: Optional[str] = Depends(oauth2_scheme)) -> Optional[User]:
    """Resolve the bearer token to a User. Returns None when no token was
    sent; raises 401 for invalid, expired or orphaned tokens."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        return None
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[ALGORITHM])
        sub = payload.get("sub")
        if sub is None:
            raise credentials_exception
        user_id = int(sub)
    except (JWTError, ValueError):
        raise credentials_exception
    user = await get_user_by_id(user_id)
    if user is None:
        # token outlived its account
        raise credentials_exception
    return user


async def require_login(user: Optional[User] = Depends(get_current_user)) -> User:
    """Dependency that enforces an authenticated user.

    Returns the User when present, otherwise raises 401 Unauthorized.
    """
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def read_json_body(request: Request) -> dict:
    try:
        payload = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="JSON object expected")
    return payload


def _validate_email(email) -> str:
    if not isinstance(email, str) or not EMAIL_RE.match(email.strip()):
        raise HTTPException(status_code=400, detail="invalid email format")
    return normalize_email(email)


def _validate_password(password) -> str:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail=f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    return password


@router.post('/register', status_code=201)
async def register(request: Request):
    payload = await read_json_body(request)
    email = payload.get('email')
    password = payload.get('password')
    name = payload.get('name')
    if not email or not password:
        raise HTTPException(status_code=400, detail="email and password are required")
    password = _validate_password(password)
    email = _validate_email(email)
    if name is not None and not isinstance(name, str):
        raise HTTPException(status_code=400, detail="name must be a string")

    async with async_session() as sess:
        q = await sess.exec(select(User).where(User.email == email))
        if q.first():
            raise HTTPException(status_code=409, detail="a user with this email already exists")
        user = User(email=email, password_hash=hash_password(password), name=(name.strip() or None) if name else None)
        sess.add(user)
        await sess.commit()
        await sess.refresh(user)
    logger.info('registered user id=%s', user.id)
    token, expires_at = token_for_user(user)
    return {'user': user_public(user), 'token': token, 'token_type': 'bearer', 'expires_at': format_utc_iso(expires_at)}


@router.post('/login')
async def login(request: Request):
    payload = await read_json_body(request)
    email = payload.get('email')
    password = payload.get('password')
    if not email or not password or not isinstance(email, str) or not isinstance(password, str):
        raise HTTPException(status_code=400, detail="email and password are required")
    user = await authenticate_user(email, password)
    if not user:
        logger.info('failed login for %s', normalize_email(email))
        raise HTTPException(status_code=401, detail="invalid credentials")
    remember_me = bool(payload.get('remember_me') or payload.get('rememberMe'))
    token, expires_at = token_for_user(user, remember_me=remember_me)
    return {'user': user_public(user), 'token': token, 'token_type': 'bearer', 'expires_at': format_utc_iso(expires_at)}


@router.get('/me')
async def me(current_user: User = Depends(require_login)):
    return {'user': user_public(current_user)}


@router.patch('/me')
async def update_me(request: Request, current_user: User = Depends(require_login)):
    payload = await read_json_body(request)
    async with async_session() as sess:
        user = await sess.get(User, current_user.id)
        if 'email' in payload:
            email = _validate_email(payload.get('email'))
            if email != user.email:
                q = await sess.exec(select(User).where(User.email == email))
                if q.first():
                    raise HTTPException(status_code=409, detail="a user with this email already exists")
                user.email = email
        if 'password' in payload:
            user.password_hash = hash_password(_validate_password(payload.get('password')))
        if 'name' in payload:
            name = payload.get('name')
            if name is not None and not isinstance(name, str):
                raise HTTPException(status_code=400, detail="name must be a string")
            user.name = (name.strip() or None) if name else None
        sess.add(user)
        await sess.commit()
        await sess.refresh(user)
    return {'user': user_public(user)}


@router.delete('/me')
async def delete_me(current_user: User = Depends(require_login)):
    """Delete the account together with everything it owns."""
    async with async_session() as sess:
        todo_ids = select(Todo.id).where(Todo.user_id == current_user.id)
        await sess.exec(sqlalchemy_delete(TodoCategory).where(TodoCategory.todo_id.in_(todo_ids)))
        await sess.exec(sqlalchemy_delete(TodoLabel).where(TodoLabel.todo_id.in_(todo_ids)))
        # break the series self-references before removing the rows
        await sess.exec(
            sqlalchemy_update(Todo).where(Todo.user_id == current_user.id).values(parent_task_id=None)
        )
        await sess.exec(sqlalchemy_delete(Todo).where(Todo.user_id == current_user.id))
        await sess.exec(sqlalchemy_delete(Category).where(Category.user_id == current_user.id))
        await sess.exec(sqlalchemy_delete(User).where(User.id == current_user.id))
        await sess.commit()
    logger.info('deleted user id=%s', current_user.id)
    return {'message': 'account deleted'}
