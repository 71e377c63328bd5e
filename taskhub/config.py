"""Runtime configuration for the Taskhub API.

Settings are read from environment variables so deployments and tests can
change them without code edits. Optional overrides may be placed in
``taskhub/local_config.py`` (not version controlled).
"""
import os


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


# Full SQLAlchemy URL. The aiosqlite driver is required because every
# session in the app is async.
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite+aiosqlite:///./taskhub.db')

# SECRET_KEY must be provided in production; the app lifespan refuses to
# start with this fallback value.
INSECURE_SECRET_FALLBACK = 'CHANGE_ME_IN_ENV_FOR_TESTS'
SECRET_KEY = os.getenv('SECRET_KEY', INSECURE_SECRET_FALLBACK)

# IANA zone used to interpret offset-less input and to render dates.
# Storage is always UTC.
DISPLAY_TIMEZONE = os.getenv('DISPLAY_TIMEZONE', 'Europe/Berlin')

ACCESS_TOKEN_EXPIRE_MINUTES = _int_env('ACCESS_TOKEN_EXPIRE_MINUTES', 60 * 24)
# Lifetime of tokens issued with remember_me=true on login.
REMEMBER_ME_EXPIRE_DAYS = _int_env('REMEMBER_ME_EXPIRE_DAYS', 30)

CORS_ORIGINS = [
    o.strip()
    for o in os.getenv('CORS_ORIGINS', 'http://localhost:3000,http://localhost:5173').split(',')
    if o.strip()
]

# When true, 500 responses include the exception message.
DEV_MODE = _trueish(os.getenv('DEV_MODE', '0'))

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# Upper bound on rule iterations when searching for the next occurrence.
MAX_RECURRENCE_LOOKAHEAD = _int_env('MAX_RECURRENCE_LOOKAHEAD', 400)

APP_VERSION = '1.0.0'

try:
    from .local_config import *  # type: ignore  # noqa: F401,F403
except ImportError:
    pass
