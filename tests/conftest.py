import os
import pathlib
import sys
import tempfile
import warnings
import logging as _logging

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# Ensure a secure SECRET_KEY and a throwaway database are configured before
# the application modules read their configuration.
os.environ.setdefault('SECRET_KEY', 'test-secret-key-for-unit-tests')
os.environ['DISPLAY_TIMEZONE'] = 'Europe/Berlin'
_TMP_DIR = tempfile.mkdtemp(prefix='taskhub-tests-')
os.environ['DATABASE_URL'] = f"sqlite+aiosqlite:///{os.path.join(_TMP_DIR, 'test.db')}"

try:
    from sqlalchemy.exc import SAWarning
    warnings.filterwarnings('ignore', category=SAWarning)
except ImportError:
    pass

# Reduce SQLAlchemy logger verbosity during tests
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool', 'sqlmodel'):
    _logging.getLogger(_name).setLevel(_logging.ERROR)

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from taskhub.main import app  # noqa: E402
from taskhub.db import reset_db  # noqa: E402

DEFAULT_PASSWORD = 'secret123'


async def register(ac, email: str, password: str = DEFAULT_PASSWORD, name: str | None = None) -> str:
    """Register a user through the API and return its bearer token."""
    body = {'email': email, 'password': password}
    if name is not None:
        body['name'] = name
    r = await ac.post('/api/auth/register', json=body)
    assert r.status_code == 201, r.text
    return r.json()['token']


def bearer(token: str) -> dict:
    return {'Authorization': f'Bearer {token}'}


@pytest_asyncio.fixture
async def ensure_db():
    await reset_db()
    yield


@pytest_asyncio.fixture
async def anon_client(ensure_db):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def client(anon_client):
    """Client authenticated as alice@example.com."""
    token = await register(anon_client, 'alice@example.com', name='Alice')
    anon_client.headers.update(bearer(token))
    yield anon_client


@pytest_asyncio.fixture
async def other_headers(anon_client):
    """Authorization headers of a second user, bob@example.com."""
    token = await register(anon_client, 'bob@example.com')
    return bearer(token)
