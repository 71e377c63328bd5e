from contextlib import asynccontextmanager
import logging
import sys
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import config
from .auth import router as auth_router
from .categories_api import router as categories_router
from .dashboard import router as dashboard_router
from .db import init_db
from .todos_api import router as todos_router
from .utils import format_utc_iso, now_utc

logger = logging.getLogger(__name__)
# Make INFO-level messages of the package visible on the server console when
# no handlers are configured.
_pkg_logger = logging.getLogger('taskhub')
if not _pkg_logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
    handler.setFormatter(formatter)
    _pkg_logger.addHandler(handler)
_pkg_logger.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))


@asynccontextmanager
async def lifespan(app: FastAPI):
    # The application should not start without a proper secret in the
    # environment; tokens signed with the fallback are forgeable.
    if not config.SECRET_KEY or config.SECRET_KEY == config.INSECURE_SECRET_FALLBACK:
        raise RuntimeError(
            "SECRET_KEY not set or insecure fallback in use; set the SECRET_KEY environment variable before starting the server"
        )
    await init_db()
    logger.info('starting server using DATABASE_URL=%s display timezone=%s', config.DATABASE_URL, config.DISPLAY_TIMEZONE)
    yield
    logger.info('server stopped')


app = FastAPI(title='Taskhub API', version=config.APP_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

app.include_router(auth_router)
app.include_router(todos_router)
app.include_router(categories_router)
app.include_router(dashboard_router)


@app.middleware('http')
async def timing_middleware(request: Request, call_next):
    start = time.perf_counter()
    resp = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000.0
    # include query string for context but keep logs concise
    logger.info('timing %s %s %s %.1fms', request.method, request.url.path, request.url.query, duration_ms)
    return resp


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception('unhandled error on %s %s', request.method, request.url.path)
    detail = 'internal server error'
    if config.DEV_MODE:
        detail = f'{detail}: {exc}'
    return JSONResponse(status_code=500, content={'detail': detail})


@app.get('/health')
async def health():
    return {'status': 'ok', 'timestamp': format_utc_iso(now_utc()), 'version': config.APP_VERSION}


@app.get('/')
async def root():
    return {
        'name': 'Taskhub API',
        'version': config.APP_VERSION,
        'endpoints': {
            'auth': '/api/auth',
            'todos': '/api/todos',
            'categories': '/api/categories',
            'dashboard': '/api/dashboard',
            'calendar': '/api/calendar',
            'health': '/health',
        },
    }
