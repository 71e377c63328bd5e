from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

import logging

from . import config

logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL

engine = create_async_engine(DATABASE_URL, echo=False, future=True, poolclass=NullPool)


@event.listens_for(engine.sync_engine, 'connect')
def _enable_sqlite_foreign_keys(dbapi_con, con_record):
    # SQLite ships with foreign key enforcement off for every new connection.
    if not DATABASE_URL.startswith('sqlite'):
        return
    cur = dbapi_con.cursor()
    try:
        cur.execute('PRAGMA foreign_keys=ON')
    finally:
        cur.close()


async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# Columns added to the todo table after the first release. Older database
# files get them through ALTER TABLE in init_db().
_TODO_LATE_COLUMNS = {
    'recurrence_pattern': "ALTER TABLE todo ADD COLUMN recurrence_pattern TEXT",
    'parent_task_id': "ALTER TABLE todo ADD COLUMN parent_task_id INTEGER",
    'is_recurring_instance': "ALTER TABLE todo ADD COLUMN is_recurring_instance BOOLEAN DEFAULT 0 NOT NULL",
    'occurrence_count': "ALTER TABLE todo ADD COLUMN occurrence_count INTEGER DEFAULT 0 NOT NULL",
    'due_has_time': "ALTER TABLE todo ADD COLUMN due_has_time BOOLEAN DEFAULT 0 NOT NULL",
    'completed_at': "ALTER TABLE todo ADD COLUMN completed_at DATETIME",
}

_TODO_INDEXES = (
    "CREATE INDEX IF NOT EXISTS ix_todo_parent_task_id ON todo(parent_task_id)",
    "CREATE INDEX IF NOT EXISTS ix_todo_is_recurring_instance ON todo(is_recurring_instance)",
    "CREATE INDEX IF NOT EXISTS ix_todo_due_date ON todo(due_date)",
)


async def init_db():
    # import models so their tables are registered on SQLModel.metadata
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
        if not DATABASE_URL.startswith('sqlite'):
            return
        # CREATE TABLE does not alter existing tables, so add the recurring
        # task columns to databases created before they existed.
        try:
            res = await conn.execute(text("PRAGMA table_info('todo')"))
            cols = [r[1] for r in res.fetchall()]
            for name, ddl in _TODO_LATE_COLUMNS.items():
                if name in cols:
                    continue
                try:
                    await conn.execute(text(ddl))
                    logger.info('init_db: added todo.%s', name)
                except Exception:
                    logger.exception('failed to add column during init_db: %s', ddl)
        except Exception:
            logger.exception('failed to ensure recurrence columns in init_db')
        for ddl in _TODO_INDEXES:
            try:
                await conn.execute(text(ddl))
            except Exception:
                logger.exception('failed to create index during init_db: %s', ddl)


async def reset_db():
    """Drop and recreate every table. Used by the test suite."""
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
    await init_db()
