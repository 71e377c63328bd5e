from typing import Optional
from datetime import datetime
from .utils import now_utc
from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint


TODO_STATUSES = ('open', 'in_progress', 'completed', 'cancelled')
# Statuses that still count as work to do.
ACTIVE_STATUSES = ('open', 'in_progress')

DEFAULT_CATEGORY_COLOR = '#3498db'
DEFAULT_CATEGORY_COLORS = [
    '#3498db',  # blue
    '#e74c3c',  # red
    '#2ecc71',  # green
    '#f39c12',  # orange
    '#9b59b6',  # purple
    '#1abc9c',  # turquoise
    '#e67e22',  # carrot
    '#34495e',  # wet asphalt
    '#e91e63',  # pink
    '#ff9800',  # amber
    '#795548',  # brown
    '#607d8b',  # blue grey
]


class TodoCategory(SQLModel, table=True):
    todo_id: Optional[int] = Field(default=None, foreign_key="todo.id", primary_key=True)
    category_id: Optional[int] = Field(default=None, foreign_key="category.id", primary_key=True)


class TodoLabel(SQLModel, table=True):
    todo_id: Optional[int] = Field(default=None, foreign_key="todo.id", primary_key=True)
    label_id: Optional[int] = Field(default=None, foreign_key="label.id", primary_key=True)


class User(SQLModel, table=True):
    """Account owning todos and categories; password stored as a passlib hash."""
    id: Optional[int] = Field(default=None, primary_key=True)
    # stored lowercased so lookups are case-insensitive
    email: str = Field(index=True, sa_column_kwargs={"unique": True})
    password_hash: str
    name: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)


class Category(SQLModel, table=True):
    """User-defined coloured grouping. Names are unique per user, ignoring case
    (enforced by the categories API)."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    color: str = Field(default=DEFAULT_CATEGORY_COLOR)
    user_id: int = Field(foreign_key="user.id", index=True)
    created_at: datetime | None = Field(default_factory=now_utc)


class Label(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(sa_column_kwargs={"unique": True, "index": True})


class Todo(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    title: str
    description: Optional[str] = None
    status: str = Field(default='open', index=True)
    # 0 (none) .. 10 (highest)
    priority: int = Field(default=0, index=True)
    # UTC instant. Date-only input is stored as local midnight in the display
    # timezone and flagged with due_has_time=False.
    due_date: Optional[datetime] = None
    due_has_time: bool = Field(default=False)
    created_at: datetime | None = Field(default_factory=now_utc)
    updated_at: datetime | None = Field(default_factory=now_utc)
    completed_at: Optional[datetime] = None
    # JSON-encoded RecurrencePattern (see taskhub.recurrence)
    recurrence_pattern: Optional[str] = None
    # Root todo of the series for spawned instances.
    parent_task_id: Optional[int] = Field(default=None, foreign_key="todo.id", index=True)
    is_recurring_instance: bool = Field(default=False, index=True)
    # Position of this todo within its series, 1 for the root. 0 when the
    # todo never recurred.
    occurrence_count: int = Field(default=0)

    __table_args__ = (
        UniqueConstraint('parent_task_id', 'occurrence_count', name='uq_todo_series_occurrence'),
    )
