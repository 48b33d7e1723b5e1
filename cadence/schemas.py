from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import Priority


class UserBase(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)


class UserCreate(UserBase):
    password: str = Field(..., min_length=8, max_length=256)
    email: Optional[str] = Field(default=None, max_length=255)
    is_admin: bool = False


class UserOut(UserBase):
    id: int
    email: Optional[str] = None
    is_admin: bool

    class Config:
        from_attributes = True


class LoginToken(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Token lifetime in seconds")
    user: UserOut


# ---- Projects / tags ---------------------------------------------------------------


class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    color: str = Field(..., min_length=1, max_length=32)
    description: Optional[str] = None


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    color: Optional[str] = Field(default=None, min_length=1, max_length=32)
    description: Optional[str] = None


class ProjectOut(BaseModel):
    id: int
    user_id: int
    name: str
    color: str
    description: Optional[str]
    is_archived: bool

    class Config:
        from_attributes = True


class TagCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    color: str = Field(..., min_length=1, max_length=32)


class TagUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=64)
    color: Optional[str] = Field(default=None, min_length=1, max_length=32)


class TagOut(BaseModel):
    id: int
    name: str
    color: str

    class Config:
        from_attributes = True


# ---- Todos ---------------------------------------------------------------------------


_PATTERN_DESCRIPTION = (
    "Recurrence rule keyed by `type`: "
    "{'type': 'daily', 'interval': 2}, "
    "{'type': 'weekly', 'interval': 1, 'days_of_week': [1, 3, 5]} (0 = Sunday), "
    "{'type': 'monthly', 'interval': 1, 'day_of_month': 31}, "
    "{'type': 'yearly', 'interval': 1}. "
    "Optional on every type: end_date (naive values are app-timezone wall clock, like due_date), max_occurrences."
)


class TodoCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    priority: Priority = Priority.medium
    due_date: Optional[datetime] = None
    due_time: Optional[str] = Field(default=None, description="HH:MM, 24h")
    project_id: Optional[int] = None
    tag_ids: List[int] = Field(default_factory=list)
    is_recurring: bool = False
    recurring_pattern: Optional[Dict[str, Any]] = Field(default=None, description=_PATTERN_DESCRIPTION)


class TodoUpdate(BaseModel):
    """Partial update. Fields left out are not touched.

    `null` clears `description`, `due_date`, `due_time` and `project_id`.
    """

    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    completed: Optional[bool] = None
    priority: Optional[Priority] = None
    due_date: Optional[datetime] = None
    due_time: Optional[str] = None
    project_id: Optional[int] = None
    tag_ids: Optional[List[int]] = None


class TodoOut(BaseModel):
    id: int
    user_id: int
    title: str
    description: Optional[str]
    completed: bool
    priority: str
    due_date_utc: Optional[datetime]
    due_time: Optional[str]
    project_id: Optional[int]
    tag_ids: List[int] = []

    is_recurring: bool
    recurring_pattern: Optional[Dict[str, Any]]
    parent_template_id: Optional[int]
    original_due_date_utc: Optional[datetime]

    completed_at_utc: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


# ---- Recurring templates ---------------------------------------------------------------


class RecurringTemplateOut(TodoOut):
    instance_count: int
    completed_instances: int
    next_due_date: Optional[datetime] = None


class RecurringTemplateUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    priority: Optional[Priority] = None
    due_time: Optional[str] = None
    project_id: Optional[int] = None
    tag_ids: Optional[List[int]] = None
    recurring_pattern: Optional[Dict[str, Any]] = Field(default=None, description=_PATTERN_DESCRIPTION)

    update_future_instances: bool = Field(
        default=False,
        description="Copy edited fields onto future instances (only when the pattern is unchanged).",
    )
    regenerate_instances: bool = Field(
        default=False,
        description="When the pattern changed, replace future instances with ones from the new pattern.",
    )


class PauseRequest(BaseModel):
    paused: bool


class GenerateMoreRequest(BaseModel):
    count: Optional[int] = Field(default=None, ge=1, le=500)


class GenerateMoreResponse(BaseModel):
    created: int
    instances: List[TodoOut] = []


# ---- Analytics -----------------------------------------------------------------------


class ProjectStatsOut(BaseModel):
    project_id: int
    project_name: str
    project_color: str
    total_todos: int
    completed_todos: int
    completion_rate: float


class TrendPointOut(BaseModel):
    date: str
    completions: int


class AnalyticsOut(BaseModel):
    total_todos: int
    completed_todos: int
    active_todos: int
    completion_rate: int
    priority_stats: Dict[str, int]
    project_stats: List[ProjectStatsOut]
    weekly_trend: List[TrendPointOut]
    overdue_todos: int
    today_todos: int
