from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from .models import Priority, Project, Task, User
from .utils.time_utils import local_day_bounds_utc, to_local_naive


TREND_DAYS = 7


def _rate(done: int, total: int) -> float:
    return (done / total) * 100 if total > 0 else 0.0


def get_analytics(db: Session, *, current_user: User, now_utc: datetime) -> dict[str, Any]:
    """Summary numbers for the dashboard. Days are app-timezone calendar days."""
    todos = db.query(Task).filter(Task.user_id == int(current_user.id)).all()
    projects = (
        db.query(Project)
        .filter(Project.user_id == int(current_user.id))
        .order_by(Project.created_at.asc(), Project.id.asc())
        .all()
    )

    total = len(todos)
    completed = sum(1 for t in todos if t.completed)

    priority_stats = {p.value: sum(1 for t in todos if t.priority == p.value) for p in Priority}

    project_stats = []
    for p in projects:
        items = [t for t in todos if t.project_id == p.id]
        done = sum(1 for t in items if t.completed)
        project_stats.append(
            {
                "project_id": p.id,
                "project_name": p.name,
                "project_color": p.color,
                "total_todos": len(items),
                "completed_todos": done,
                "completion_rate": _rate(done, len(items)),
            }
        )

    weekly_trend = []
    for offset in range(-(TREND_DAYS - 1), 1):
        start, end = local_day_bounds_utc(now_utc, days_offset=offset)
        completions = sum(1 for t in todos if t.completed_at_utc and start <= t.completed_at_utc < end)
        weekly_trend.append({"date": to_local_naive(start).date().isoformat(), "completions": completions})

    overdue = sum(1 for t in todos if not t.completed and t.due_date_utc and t.due_date_utc < now_utc)

    today_start, today_end = local_day_bounds_utc(now_utc)
    due_today = sum(1 for t in todos if t.due_date_utc and today_start <= t.due_date_utc < today_end)

    return {
        "total_todos": total,
        "completed_todos": completed,
        "active_todos": total - completed,
        # Half-up rounding to a whole percent.
        "completion_rate": int(_rate(completed, total) + 0.5),
        "priority_stats": priority_stats,
        "project_stats": project_stats,
        "weekly_trend": weekly_trend,
        "overdue_todos": overdue,
        "today_todos": due_today,
    }
