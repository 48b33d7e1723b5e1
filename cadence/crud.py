from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, joinedload

from .auth import hash_password
from .models import Priority, Project, Tag, Task, User
from .ownership import ensure_owner, resolve_project, resolve_tags
from .recurrence import parse_rule, rule_to_json
from .recurring import materialize_initial_instances
from .utils.time_utils import local_day_bounds_utc, normalize_datetime_to_utc_naive, normalize_due_time


logger = logging.getLogger("cadence.crud")


_UNSET: Any = object()


def normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    e = str(email).strip().lower()
    return e or None


def _normalize_priority(value: str) -> str:
    try:
        return Priority(value).value
    except ValueError as e:
        raise ValueError("priority must be one of: low, medium, high") from e


def _require_name(value: Optional[str], what: str) -> str:
    name = (value or "").strip()
    if not name:
        raise ValueError(f"{what} name is required")
    return name


# ---------------------- Users ----------------------


def get_user_by_username(db: Session, username: str) -> Optional[User]:
    return db.query(User).filter(User.username == username).first()


def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def list_users(db: Session) -> list[User]:
    return db.query(User).order_by(User.username.asc()).all()


def create_user(
    db: Session,
    *,
    username: str,
    password: str,
    is_admin: bool = False,
    email: str | None = None,
) -> User:
    uname = (username or "").strip()
    if not uname:
        raise ValueError("Username is required")

    if db.query(User).filter(User.username == uname).first():
        raise ValueError("Username already exists")

    norm_email = normalize_email(email)
    if norm_email and db.query(User).filter(func.lower(User.email) == norm_email).first():
        raise ValueError("Email already exists")

    user = User(
        username=uname,
        email=norm_email,
        hashed_password=hash_password(password),
        is_admin=bool(is_admin),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


# ---------------------- Projects ----------------------


def get_project(db: Session, *, project_id: int) -> Optional[Project]:
    return db.query(Project).filter(Project.id == project_id).first()


def _project_name_taken(db: Session, *, owner: User, name: str, exclude_id: int | None = None) -> bool:
    q = db.query(Project).filter(Project.user_id == int(owner.id)).filter(Project.name == name)
    if exclude_id is not None:
        q = q.filter(Project.id != int(exclude_id))
    return q.first() is not None


def list_projects(db: Session, *, current_user: User) -> list[Project]:
    return (
        db.query(Project)
        .filter(Project.user_id == int(current_user.id))
        .filter(Project.is_archived.is_(False))
        .order_by(Project.created_at.asc(), Project.id.asc())
        .all()
    )


def create_project(
    db: Session,
    *,
    owner: User,
    name: str,
    color: str,
    description: Optional[str] = None,
) -> Project:
    pname = _require_name(name, "Project")
    if _project_name_taken(db, owner=owner, name=pname):
        raise ValueError("Project with this name already exists")

    project = Project(user_id=owner.id, name=pname, color=color, description=description)
    db.add(project)
    db.commit()
    db.refresh(project)
    return project


def update_project(
    db: Session,
    *,
    project: Project,
    current_user: User,
    name: Optional[str] = None,
    color: Optional[str] = None,
    description: Optional[str] = None,
) -> Project:
    ensure_owner(project, current_user)

    if name is not None:
        pname = _require_name(name, "Project")
        if _project_name_taken(db, owner=current_user, name=pname, exclude_id=project.id):
            raise ValueError("Project with this name already exists")
        project.name = pname
    if color is not None:
        project.color = color
    if description is not None:
        project.description = description

    db.add(project)
    db.commit()
    db.refresh(project)
    return project


def archive_project(db: Session, *, project: Project, current_user: User) -> Project:
    """Projects are never hard-deleted; archived ones drop out of listings."""
    ensure_owner(project, current_user)
    project.is_archived = True
    db.add(project)
    db.commit()
    db.refresh(project)
    return project


# ---------------------- Tags ----------------------


def get_tag(db: Session, *, tag_id: int) -> Optional[Tag]:
    return db.query(Tag).filter(Tag.id == tag_id).first()


def _tag_name_taken(db: Session, *, owner: User, name: str, exclude_id: int | None = None) -> bool:
    q = db.query(Tag).filter(Tag.user_id == int(owner.id)).filter(Tag.name == name)
    if exclude_id is not None:
        q = q.filter(Tag.id != int(exclude_id))
    return q.first() is not None


def list_tags(db: Session, *, current_user: User) -> list[Tag]:
    return db.query(Tag).filter(Tag.user_id == int(current_user.id)).order_by(Tag.name.asc()).all()


def create_tag(db: Session, *, owner: User, name: str, color: str) -> Tag:
    tname = _require_name(name, "Tag")
    if _tag_name_taken(db, owner=owner, name=tname):
        raise ValueError("Tag with this name already exists")

    tag = Tag(user_id=owner.id, name=tname, color=color)
    db.add(tag)
    db.commit()
    db.refresh(tag)
    return tag


def update_tag(
    db: Session,
    *,
    tag: Tag,
    current_user: User,
    name: Optional[str] = None,
    color: Optional[str] = None,
) -> Tag:
    ensure_owner(tag, current_user)

    if name is not None:
        tname = _require_name(name, "Tag")
        if _tag_name_taken(db, owner=current_user, name=tname, exclude_id=tag.id):
            raise ValueError("Tag with this name already exists")
        tag.name = tname
    if color is not None:
        tag.color = color

    db.add(tag)
    db.commit()
    db.refresh(tag)
    return tag


def delete_tag(db: Session, *, tag: Tag, current_user: User) -> None:
    ensure_owner(tag, current_user)
    # task_tags rows go with it (ON DELETE CASCADE).
    db.delete(tag)
    db.commit()


# ---------------------- Tasks ----------------------


def create_task(
    db: Session,
    *,
    owner: User,
    title: str,
    now_utc: datetime,
    description: Optional[str] = None,
    priority: str = Priority.medium.value,
    due_date: datetime | None = None,
    due_time: Optional[str] = None,
    project_id: Optional[int] = None,
    tag_ids: Optional[Iterable[int]] = None,
    is_recurring: bool = False,
    recurring_pattern: Optional[dict[str, Any]] = None,
) -> Task:
    """Create a task. A recurring task becomes a template and gets its first batch of instances."""
    if not (title or "").strip():
        raise ValueError("Title is required")

    pattern_json = None
    if is_recurring:
        if recurring_pattern is None:
            raise ValueError("recurring_pattern is required for recurring tasks")
        pattern_json = rule_to_json(parse_rule(recurring_pattern))
    elif recurring_pattern is not None:
        raise ValueError("recurring_pattern requires is_recurring")

    task = Task(
        user_id=owner.id,
        title=title,
        description=description,
        completed=False,
        priority=_normalize_priority(priority),
        due_date_utc=normalize_datetime_to_utc_naive(due_date) if due_date is not None else None,
        due_time=normalize_due_time(due_time),
        project_id=resolve_project(db, owner=owner, project_id=project_id),
        is_recurring=bool(is_recurring),
        recurring_pattern=pattern_json,
    )
    if tag_ids:
        task.tags = resolve_tags(db, owner=owner, tag_ids=tag_ids)

    db.add(task)
    db.commit()
    db.refresh(task)

    if task.is_template:
        materialize_initial_instances(db, template=task, now_utc=now_utc)
        db.refresh(task)
    return task


def get_task(db: Session, *, task_id: int) -> Optional[Task]:
    return (
        db.query(Task)
        .options(joinedload(Task.tags))
        .filter(Task.id == task_id)
        .first()
    )


def list_tasks(
    db: Session,
    *,
    current_user: User,
    project_id: Optional[int] = None,
    tag_id: Optional[int] = None,
    completed: Optional[bool] = None,
    today: bool = False,
    now_utc: Optional[datetime] = None,
) -> list[Task]:
    """List the user's tasks.

    `today` narrows to tasks due today or overdue, plus tasks without a due date.
    """
    q = (
        db.query(Task)
        .options(joinedload(Task.tags))
        .filter(Task.user_id == int(current_user.id))
    )

    if project_id is not None:
        q = q.filter(Task.project_id == int(project_id))
    if completed is not None:
        q = q.filter(Task.completed.is_(bool(completed)))
    if tag_id is not None:
        q = q.filter(Task.tags.any(Tag.id == int(tag_id)))
    if today:
        if now_utc is None:
            raise ValueError("now_utc is required for the today view")
        _, end_of_today = local_day_bounds_utc(now_utc)
        q = q.filter(or_(Task.due_date_utc.is_(None), Task.due_date_utc < end_of_today))

    return q.order_by(Task.due_date_utc.asc(), Task.id.asc()).all()


def list_tasks_in_range(db: Session, *, current_user: User, start: datetime, end: datetime) -> list[Task]:
    """Calendar query: tasks whose due date falls in [start, end]."""
    start_utc = normalize_datetime_to_utc_naive(start)
    end_utc = normalize_datetime_to_utc_naive(end)
    if end_utc < start_utc:
        raise ValueError("end must not be before start")

    return (
        db.query(Task)
        .options(joinedload(Task.tags))
        .filter(Task.user_id == int(current_user.id))
        .filter(Task.due_date_utc >= start_utc)
        .filter(Task.due_date_utc <= end_utc)
        .order_by(Task.due_date_utc.asc(), Task.id.asc())
        .all()
    )


def update_task(
    db: Session,
    *,
    task: Task,
    current_user: User,
    now_utc: datetime,
    title: Optional[str] = None,
    description: Any = _UNSET,
    completed: Optional[bool] = None,
    priority: Optional[str] = None,
    due_date: Any = _UNSET,
    due_time: Any = _UNSET,
    project_id: Any = _UNSET,
    tag_ids: Optional[Iterable[int]] = None,
) -> Task:
    ensure_owner(task, current_user)

    if title is not None:
        if not title.strip():
            raise ValueError("Title is required")
        task.title = title
    if description is not _UNSET:
        task.description = description
    if priority is not None:
        task.priority = _normalize_priority(priority)
    if due_date is not _UNSET:
        task.due_date_utc = normalize_datetime_to_utc_naive(due_date) if due_date is not None else None
    if due_time is not _UNSET:
        task.due_time = normalize_due_time(due_time)
    if project_id is not _UNSET:
        task.project_id = resolve_project(db, owner=current_user, project_id=project_id)
    if tag_ids is not None:
        task.tags = resolve_tags(db, owner=current_user, tag_ids=tag_ids)

    if completed is not None:
        if completed and not task.completed:
            task.completed_at_utc = now_utc
        elif not completed and task.completed:
            task.completed_at_utc = None
        task.completed = bool(completed)

    db.add(task)
    db.commit()
    db.refresh(task)
    return task


def delete_task(db: Session, *, task: Task, current_user: User) -> None:
    """Delete a task. Deleting a template removes all of its instances as well."""
    ensure_owner(task, current_user)

    if task.is_template:
        instances = db.query(Task).filter(Task.parent_template_id == int(task.id)).all()
        for inst in instances:
            db.delete(inst)
        db.commit()
        logger.info("Deleted %s instance(s) of template %s", len(instances), task.id)

    db.delete(task)
    db.commit()
