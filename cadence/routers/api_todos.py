from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth import get_current_user_api, get_optional_user_api
from ..crud import create_task, delete_task, get_task, list_tasks, list_tasks_in_range, update_task
from ..db import get_db
from ..schemas import TodoCreate, TodoOut, TodoUpdate
from ..utils.time_utils import now_utc


router = APIRouter()


@router.get("/", response_model=list[TodoOut])
def api_list_todos(
    project_id: int | None = Query(default=None),
    tag_id: int | None = Query(default=None),
    completed: bool | None = Query(default=None),
    today: bool = Query(default=False, description="Only tasks due today or overdue, plus undated tasks"),
    db: Session = Depends(get_db),
    current_user=Depends(get_optional_user_api),
):
    if current_user is None:
        return []
    return list_tasks(
        db,
        current_user=current_user,
        project_id=project_id,
        tag_id=tag_id,
        completed=completed,
        today=today,
        now_utc=now_utc(),
    )


@router.get("/range", response_model=list[TodoOut])
def api_list_todos_in_range(
    start: datetime = Query(...),
    end: datetime = Query(...),
    db: Session = Depends(get_db),
    current_user=Depends(get_optional_user_api),
):
    if current_user is None:
        return []
    try:
        return list_tasks_in_range(db, current_user=current_user, start=start, end=end)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/", response_model=TodoOut)
def api_create_todo(
    payload: TodoCreate,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    try:
        return create_task(
            db,
            owner=current_user,
            now_utc=now_utc(),
            title=payload.title,
            description=payload.description,
            priority=payload.priority.value,
            due_date=payload.due_date,
            due_time=payload.due_time,
            project_id=payload.project_id,
            tag_ids=payload.tag_ids,
            is_recurring=payload.is_recurring,
            recurring_pattern=payload.recurring_pattern,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{task_id}", response_model=TodoOut)
def api_get_todo(
    task_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    task = get_task(db, task_id=task_id)
    if not task or task.user_id != current_user.id:
        raise HTTPException(status_code=404, detail="Todo not found or unauthorized")
    return task


@router.put("/{task_id}", response_model=TodoOut)
def api_update_todo(
    task_id: int,
    payload: TodoUpdate,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    task = get_task(db, task_id=task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Todo not found or unauthorized")

    try:
        return update_task(
            db,
            task=task,
            current_user=current_user,
            now_utc=now_utc(),
            **payload.model_dump(exclude_unset=True),
        )
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not allowed")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{task_id}", status_code=204)
def api_delete_todo(
    task_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    task = get_task(db, task_id=task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Todo not found or unauthorized")

    try:
        delete_task(db, task=task, current_user=current_user)
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not allowed")
