from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import get_current_user_api, get_optional_user_api
from ..crud import archive_project, create_project, get_project, list_projects, update_project
from ..db import get_db
from ..schemas import ProjectCreate, ProjectOut, ProjectUpdate


router = APIRouter()


@router.get("/", response_model=list[ProjectOut])
def api_list_projects(
    db: Session = Depends(get_db),
    current_user=Depends(get_optional_user_api),
):
    if current_user is None:
        return []
    return list_projects(db, current_user=current_user)


@router.post("/", response_model=ProjectOut)
def api_create_project(
    payload: ProjectCreate,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    try:
        return create_project(
            db,
            owner=current_user,
            name=payload.name,
            color=payload.color,
            description=payload.description,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.patch("/{project_id}", response_model=ProjectOut)
def api_update_project(
    project_id: int,
    payload: ProjectUpdate,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    project = get_project(db, project_id=project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found or unauthorized")

    try:
        return update_project(
            db,
            project=project,
            current_user=current_user,
            name=payload.name,
            color=payload.color,
            description=payload.description,
        )
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not allowed")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{project_id}", response_model=ProjectOut)
def api_archive_project(
    project_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    project = get_project(db, project_id=project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found or unauthorized")

    try:
        return archive_project(db, project=project, current_user=current_user)
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not allowed")
