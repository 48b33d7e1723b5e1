from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import get_current_user_api, get_optional_user_api
from ..crud import create_tag, delete_tag, get_tag, list_tags, update_tag
from ..db import get_db
from ..schemas import TagCreate, TagOut, TagUpdate


router = APIRouter()


@router.get("/", response_model=list[TagOut])
def api_list_tags(
    db: Session = Depends(get_db),
    current_user=Depends(get_optional_user_api),
):
    if current_user is None:
        return []
    return list_tags(db, current_user=current_user)


@router.post("/", response_model=TagOut)
def api_create_tag(
    payload: TagCreate,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    try:
        return create_tag(db, owner=current_user, name=payload.name, color=payload.color)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.patch("/{tag_id}", response_model=TagOut)
def api_update_tag(
    tag_id: int,
    payload: TagUpdate,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    tag = get_tag(db, tag_id=tag_id)
    if not tag:
        raise HTTPException(status_code=404, detail="Tag not found or unauthorized")

    try:
        return update_tag(db, tag=tag, current_user=current_user, name=payload.name, color=payload.color)
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not allowed")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{tag_id}", status_code=204)
def api_delete_tag(
    tag_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    tag = get_tag(db, tag_id=tag_id)
    if not tag:
        raise HTTPException(status_code=404, detail="Tag not found or unauthorized")

    try:
        delete_tag(db, tag=tag, current_user=current_user)
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not allowed")
