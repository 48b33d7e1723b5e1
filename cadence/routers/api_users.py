from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import require_admin_api
from ..crud import create_user, list_users
from ..db import get_db
from ..schemas import UserCreate, UserOut


router = APIRouter()


@router.get("/", response_model=list[UserOut])
def api_list_users(
    db: Session = Depends(get_db),
    admin=Depends(require_admin_api),
):
    return list_users(db)


@router.post("/", response_model=UserOut)
def api_create_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    admin=Depends(require_admin_api),
):
    try:
        return create_user(
            db,
            username=payload.username,
            password=payload.password,
            is_admin=payload.is_admin,
            email=payload.email,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
