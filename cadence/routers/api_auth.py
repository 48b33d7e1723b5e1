from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from ..auth import authenticate_user, create_access_token, get_current_user_api
from ..config import get_settings
from ..db import get_db
from ..models import User
from ..schemas import LoginToken, UserOut


router = APIRouter()

logger = logging.getLogger("cadence.auth")


@router.post("/token", response_model=LoginToken)
def api_login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db),
):
    """Exchange credentials for a bearer token. The `username` field also accepts an email address."""
    user = authenticate_user(db, form_data.username, form_data.password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username/email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    minutes = int(get_settings().security.token_minutes)
    token = create_access_token(subject=user.username, is_admin=user.is_admin, expires_minutes=minutes)
    logger.info("User %s logged in", user.username)
    return LoginToken(access_token=token, expires_in=minutes * 60, user=UserOut.model_validate(user))


@router.get("/me", response_model=UserOut)
def api_me(current_user: User = Depends(get_current_user_api)):
    return current_user
