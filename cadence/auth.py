from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from .config import get_settings
from .db import get_db
from .models import User


# PBKDF2-SHA256 is implemented fully in passlib and needs no binary backend.
pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
    pbkdf2_sha256__rounds=200_000,
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token")
# Same scheme, but a missing header yields None instead of a 401.
oauth2_scheme_optional = OAuth2PasswordBearer(tokenUrl="/api/auth/token", auto_error=False)


logger = logging.getLogger("cadence.auth")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def authenticate_user(db: Session, username_or_email: str, password: str) -> Optional[User]:
    ident = (username_or_email or "").strip()
    if not ident:
        return None

    # Allow login with either username or email.
    user = (
        db.query(User)
        .filter(
            or_(
                User.username == ident,
                func.lower(User.email) == ident.lower(),
            )
        )
        .first()
    )
    if not user:
        return None
    if not verify_password(password, user.hashed_password):
        logger.info("Failed login for %s", ident)
        return None
    return user


def create_access_token(*, subject: str, is_admin: bool, expires_minutes: int | None = None) -> str:
    settings = get_settings()
    minutes = int(expires_minutes if expires_minutes is not None else settings.security.token_minutes)
    expire = datetime.utcnow() + timedelta(minutes=minutes)
    to_encode = {
        "sub": subject,
        "exp": expire,
        "admin": bool(is_admin),
    }
    return jwt.encode(to_encode, settings.security.jwt_secret, algorithm="HS256")


def _decode_token(token: str) -> dict:
    settings = get_settings()
    return jwt.decode(token, settings.security.jwt_secret, algorithms=["HS256"])


def _user_from_token(db: Session, token: str) -> Optional[User]:
    try:
        payload = _decode_token(token)
    except JWTError:
        return None
    username: str | None = payload.get("sub")
    if username is None:
        return None
    return db.query(User).filter(User.username == username).first()


def get_current_user_api(db: Session = Depends(get_db), token: str = Depends(oauth2_scheme)) -> User:
    user = _user_from_token(db, token)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_optional_user_api(
    db: Session = Depends(get_db),
    token: Optional[str] = Depends(oauth2_scheme_optional),
) -> Optional[User]:
    """Current user, or None. Read-only listings answer empty instead of 401."""
    if not token:
        return None
    return _user_from_token(db, token)


def require_admin_api(current_user: User = Depends(get_current_user_api)) -> User:
    if not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return current_user
