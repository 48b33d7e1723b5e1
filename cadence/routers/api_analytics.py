from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..analytics import get_analytics
from ..auth import get_optional_user_api
from ..db import get_db
from ..schemas import AnalyticsOut
from ..utils.time_utils import now_utc


router = APIRouter()


@router.get("/", response_model=Optional[AnalyticsOut])
def api_analytics(
    db: Session = Depends(get_db),
    current_user=Depends(get_optional_user_api),
):
    if current_user is None:
        return None
    return get_analytics(db, current_user=current_user, now_utc=now_utc())
