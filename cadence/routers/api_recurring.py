from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth import get_current_user_api, get_optional_user_api
from ..db import get_db
from ..recurring import (
    TemplateNotFoundError,
    TemplateSummary,
    delete_recurring_template,
    generate_more_instances,
    get_recurring_template,
    list_recurring_templates,
    list_template_instances,
    set_template_paused,
    update_recurring_template,
)
from ..schemas import (
    GenerateMoreRequest,
    GenerateMoreResponse,
    PauseRequest,
    RecurringTemplateOut,
    RecurringTemplateUpdate,
    TodoOut,
)
from ..utils.time_utils import now_utc


router = APIRouter()


def _template_out(summary: TemplateSummary) -> RecurringTemplateOut:
    base = TodoOut.model_validate(summary.template).model_dump()
    return RecurringTemplateOut(
        **base,
        instance_count=summary.instance_count,
        completed_instances=summary.completed_instances,
        next_due_date=summary.next_due_date,
    )


def _load_template(db: Session, template_id: int, current_user):
    try:
        return get_recurring_template(db, template_id=template_id, current_user=current_user)
    except TemplateNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/", response_model=list[RecurringTemplateOut])
def api_list_templates(
    db: Session = Depends(get_db),
    current_user=Depends(get_optional_user_api),
):
    if current_user is None:
        return []
    return [_template_out(s) for s in list_recurring_templates(db, current_user=current_user)]


@router.get("/{template_id}/instances", response_model=list[TodoOut])
def api_list_instances(
    template_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(get_optional_user_api),
):
    if current_user is None:
        return []
    try:
        return list_template_instances(db, template_id=template_id, current_user=current_user)
    except TemplateNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.put("/{template_id}", response_model=TodoOut)
def api_update_template(
    template_id: int,
    payload: RecurringTemplateUpdate,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    template = _load_template(db, template_id, current_user)
    changes = payload.model_dump(exclude_unset=True, exclude={"update_future_instances", "regenerate_instances"})
    try:
        return update_recurring_template(
            db,
            template=template,
            current_user=current_user,
            now_utc=now_utc(),
            update_future_instances=payload.update_future_instances,
            regenerate_instances=payload.regenerate_instances,
            **changes,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{template_id}", status_code=204)
def api_delete_template(
    template_id: int,
    delete_all_instances: bool = Query(default=False),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    template = _load_template(db, template_id, current_user)
    delete_recurring_template(
        db,
        template=template,
        current_user=current_user,
        delete_all_instances=delete_all_instances,
        now_utc=now_utc(),
    )


@router.post("/{template_id}/pause", response_model=TodoOut)
def api_toggle_pause(
    template_id: int,
    payload: PauseRequest,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    template = _load_template(db, template_id, current_user)
    return set_template_paused(db, template=template, current_user=current_user, paused=payload.paused)


@router.post("/{template_id}/generate", response_model=GenerateMoreResponse)
def api_generate_more(
    template_id: int,
    payload: GenerateMoreRequest,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    template = _load_template(db, template_id, current_user)
    try:
        created = generate_more_instances(
            db,
            template=template,
            current_user=current_user,
            now_utc=now_utc(),
            count=payload.count,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return GenerateMoreResponse(
        created=len(created),
        instances=[TodoOut.model_validate(t) for t in created],
    )
