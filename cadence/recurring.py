"""Recurring task templates and their materialized instances.

A template holds the recurrence rule; instances are plain tasks pointing back
to it through `parent_template_id`. Every operation here takes "now" as an
explicit `now_utc` argument because the future/past split depends on it.

None of the multi-step operations are transactional as a whole. Each step is
safe to repeat against already-correct state, so a failed call is recovered by
issuing it again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session, joinedload

from .config import get_settings
from .models import Priority, Task, User
from .ownership import resolve_project, resolve_tags
from .recurrence import (
    RecurrenceError,
    RecurrenceRule,
    iter_occurrences,
    next_occurrence,
    parse_rule,
    rule_to_json,
    schedule_key,
)
from .utils.time_utils import from_local_to_utc_naive, normalize_due_time, to_local_naive


logger = logging.getLogger("cadence.recurring")


_UNSET: Any = object()

TEMPLATE_NOT_FOUND = "Recurring task template not found or unauthorized"


class TemplateNotFoundError(LookupError):
    """Raised when a template is missing, owned by someone else, or not a template at all."""

    def __init__(self, message: str = TEMPLATE_NOT_FOUND):
        super().__init__(message)


@dataclass
class TemplateSummary:
    template: Task
    instance_count: int
    completed_instances: int
    next_due_date: Optional[datetime]


def rule_from_task(task: Task) -> Optional[RecurrenceRule]:
    if not task.recurring_pattern:
        return None
    return parse_rule(task.recurring_pattern)


def effective_end_utc(rule: RecurrenceRule, *, now_utc: datetime) -> datetime:
    if rule.end_date is not None:
        return rule.end_date
    return now_utc + timedelta(days=int(get_settings().recurrence.horizon_days))


def is_future_instance(task: Task, *, now_utc: datetime) -> bool:
    # An absent due date counts as the earliest possible date.
    return not task.completed and task.due_date_utc is not None and task.due_date_utc > now_utc


def partition_instances(instances: Iterable[Task], *, now_utc: datetime) -> tuple[list[Task], list[Task]]:
    """Split into (future, past). Past means completed, or due at/before now."""
    future: list[Task] = []
    past: list[Task] = []
    for inst in instances:
        if is_future_instance(inst, now_utc=now_utc):
            future.append(inst)
        else:
            past.append(inst)
    return future, past


def _due_sort_key(task: Task) -> tuple[datetime, int]:
    return (task.due_date_utc or datetime.min, int(task.id))


def _fetch_task(db: Session, task_id: int) -> Optional[Task]:
    # populate_existing: pick up concurrent edits instead of the identity-map copy.
    return (
        db.query(Task)
        .options(joinedload(Task.tags))
        .populate_existing()
        .filter(Task.id == int(task_id))
        .first()
    )


def _list_instances(db: Session, template_id: int) -> list[Task]:
    return (
        db.query(Task)
        .options(joinedload(Task.tags))
        .filter(Task.parent_template_id == int(template_id))
        .all()
    )


# ---------------------- Materialization ----------------------


def materialize_instances(
    db: Session,
    *,
    template_id: int,
    seed_utc: datetime,
    rule: RecurrenceRule,
    user_id: int,
    max_count: int,
    now_utc: datetime,
) -> list[Task]:
    """Persist up to `max_count` instances for the occurrences following `seed_utc`.

    Stops without error at `max_count`, at the rule's end date (or the default
    horizon from `now_utc`), or when the template has been deleted meanwhile.
    Occurrences are computed on the app-timezone calendar and stored as UTC.
    """
    end_utc = effective_end_utc(rule, now_utc=now_utc)
    created: list[Task] = []

    for occurrence_local in iter_occurrences(to_local_naive(seed_utc), rule, limit=max(0, int(max_count))):
        due_utc = from_local_to_utc_naive(occurrence_local)
        if due_utc > end_utc:
            break

        template = _fetch_task(db, template_id)
        if template is None:
            logger.warning(
                "Template %s no longer exists; stopped generation after %s instance(s)",
                template_id,
                len(created),
            )
            break

        instance = Task(
            user_id=int(user_id),
            title=template.title,
            description=template.description,
            priority=template.priority,
            due_time=template.due_time,
            project_id=template.project_id,
            completed=False,
            is_recurring=False,
            parent_template_id=int(template_id),
            original_due_date_utc=due_utc,
            due_date_utc=due_utc,
        )
        instance.tags = list(template.tags or [])
        db.add(instance)
        db.commit()
        created.append(instance)

    if created:
        logger.info("Generated %s instance(s) for template %s", len(created), template_id)
    return created


def materialize_initial_instances(db: Session, *, template: Task, now_utc: datetime) -> list[Task]:
    """First batch for a freshly created template; skipped when paused or undated."""
    rule = rule_from_task(template)
    if rule is None or template.due_date_utc is None or rule.paused:
        return []
    cap = rule.max_occurrences or int(get_settings().recurrence.default_max_instances)
    return materialize_instances(
        db,
        template_id=int(template.id),
        seed_utc=template.due_date_utc,
        rule=rule,
        user_id=int(template.user_id),
        max_count=cap,
        now_utc=now_utc,
    )


# ---------------------- Queries ----------------------


def get_recurring_template(db: Session, *, template_id: int, current_user: User) -> Task:
    task = _fetch_task(db, template_id)
    if not task or int(task.user_id) != int(current_user.id) or not task.is_template:
        raise TemplateNotFoundError()
    return task


def _check_template(template: Task, current_user: User) -> None:
    if int(template.user_id) != int(current_user.id) or not template.is_template:
        raise TemplateNotFoundError()


def list_recurring_templates(db: Session, *, current_user: User) -> list[TemplateSummary]:
    templates = (
        db.query(Task)
        .options(joinedload(Task.tags))
        .filter(Task.user_id == int(current_user.id))
        .filter(Task.is_recurring.is_(True))
        .filter(Task.parent_template_id.is_(None))
        .order_by(Task.created_at.asc(), Task.id.asc())
        .all()
    )
    if not templates:
        return []

    ids = [int(t.id) for t in templates]
    grouped: dict[int, list[Task]] = {i: [] for i in ids}
    for inst in db.query(Task).filter(Task.parent_template_id.in_(ids)).all():
        grouped[int(inst.parent_template_id)].append(inst)

    summaries: list[TemplateSummary] = []
    for t in templates:
        items = grouped[int(t.id)]
        pending_dates = sorted(i.due_date_utc for i in items if not i.completed and i.due_date_utc)
        summaries.append(
            TemplateSummary(
                template=t,
                instance_count=len(items),
                completed_instances=sum(1 for i in items if i.completed),
                next_due_date=pending_dates[0] if pending_dates else None,
            )
        )
    return summaries


def list_template_instances(db: Session, *, template_id: int, current_user: User) -> list[Task]:
    get_recurring_template(db, template_id=template_id, current_user=current_user)
    return sorted(_list_instances(db, template_id), key=_due_sort_key)


# ---------------------- Reconciliation ----------------------


def update_recurring_template(
    db: Session,
    *,
    template: Task,
    current_user: User,
    now_utc: datetime,
    title: Optional[str] = None,
    description: Any = _UNSET,
    priority: Optional[str] = None,
    due_time: Any = _UNSET,
    project_id: Any = _UNSET,
    tag_ids: Optional[Iterable[int]] = None,
    recurring_pattern: Any = None,
    update_future_instances: bool = False,
    regenerate_instances: bool = False,
) -> Task:
    """Apply a template edit and reconcile already-materialized instances.

    - pattern changed and `regenerate_instances`: drop future instances and
      regenerate from the latest past instance (or the template due date).
    - pattern unchanged and `update_future_instances`: copy the edited fields
      onto future instances; due dates and completion stay as they are.
    - otherwise only the template changes.

    Past and completed instances are never modified.
    """
    _check_template(template, current_user)

    # Validate everything before touching any record.
    stored_rule = rule_from_task(template)
    new_rule: Optional[RecurrenceRule] = None
    pattern_changed = False
    if recurring_pattern is not None:
        new_rule = parse_rule(recurring_pattern)
        if stored_rule is not None:
            new_rule = new_rule.model_copy(update={"paused": stored_rule.paused})
        pattern_changed = stored_rule is None or schedule_key(stored_rule) != schedule_key(new_rule)

    fields: dict[str, Any] = {}
    if title is not None:
        fields["title"] = title
    if description is not _UNSET:
        fields["description"] = description
    if priority is not None:
        fields["priority"] = Priority(priority).value
    if due_time is not _UNSET:
        fields["due_time"] = normalize_due_time(due_time)
    if project_id is not _UNSET:
        fields["project_id"] = resolve_project(db, owner=current_user, project_id=project_id)
    tags = resolve_tags(db, owner=current_user, tag_ids=tag_ids) if tag_ids is not None else None

    for key, value in fields.items():
        setattr(template, key, value)
    if tags is not None:
        template.tags = tags
    if new_rule is not None:
        template.recurring_pattern = rule_to_json(new_rule)
    db.add(template)
    db.commit()

    future, past = partition_instances(_list_instances(db, int(template.id)), now_utc=now_utc)

    if pattern_changed and regenerate_instances:
        for inst in future:
            db.delete(inst)
        db.commit()
        logger.info("Template %s pattern changed; removed %s future instance(s)", template.id, len(future))

        if template.due_date_utc is not None:
            seed = max(
                (i.due_date_utc or template.due_date_utc for i in past),
                default=template.due_date_utc,
            )
            materialize_instances(
                db,
                template_id=int(template.id),
                seed_utc=seed,
                rule=new_rule,
                user_id=int(current_user.id),
                max_count=int(get_settings().recurrence.regenerate_max_instances),
                now_utc=now_utc,
            )
    elif update_future_instances and not pattern_changed:
        if fields or tags is not None:
            for inst in future:
                for key, value in fields.items():
                    setattr(inst, key, value)
                if tags is not None:
                    inst.tags = list(tags)
                db.add(inst)
            db.commit()
            logger.info("Template %s: patched %s future instance(s)", template.id, len(future))

    db.refresh(template)
    return template


# ---------------------- Delete / pause / extend ----------------------


def delete_recurring_template(
    db: Session,
    *,
    template: Task,
    current_user: User,
    delete_all_instances: bool,
    now_utc: datetime,
) -> None:
    """Delete a template.

    With `delete_all_instances` every instance goes too. Otherwise future
    instances are deleted and the rest become standalone tasks.
    """
    _check_template(template, current_user)
    template_id = int(template.id)

    instances = _list_instances(db, template_id)
    if delete_all_instances:
        for inst in instances:
            db.delete(inst)
        detached = 0
    else:
        future, past = partition_instances(instances, now_utc=now_utc)
        for inst in future:
            db.delete(inst)
        for inst in past:
            inst.parent_template_id = None
            inst.is_recurring = False
            db.add(inst)
        detached = len(past)
    db.commit()

    db.delete(template)
    db.commit()
    logger.info(
        "Deleted template %s (%s instance(s) seen, %s detached)",
        template_id,
        len(instances),
        detached,
    )


def set_template_paused(db: Session, *, template: Task, current_user: User, paused: bool) -> Task:
    """Flip the rule's `paused` flag. Instances are left alone."""
    _check_template(template, current_user)

    rule = rule_from_task(template)
    if rule is not None:
        template.recurring_pattern = rule_to_json(rule.model_copy(update={"paused": bool(paused)}))
        db.add(template)
        db.commit()
        db.refresh(template)
    return template


def _generate_more(db: Session, *, template: Task, count: int, now_utc: datetime) -> list[Task]:
    rule = rule_from_task(template)
    if rule is None or template.due_date_utc is None:
        raise RecurrenceError("Invalid recurring pattern")
    if int(count) < 1:
        raise ValueError("count must be at least 1")

    dated = [i.due_date_utc for i in _list_instances(db, int(template.id)) if i.due_date_utc is not None]
    seed = max(dated) if dated else template.due_date_utc

    return materialize_instances(
        db,
        template_id=int(template.id),
        seed_utc=seed,
        rule=rule,
        user_id=int(template.user_id),
        max_count=int(count),
        now_utc=now_utc,
    )


def generate_more_instances(
    db: Session,
    *,
    template: Task,
    current_user: User,
    now_utc: datetime,
    count: Optional[int] = None,
) -> list[Task]:
    """Continue the series after its latest instance. Runs regardless of pause state."""
    _check_template(template, current_user)
    if count is None:
        count = int(get_settings().recurrence.generate_more_default)
    return _generate_more(db, template=template, count=count, now_utc=now_utc)


def _seed_after_now(seed_utc: datetime, rule: RecurrenceRule, *, now_utc: datetime) -> datetime:
    """Move `seed_utc` along the series to the last occurrence at or before `now_utc`.

    Materializing from the returned seed yields only occurrences after `now_utc`.
    """
    current = to_local_naive(seed_utc)
    while True:
        following = next_occurrence(current, rule)
        if from_local_to_utc_naive(following) > now_utc:
            return from_local_to_utc_naive(current)
        current = following


def extend_active_templates(db: Session, *, now_utc: datetime, min_future: int) -> int:
    """Top up every non-paused template to at least `min_future` future instances.

    Occurrences that are already due are skipped, never created as overdue
    tasks. A rule's `max_occurrences` caps the total instance count of the
    series. Returns the number of instances created.
    """
    templates = (
        db.query(Task)
        .filter(Task.is_recurring.is_(True))
        .filter(Task.parent_template_id.is_(None))
        .filter(Task.due_date_utc.is_not(None))
        .order_by(Task.id.asc())
        .all()
    )

    total = 0
    for t in templates:
        try:
            rule = rule_from_task(t)
        except RecurrenceError:
            logger.warning("Template %s has an unreadable recurrence rule; skipped", t.id)
            continue
        if rule is None or rule.paused:
            continue

        instances = _list_instances(db, int(t.id))
        future, _ = partition_instances(instances, now_utc=now_utc)
        missing = int(min_future) - len(future)
        if rule.max_occurrences is not None:
            missing = min(missing, int(rule.max_occurrences) - len(instances))
        if missing <= 0:
            continue

        dated = [i.due_date_utc for i in instances if i.due_date_utc is not None]
        seed = _seed_after_now(max(dated) if dated else t.due_date_utc, rule, now_utc=now_utc)
        total += len(
            materialize_instances(
                db,
                template_id=int(t.id),
                seed_utc=seed,
                rule=rule,
                user_id=int(t.user_id),
                max_count=missing,
                now_utc=now_utc,
            )
        )
    return total
