from __future__ import annotations

from typing import Iterable, Optional

from sqlalchemy.orm import Session

from .models import Project, Tag, User


def ensure_owner(record, current_user: User) -> None:
    if int(record.user_id) != int(current_user.id):
        raise PermissionError("Not allowed")


def resolve_project(db: Session, *, owner: User, project_id: Optional[int]) -> Optional[int]:
    """Return `project_id` if it names a project of `owner`; None passes through."""
    if project_id is None:
        return None
    project = db.query(Project).filter(Project.id == int(project_id)).first()
    if not project or int(project.user_id) != int(owner.id):
        raise ValueError("Project not found")
    return int(project.id)


def resolve_tags(db: Session, *, owner: User, tag_ids: Iterable[int]) -> list[Tag]:
    wanted = sorted({int(t) for t in tag_ids})
    if not wanted:
        return []
    tags = (
        db.query(Tag)
        .filter(Tag.user_id == int(owner.id))
        .filter(Tag.id.in_(wanted))
        .order_by(Tag.id.asc())
        .all()
    )
    if len(tags) != len(wanted):
        found = {int(t.id) for t in tags}
        missing = [t for t in wanted if t not in found]
        raise ValueError(f"Tag not found: {', '.join(str(m) for m in missing)}")
    return tags
