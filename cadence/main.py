from __future__ import annotations

import logging
import secrets

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI

from .config import get_settings
from .crud import create_user
from .db import Base, SessionLocal, engine
from .logging_setup import setup_logging
from .migrations import db_needs_upgrade, ensure_db_schema
from .models import User
from .recurring import extend_active_templates
from .routers import api_analytics, api_auth, api_projects, api_recurring, api_tags, api_todos, api_users
from .utils.time_utils import now_utc
from .version import APP_VERSION


settings = get_settings()

setup_logging(level=settings.logging.level, log_dir=settings.logging.dir)
logger = logging.getLogger("cadence")


app = FastAPI(title=settings.app.name, version=APP_VERSION)

app.include_router(api_auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(api_users.router, prefix="/api/users", tags=["users"])
app.include_router(api_todos.router, prefix="/api/todos", tags=["todos"])
app.include_router(api_projects.router, prefix="/api/projects", tags=["projects"])
app.include_router(api_tags.router, prefix="/api/tags", tags=["tags"])
app.include_router(api_recurring.router, prefix="/api/recurring", tags=["recurring"])
app.include_router(api_analytics.router, prefix="/api/analytics", tags=["analytics"])


scheduler: BackgroundScheduler | None = None


def ensure_first_admin() -> str | None:
    """Create the `admin` account on an empty database. Returns the generated password."""
    db = SessionLocal()
    try:
        if db.query(User).count() > 0:
            return None
        admin_password = secrets.token_urlsafe(12)
        create_user(db, username="admin", password=admin_password, is_admin=True)
    finally:
        db.close()

    logger.warning("============================================================")
    logger.warning("Cadence initial admin account created")
    logger.warning("Username: admin")
    logger.warning("Password: %s", admin_password)
    logger.warning("Please log in and change this password.")
    logger.warning("============================================================")
    return admin_password


def extend_recurring_job() -> int:
    """Top up active templates so each keeps `extend_min_future` pending instances."""
    db = SessionLocal()
    try:
        created = extend_active_templates(
            db,
            now_utc=now_utc(),
            min_future=int(get_settings().recurrence.extend_min_future),
        )
        if created:
            logger.info("Extended recurring templates with %s instance(s)", created)
        return created
    except Exception:
        logger.exception("Error while extending recurring templates")
        return 0
    finally:
        db.close()


@app.on_event("startup")
def on_startup() -> None:
    global scheduler

    Base.metadata.create_all(bind=engine)

    report = ensure_db_schema(engine)
    app.state.db_migration_report = report
    if report.applied_steps:
        logger.warning("Database schema upgraded to %s (%s)", report.current_db_version, ", ".join(report.applied_steps))
    elif db_needs_upgrade(report.previous_db_version):
        logger.info("Database stamped with version %s", report.current_db_version)

    ensure_first_admin()

    interval = int(settings.recurrence.extend_interval_minutes)
    if interval <= 0:
        logger.info("Recurring template extension job disabled")
        return

    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        extend_recurring_job,
        "interval",
        minutes=interval,
        id="extend_recurring",
        replace_existing=True,
    )
    app.state.scheduler = scheduler
    scheduler.start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None


@app.get("/healthz", include_in_schema=False)
def healthz():
    return {"status": "ok", "version": APP_VERSION}
