from __future__ import annotations

import os
import shutil
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import BaseModel, Field


DEFAULT_SETTINGS_PATH = os.environ.get("CADENCE_SETTINGS", "/data/settings.yml")


class AppSettings(BaseModel):
    name: str = "Cadence"
    timezone: str = "UTC"
    host: str = "0.0.0.0"  # nosec B104
    port: int = 8890


class SecuritySettings(BaseModel):
    jwt_secret: str = "CHANGE_ME_JWT_SECRET"
    token_minutes: int = 60 * 24


class DatabaseSettings(BaseModel):
    path: str = "/data/cadence.db"


class RecurrenceSettings(BaseModel):
    # Cap for the initial batch when a rule does not set max_occurrences.
    default_max_instances: int = Field(default=50, ge=1)
    # Cap used when a pattern change regenerates future instances.
    regenerate_max_instances: int = Field(default=50, ge=1)
    # Batch size for "generate more" when the caller gives no count.
    generate_more_default: int = Field(default=10, ge=1)
    # Default generation horizon for rules without an end date.
    horizon_days: int = Field(default=365, ge=1)
    # Background top-up of active templates; 0 disables the job.
    extend_interval_minutes: int = Field(default=360, ge=0)
    extend_min_future: int = Field(default=10, ge=1)


class LoggingSettings(BaseModel):
    level: str = "INFO"
    dir: str = "/data/logs"


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    recurrence: RecurrenceSettings = Field(default_factory=RecurrenceSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def _ensure_settings_file(path: str) -> None:
    p = Path(path)
    if p.exists():
        return

    p.parent.mkdir(parents=True, exist_ok=True)

    # Copy sample settings into place to make first-run behavior predictable.
    sample = Path(__file__).resolve().parent.parent / "settings.sample.yml"
    if sample.exists():
        shutil.copy(sample, p)
    else:
        # Minimal fallback
        p.write_text(
            "app:\n  name: 'Cadence'\n  timezone: 'UTC'\n  host: '0.0.0.0'\n  port: 8890\n"
            "security:\n  jwt_secret: 'CHANGE_ME_JWT_SECRET'\n  token_minutes: 1440\n"
            "database:\n  path: '/data/cadence.db'\n"
            "recurrence:\n  default_max_instances: 50\n  regenerate_max_instances: 50\n"
            "  generate_more_default: 10\n  horizon_days: 365\n  extend_interval_minutes: 360\n  extend_min_future: 10\n"
            "logging:\n  level: 'INFO'\n  dir: '/data/logs'\n"
        )


def _load_yaml(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("settings.yml must contain a YAML mapping at the root")
    return data


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings_path = os.environ.get("CADENCE_SETTINGS", DEFAULT_SETTINGS_PATH)
    _ensure_settings_file(settings_path)
    raw = _load_yaml(settings_path)
    s = Settings.model_validate(raw)

    # Allow env overrides for secrets.
    jwt_secret = os.environ.get("CADENCE_JWT_SECRET")
    if jwt_secret:
        s.security.jwt_secret = jwt_secret

    # Port override is occasionally useful in container orchestration.
    port_env = os.environ.get("PORT") or os.environ.get("CADENCE_PORT")
    if port_env:
        try:
            s.app.port = int(port_env)
        except ValueError:
            pass

    return s
