"""
Runtime configuration read from the environment.
"""

import os
from pathlib import Path
from typing import Optional, Mapping

from pydantic import BaseModel, Field, field_validator

DEFAULT_DB_PATH = "~/.config/story-manager/db/story_manager.sqlite"

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class Settings(BaseModel):
    db_path: Path = Field(default=Path(DEFAULT_DB_PATH))
    log_level: str = "INFO"
    lease_ttl_seconds: int = Field(1800, ge=1, le=86400)
    busy_timeout_ms: int = Field(5000, ge=0)

    @field_validator("db_path")
    @classmethod
    def expand_db_path(cls, v):
        return Path(v).expanduser()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Log level must be one of: {', '.join(LOG_LEVELS)}")
        return level


def load_settings(environ: Optional[Mapping[str, str]] = None, **overrides) -> Settings:
    """
    Build settings from ``STORY_MANAGER_*`` environment variables.

    Keyword overrides that are not None (e.g. CLI options) win over the
    environment.
    """
    env = os.environ if environ is None else environ
    values = {
        "db_path": env.get("STORY_MANAGER_DB_PATH", DEFAULT_DB_PATH),
        "log_level": env.get("STORY_MANAGER_LOG_LEVEL", "INFO"),
        "lease_ttl_seconds": env.get("STORY_MANAGER_LEASE_TTL", 1800),
        "busy_timeout_ms": env.get("STORY_MANAGER_BUSY_TIMEOUT_MS", 5000),
    }
    values.update({key: value for key, value in overrides.items() if value is not None})
    return Settings(**values)
