from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel

from .constants import DEFAULT_AUTO_COMPLETE_DELAY, DEFAULT_TIMEZONE


class EngineConfig(BaseModel):
    """Execution coordinator settings."""

    auto_complete_delay: float = DEFAULT_AUTO_COMPLETE_DELAY
    escalation_fallback_to_owner: bool = False


class SchedulerConfig(BaseModel):
    """Cron scheduler settings."""

    enabled: bool = True
    default_timezone: str = DEFAULT_TIMEZONE


class OrgflowConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = EngineConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> OrgflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to ORGFLOW_CONFIG env
            variable or 'orgflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("ORGFLOW_CONFIG", "orgflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = OrgflowConfig(**data)
    else:
        config = OrgflowConfig()

    env_db_url = os.getenv("ORGFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
