from __future__ import annotations

import logging
import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_SECRETS_ENV_PREFIX,
)


class EngineConfig(BaseModel):
    """Engine behaviour settings."""

    no_match_policy: Literal["fail", "complete"] = "fail"
    default_http_timeout_seconds: float = Field(default=DEFAULT_HTTP_TIMEOUT_SECONDS, gt=0)
    secrets_env_prefix: str = DEFAULT_SECRETS_ENV_PREFIX


class SchedulerConfig(BaseModel):
    """Timer scheduler settings."""

    poll_interval_seconds: float = Field(default=DEFAULT_POLL_INTERVAL_SECONDS, gt=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"


class FlowlineConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    engine: EngineConfig = EngineConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Optional[str] = None) -> FlowlineConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWLINE_CONFIG env
            variable or 'flowline.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWLINE_CONFIG", "flowline.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowlineConfig(**data)
    else:
        config = FlowlineConfig()

    env_db_url = os.getenv("FLOWLINE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_level = os.getenv("FLOWLINE_LOG_LEVEL")
    if env_level:
        config.logging.level = env_level
    return config


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
