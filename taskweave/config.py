from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_CONCURRENCY,
    DEFAULT_DEFINITIONS_PATH,
    DEFAULT_MAX_CONCURRENT_WORKFLOWS,
    DEFAULT_TIMEOUT_MS,
)
from .contracts import RetryPolicy


class RedisConfig(BaseModel):
    """Connection settings for the Redis job store."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = "taskweave"


class QueueSettings(BaseModel):
    """Job queue settings."""

    backend: Literal["inmemory", "sqlite", "redis"] = "inmemory"
    concurrency: int = Field(default=DEFAULT_CONCURRENCY, ge=1)
    poll_interval: float = Field(default=0.05, gt=0)
    sqlite_path: str = "taskweave-jobs.db"
    redis: RedisConfig = RedisConfig()


class EngineSettings(BaseModel):
    """Workflow engine limits and defaults."""

    max_concurrent_workflows: int = Field(default=DEFAULT_MAX_CONCURRENT_WORKFLOWS, ge=1)
    default_timeout: int = Field(default=DEFAULT_TIMEOUT_MS, ge=1)
    retry_policy: RetryPolicy = RetryPolicy()


class WatcherSettings(BaseModel):
    poll_interval: float = Field(default=1.0, gt=0)
    debounce: float = Field(default=0.5, ge=0)


class TaskweaveConfig(BaseModel):
    """Top-level configuration model."""

    queue: QueueSettings = QueueSettings()
    engine: EngineSettings = EngineSettings()
    watcher: WatcherSettings = WatcherSettings()
    definitions_path: str = DEFAULT_DEFINITIONS_PATH
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> TaskweaveConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to TASKWEAVE_CONFIG env
            variable or 'taskweave.yaml' in the current directory.
    """

    config_path = path or os.getenv("TASKWEAVE_CONFIG", "taskweave.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = TaskweaveConfig(**data)
    else:
        config = TaskweaveConfig()

    env_backend = os.getenv("TASKWEAVE_QUEUE_BACKEND")
    if env_backend:
        config.queue.backend = env_backend.lower()  # type: ignore[assignment]
    env_db_url = os.getenv("TASKWEAVE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_definitions = os.getenv("TASKWEAVE_DEFINITIONS")
    if env_definitions:
        config.definitions_path = env_definitions
    return config
