from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RunnerConfig(BaseModel):
    """Configuration for the background worker pool."""

    max_concurrency: int = 16
    max_workers: int = 8


class LoggingConfig(BaseModel):
    """Operational logging settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: str = (
        "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s"
    )


class FlowgateConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    runner: RunnerConfig = RunnerConfig()
    logging: LoggingConfig = LoggingConfig()
    # engine tag -> "module:attribute" of a task dispatcher
    dispatchers: Dict[str, str] = Field(default_factory=dict)


def load_config(path: Optional[str] = None) -> FlowgateConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWGATE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWGATE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowgateConfig(**data)
    else:
        config = FlowgateConfig()

    env_db_url = os.getenv("FLOWGATE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
