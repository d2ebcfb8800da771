from __future__ import annotations

import os
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_PLANS

DEFAULT_DATABASE_URL = "sqlite+aiosqlite://"


class RetryConfig(BaseModel):
    """Retry and timeout settings for one step."""

    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.25
    timeout: float = 60.0


class BreakerConfig(BaseModel):
    threshold: int = 5
    cooldown_seconds: float = 60.0


class RuntimeConfig(BaseModel):
    lease_seconds: float = 300.0
    lease_wait_seconds: float = 2.0
    stale_after_seconds: float = 3600.0
    redelivery_limit: int = 5


class LedgerConfig(BaseModel):
    trial_enabled: bool = True
    trial_days: Optional[int] = None
    plans: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_PLANS))


class GenerationConfig(BaseModel):
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    model: str = "gpt-4-turbo"
    timeout: float = 60.0


class NotificationConfig(BaseModel):
    reviewers: List[str] = Field(default_factory=list)
    site_url: str = "http://localhost:3000"


class RatifyConfig(BaseModel):
    """Top-level configuration model."""

    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = "INFO"
    runtime: RuntimeConfig = RuntimeConfig()
    retry: RetryConfig = RetryConfig()
    steps: Dict[str, RetryConfig] = Field(default_factory=dict)
    breaker: BreakerConfig = BreakerConfig()
    ledger: LedgerConfig = LedgerConfig()
    generation: GenerationConfig = GenerationConfig()
    notifications: NotificationConfig = NotificationConfig()

    def retry_for(self, name: str) -> RetryConfig:
        """Per-step override when configured, the default policy otherwise."""
        return self.steps.get(name, self.retry)


def load_config(path: Optional[str] = None) -> RatifyConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to RATIFY_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("RATIFY_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = RatifyConfig(**data)
    else:
        config = RatifyConfig()

    env_db_url = os.getenv("RATIFY_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
