"""Tests for configuration loading."""

from ratify.config import RatifyConfig, load_config
from ratify.executor import StepPolicy
from ratify.persistence import get_store


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
database_url: sqlite+aiosqlite:///ratify.db
runtime:
  lease_seconds: 120
retry:
  max_attempts: 5
steps:
  generate_draft:
    max_attempts: 2
    timeout: 30
ledger:
  trial_enabled: false
  plans:
    one_time: 1
    yearly: 24
notifications:
  reviewers: [alice, bob]
"""
    )
    monkeypatch.setenv("RATIFY_CONFIG", str(config_path))
    monkeypatch.delenv("RATIFY_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.database_url == "sqlite+aiosqlite:///ratify.db"
    assert config.runtime.lease_seconds == 120
    assert config.runtime.lease_wait_seconds == 2.0
    assert config.retry_for("generate_draft").max_attempts == 2
    assert config.retry_for("generate_draft").timeout == 30
    assert config.retry_for("finalize").max_attempts == 5
    assert config.ledger.trial_enabled is False
    assert config.ledger.plans["yearly"] == 24
    assert config.notifications.reviewers == ["alice", "bob"]


def test_missing_file_yields_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("RATIFY_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("RATIFY_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config == RatifyConfig()
    assert config.ledger.plans == {"one_time": 1, "standard_4_month": 4, "premium_8_month": 8}


def test_database_url_env_override(tmp_path, monkeypatch):
    monkeypatch.setenv("RATIFY_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("DATABASE_URL", "postgresql://user:pw@db/ratify")
    assert load_config().database_url == "postgresql://user:pw@db/ratify"

    monkeypatch.setenv("RATIFY_DATABASE_URL", "sqlite:///other.db")
    assert load_config().database_url == "sqlite:///other.db"


def test_get_store_normalizes_sqlite_urls(tmp_path, monkeypatch):
    monkeypatch.delenv("RATIFY_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    store = get_store(f"sqlite:///{tmp_path / 'ratify.db'}")
    assert store.database_url.startswith("sqlite+aiosqlite:///")
    assert store.is_sqlite


def test_step_policy_from_config():
    config = RatifyConfig()
    policy = StepPolicy.from_config(config.retry_for("generate_draft"), config.breaker)
    assert policy.max_attempts == 3
    assert policy.timeout == 60.0
    assert policy.breaker_threshold == 5
    assert policy.breaker_cooldown == 60.0
