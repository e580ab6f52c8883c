from datetime import time

import pytest
from pydantic import ValidationError

from studio_scheduler.settings import Settings


@pytest.mark.parametrize(
    "env_value, expected",
    [
        (None, []),
        ("https://example.com", ["https://example.com"]),
        ("https://a.com, https://b.com", ["https://a.com", "https://b.com"]),
        ('["https://a.com","https://b.com"]', ["https://a.com", "https://b.com"]),
    ],
)
def test_cors_origins_parsing(monkeypatch, env_value, expected):
    if env_value is None:
        monkeypatch.delenv("CORS_ORIGINS", raising=False)
    else:
        monkeypatch.setenv("CORS_ORIGINS", env_value)

    settings = Settings(_env_file=None)

    assert settings.cors_origins == expected


def test_scheduling_defaults():
    settings = Settings(app_env="dev", _env_file=None)

    assert settings.reschedule_token_ttl_hours == 72
    assert settings.slot_step_minutes == 30
    assert settings.series_horizon_days is None
    assert settings.working_hours == [(time(10, 0), time(13, 0)), (time(15, 0), time(18, 0))]
    assert settings.signal_required_categories == ["PHYSIOTHERAPY", "PERSONAL_TRAINING"]


def test_working_hours_from_env(monkeypatch):
    monkeypatch.setenv("WORKING_HOURS", "14:00-20:00, 08:00-12:30")
    monkeypatch.setenv("SIGNAL_REQUIRED_CATEGORIES", "physiotherapy")

    settings = Settings(app_env="dev", _env_file=None)

    assert settings.working_hours == [(time(8, 0), time(12, 30)), (time(14, 0), time(20, 0))]
    assert settings.signal_required_categories == ["PHYSIOTHERAPY"]


@pytest.mark.parametrize("raw", ["10:00", "13:00-10:00", "", "ten-eleven"])
def test_invalid_working_hours_rejected(raw):
    with pytest.raises(ValidationError):
        Settings(app_env="dev", working_hours=raw, _env_file=None)


@pytest.mark.parametrize(
    "overrides",
    [
        {"slot_step_minutes": 0},
        {"reschedule_token_ttl_hours": -1},
        {"outbox_max_attempts": 0},
        {"series_horizon_days": 0},
    ],
)
def test_non_positive_values_rejected(overrides):
    with pytest.raises(ValidationError):
        Settings(app_env="dev", _env_file=None, **overrides)


def test_prod_requires_metrics_token(monkeypatch):
    monkeypatch.delenv("METRICS_TOKEN", raising=False)

    with pytest.raises(ValidationError, match="METRICS_TOKEN"):
        Settings(app_env="prod", metrics_enabled=True, _env_file=None)

    settings = Settings(app_env="prod", metrics_enabled=True, metrics_token="scrape", _env_file=None)
    assert settings.metrics_token == "scrape"


def test_prod_requires_webhook_url():
    with pytest.raises(ValidationError, match="NOTIFICATION_WEBHOOK_URL"):
        Settings(app_env="prod", notification_mode="webhook", _env_file=None)


def test_prod_rejects_testing_mode():
    with pytest.raises(ValidationError):
        Settings(app_env="prod", testing=True, _env_file=None)


def test_defaults_to_prod_when_env_missing(monkeypatch):
    monkeypatch.delenv("APP_ENV", raising=False)

    settings = Settings(_env_file=None)

    assert settings.app_env == "prod"
