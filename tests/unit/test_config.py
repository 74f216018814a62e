"""Unit tests for control_plane.config module."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from control_plane.config import Settings, get_settings


def test_defaults_without_environment():
    with patch.dict(os.environ, {}, clear=True):
        settings = Settings(_env_file=None)

    assert settings.database_url is None
    assert settings.job_lease_seconds == 300
    assert settings.job_max_lease_recoveries == 3
    assert settings.query_cache_ttl_seconds == 15
    assert settings.query_queue_ttl_seconds == 12
    assert settings.agent_api_token is None


def test_environment_overrides():
    with patch.dict(
        os.environ,
        {
            "DATABASE_URL": "postgresql://cp:cp@localhost/cp",
            "JOB_LEASE_SECONDS": "90",
            "ADMIN_TOKEN": "ops",
        },
        clear=True,
    ):
        settings = Settings(_env_file=None)

    assert settings.database_url == "postgresql://cp:cp@localhost/cp"
    assert settings.job_lease_seconds == 90
    assert settings.admin_token == "ops"


def test_rejects_zero_lease():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, job_lease_seconds=0)


def test_sample_rate_bounds():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, sentry_traces_sample_rate=1.5)


def test_get_settings_is_cached():
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()
