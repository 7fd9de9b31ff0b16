from pathlib import Path

import pytest

from story_manager.config import DEFAULT_DB_PATH, load_settings


class TestLoadSettings:

    def test_defaults(self):
        settings = load_settings(environ={})
        assert settings.db_path == Path(DEFAULT_DB_PATH).expanduser()
        assert settings.log_level == "INFO"
        assert settings.lease_ttl_seconds == 1800
        assert settings.busy_timeout_ms == 5000

    def test_environment(self, tmp_path):
        settings = load_settings(environ={
            "STORY_MANAGER_DB_PATH": str(tmp_path / "s.db"),
            "STORY_MANAGER_LOG_LEVEL": "debug",
            "STORY_MANAGER_LEASE_TTL": "60",
            "STORY_MANAGER_BUSY_TIMEOUT_MS": "250",
        })
        assert settings.db_path == tmp_path / "s.db"
        assert settings.log_level == "DEBUG"
        assert settings.lease_ttl_seconds == 60
        assert settings.busy_timeout_ms == 250

    def test_overrides_win_unless_none(self):
        settings = load_settings(
            environ={"STORY_MANAGER_LOG_LEVEL": "ERROR"}, log_level="warning", db_path=None,
        )
        assert settings.log_level == "WARNING"
        assert settings.db_path == Path(DEFAULT_DB_PATH).expanduser()

    @pytest.mark.parametrize("environ", [
        {"STORY_MANAGER_LOG_LEVEL": "chatty"},
        {"STORY_MANAGER_LEASE_TTL": "0"},
        {"STORY_MANAGER_BUSY_TIMEOUT_MS": "soon"},
    ])
    def test_invalid_values(self, environ):
        with pytest.raises(ValueError):
            load_settings(environ=environ)
