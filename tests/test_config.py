"""Tests for chatrelay settings."""

import pytest
from chatrelay.config import Settings, get_settings, load_settings, reset_settings
from chatrelay.errors import ConfigError


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "chatrelay.yaml"
    path.write_text(
        "auth_base_url: https://auth.example.com/\n"
        "auth_timeout: 5\n"
        "presence_ttl: 120\n"
        "cors_origins:\n"
        "  - https://app.example.com\n"
        "unknown_key: ignored\n"
    )
    return path


class TestSettings:
    def test_defaults(self):
        settings = Settings()

        assert settings.admin_verify_path == "/admin/verify-token"
        assert settings.user_verify_path == "/api/v2/verify-token"
        assert settings.auth_timeout == 3.0
        assert settings.cors_origins == []

    def test_base_url_trailing_slash_stripped(self):
        assert Settings(auth_base_url="https://auth.example.com/").auth_base_url == (
            "https://auth.example.com"
        )

    @pytest.mark.parametrize(
        "overrides",
        [
            {"auth_timeout": 0},
            {"token_cache_ttl": -1},
            {"presence_ttl": 0},
            {"presence_sweep_interval": -5},
        ],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ConfigError):
            Settings(**overrides)

    def test_from_dict_ignores_unknown_keys(self):
        settings = Settings.from_dict({"log_level": "debug", "colour": "blue"})

        assert settings.log_level == "DEBUG"


class TestLoadSettings:
    def test_yaml_file(self, config_file):
        settings = load_settings(config_file)

        assert settings.auth_base_url == "https://auth.example.com"
        assert settings.auth_timeout == 5
        assert settings.presence_ttl == 120
        assert settings.cors_origins == ["https://app.example.com"]

    def test_env_overrides_yaml(self, config_file, monkeypatch):
        monkeypatch.setenv("CHATRELAY_AUTH_TIMEOUT", "1.5")
        monkeypatch.setenv("CHATRELAY_CORS_ORIGINS", "https://a.example.com, https://b.example.com")

        settings = load_settings(config_file)

        assert settings.auth_timeout == 1.5
        assert settings.cors_origins == ["https://a.example.com", "https://b.example.com"]

    def test_env_aliases(self, monkeypatch):
        monkeypatch.setenv("CHATRELAY_AUTH_URL", "https://auth.example.com")
        monkeypatch.setenv("CHATRELAY_DB", "/tmp/chat.db")

        settings = load_settings()

        assert settings.auth_base_url == "https://auth.example.com"
        assert settings.db_path == "/tmp/chat.db"

    def test_config_path_from_env(self, config_file, monkeypatch):
        monkeypatch.setenv("CHATRELAY_CONFIG", str(config_file))

        assert load_settings().presence_ttl == 120

    def test_bad_number(self, monkeypatch):
        monkeypatch.setenv("CHATRELAY_AUTH_TIMEOUT", "soon")

        with pytest.raises(ConfigError, match="CHATRELAY_AUTH_TIMEOUT"):
            load_settings()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_settings(tmp_path / "nope.yaml")

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- one\n- two\n")

        with pytest.raises(ConfigError, match="mapping"):
            load_settings(path)


class TestGlobalSettings:
    def test_cached_until_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("CHATRELAY_LOG_LEVEL", "warning")
        reset_settings()

        assert get_settings().log_level == "WARNING"
