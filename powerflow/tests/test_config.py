"""
Unit tests for hub configuration (HubSettings).

Tests verify:
- Defaults allow the hub to start without any environment.
- Values load from environment variables.
- Ports, cache, retention, cleanup and retry knobs are validated.
- LOG_LEVEL is normalised to upper case and must be a known level.
- CORS_ORIGINS is split into a list.

CHANGELOG:
- 2026-10-18: Store busy timeout setting
- 2026-10-09: Cover cache and retry knobs (STORY-108)
- 2026-10-06: Initial creation (STORY-101)

TODO:
- None
"""

import pytest
from powerflow.src.config import HubSettings
from pydantic import ValidationError


class TestHubSettingsDefaults:
    """Every setting has a usable default."""

    def test_defaults(self) -> None:
        settings = HubSettings()

        assert settings.mqtt_enabled is True
        assert settings.mqtt_host == "localhost"
        assert settings.mqtt_port == 1883
        assert settings.mqtt_topic == "sensor/data"
        assert settings.db_path == "./data/sqlite/power_flow.db"
        assert settings.blueprint_path == "./blueprints"
        assert settings.devices_yaml_path == "./devices/device.yaml"
        assert settings.blueprint_cache_size == 64
        assert settings.blueprint_cache_ttl_s == 1800.0
        assert settings.retention_days == 30
        assert settings.store_busy_retries == 3
        assert settings.store_busy_delay_s == 1.0
        assert settings.store_busy_timeout_ms == 200
        assert settings.log_level == "INFO"
        assert settings.api_port == 5001


class TestHubSettingsLoadsFromEnv:
    """Config loads values from environment variables."""

    def test_loads_env_vars(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MQTT_ENABLED", "false")
        monkeypatch.setenv("MQTT_HOST", "broker.local")
        monkeypatch.setenv("MQTT_PORT", "8883")
        monkeypatch.setenv("MQTT_TOPIC", "site/1/sensor")
        monkeypatch.setenv("DB_PATH", "/data/hub.db")
        monkeypatch.setenv("RETENTION_DAYS", "7")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = HubSettings()

        assert settings.mqtt_enabled is False
        assert settings.mqtt_host == "broker.local"
        assert settings.mqtt_port == 8883
        assert settings.mqtt_topic == "site/1/sensor"
        assert settings.db_path == "/data/hub.db"
        assert settings.retention_days == 7
        assert settings.log_level == "DEBUG"

    def test_loads_dotenv_file(self, tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
        """A .env file in the working directory is read."""
        (tmp_path / ".env").write_text("MQTT_HOST=from-dotenv\n", encoding="utf-8")

        assert HubSettings().mqtt_host == "from-dotenv"


class TestHubSettingsValidation:
    """Out-of-range values are rejected."""

    @pytest.mark.parametrize("port", ["0", "65536", "-1"])
    def test_invalid_mqtt_port_raises(self, monkeypatch: pytest.MonkeyPatch, port: str) -> None:
        monkeypatch.setenv("MQTT_PORT", port)

        with pytest.raises(ValidationError) as exc_info:
            HubSettings()
        assert "mqtt_port" in str(exc_info.value)

    def test_invalid_api_port_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("API_PORT", "70000")

        with pytest.raises(ValidationError):
            HubSettings()

    def test_zero_cache_size_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BLUEPRINT_CACHE_SIZE", "0")

        with pytest.raises(ValidationError) as exc_info:
            HubSettings()
        assert "BLUEPRINT_CACHE_SIZE" in str(exc_info.value)

    def test_zero_cache_ttl_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BLUEPRINT_CACHE_TTL_S", "0")

        with pytest.raises(ValidationError):
            HubSettings()

    def test_zero_retention_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RETENTION_DAYS", "0")

        with pytest.raises(ValidationError):
            HubSettings()

    def test_short_cleanup_interval_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CLEANUP_INTERVAL_S", "30")

        with pytest.raises(ValidationError):
            HubSettings()

    def test_negative_retries_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("STORE_BUSY_RETRIES", "-1")

        with pytest.raises(ValidationError):
            HubSettings()

    def test_negative_busy_timeout_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("STORE_BUSY_TIMEOUT_MS", "-5")

        with pytest.raises(ValidationError):
            HubSettings()

    def test_zero_retries_allowed(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("STORE_BUSY_RETRIES", "0")
        monkeypatch.setenv("STORE_BUSY_DELAY_S", "0")

        settings = HubSettings()
        assert settings.store_busy_retries == 0
        assert settings.store_busy_delay_s == 0

    def test_unknown_log_level_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "chatty")

        with pytest.raises(ValidationError) as exc_info:
            HubSettings()
        assert "LOG_LEVEL" in str(exc_info.value)


class TestCorsOrigins:
    """CORS_ORIGINS is a comma-separated list."""

    def test_splits_and_strips(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example,,")

        assert HubSettings().cors_origin_list == ["https://a.example", "https://b.example"]

    def test_default_is_wildcard(self) -> None:
        assert HubSettings().cors_origin_list == ["*"]
