"""
Hub configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
every field has a default so the hub can start on a bare development box.

CHANGELOG:
- 2026-10-18: Add store_busy_timeout_ms
- 2026-10-09: Add blueprint cache size/TTL and store retry knobs (STORY-108)
- 2026-10-06: Initial creation (STORY-101)

TODO:
- None
"""

import logging

from pydantic import field_validator
from pydantic_settings import BaseSettings


class HubSettings(BaseSettings):
    """Runtime configuration for the power-flow hub.

    Attributes:
        mqtt_enabled: Connect to the MQTT bus on startup. Tests and
            offline tooling turn this off.
        mqtt_host: MQTT broker hostname.
        mqtt_port: MQTT broker TCP port (default 1883).
        mqtt_topic: Topic carrying sensor batches.
        mqtt_username: Optional broker username.
        mqtt_password: Optional broker password (never logged).
        mqtt_client_id: Client id prefix presented to the broker.
        db_path: SQLite database file holding device tables and the
            aggregate history.
        blueprint_path: Directory of blueprint YAML documents.
        devices_yaml_path: Devices YAML reconciled against the table
            registry at startup.
        blueprint_cache_size: Max cached blueprint schemas.
        blueprint_cache_ttl_s: Seconds before a cached schema is re-read.
        retention_days: Aggregate-history rows older than this are removed.
        cleanup_interval_s: Seconds between retention cleanup runs.
        store_busy_retries: Retries when SQLite reports busy/locked.
        store_busy_delay_s: Fixed delay between busy retries.
        store_busy_timeout_ms: SQLite driver wait on a locked database per
            attempt, before the retry loop takes over.
        log_level: Root logging level name.
        api_host: Bind address for the HTTP/WebSocket server.
        api_port: Bind port for the HTTP/WebSocket server.
        cors_origins: Comma-separated list of allowed CORS origins.
    """

    mqtt_enabled: bool = True
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_topic: str = "sensor/data"
    mqtt_username: str = ""
    mqtt_password: str = ""
    mqtt_client_id: str = "powerflow-hub"
    db_path: str = "./data/sqlite/power_flow.db"
    blueprint_path: str = "./blueprints"
    devices_yaml_path: str = "./devices/device.yaml"
    blueprint_cache_size: int = 64
    blueprint_cache_ttl_s: float = 1800.0
    retention_days: int = 30
    cleanup_interval_s: float = 3600.0
    store_busy_retries: int = 3
    store_busy_delay_s: float = 1.0
    store_busy_timeout_ms: int = 200
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 5001
    cors_origins: str = "*"

    @field_validator("mqtt_port", "api_port")
    @classmethod
    def port_must_be_valid(cls, v: int) -> int:
        """Validate TCP ports are in the valid range."""
        if v < 1 or v > 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("blueprint_cache_size")
    @classmethod
    def cache_size_must_be_positive(cls, v: int) -> int:
        """A zero-sized cache would re-scan the blueprint directory every call."""
        if v < 1:
            raise ValueError("BLUEPRINT_CACHE_SIZE must be >= 1")
        return v

    @field_validator("blueprint_cache_ttl_s")
    @classmethod
    def cache_ttl_must_be_positive(cls, v: float) -> float:
        """Validate blueprint cache TTL is strictly positive."""
        if v <= 0:
            raise ValueError("BLUEPRINT_CACHE_TTL_S must be > 0")
        return v

    @field_validator("retention_days")
    @classmethod
    def retention_must_be_positive(cls, v: int) -> int:
        """Validate retention keeps at least one day of history."""
        if v < 1:
            raise ValueError("RETENTION_DAYS must be >= 1")
        return v

    @field_validator("cleanup_interval_s")
    @classmethod
    def cleanup_interval_must_be_reasonable(cls, v: float) -> float:
        """Retention cleanup runs at most once a minute."""
        if v < 60:
            raise ValueError("CLEANUP_INTERVAL_S must be >= 60")
        return v

    @field_validator("store_busy_retries", "store_busy_timeout_ms")
    @classmethod
    def retries_must_be_non_negative(cls, v: int) -> int:
        """Validate busy retry count and driver timeout are non-negative."""
        if v < 0:
            raise ValueError("busy retries and busy timeout must be >= 0")
        return v

    @field_validator("store_busy_delay_s")
    @classmethod
    def delay_must_be_non_negative(cls, v: float) -> float:
        """Validate busy retry delay is non-negative."""
        if v < 0:
            raise ValueError("STORE_BUSY_DELAY_S must be >= 0")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        """Normalise and validate the logging level name."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"LOG_LEVEL '{v}' is not a valid logging level")
        return level

    @property
    def cors_origin_list(self) -> list[str]:
        """CORS origins split into a list, empty entries dropped."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
