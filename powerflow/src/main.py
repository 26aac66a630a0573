"""
Process entrypoint for the power-flow hub.

Loads HubSettings, installs structured JSON logging, logs a config summary
(the MQTT password is only ever shown as a fingerprint), and serves the
FastAPI application with uvicorn. Graceful shutdown on SIGTERM/SIGINT is
handled by uvicorn, which runs the application lifespan teardown.

CHANGELOG:
- 2026-10-11: Initial creation (STORY-111)

TODO:
- None
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
from datetime import UTC, datetime

import uvicorn

from powerflow.src.api.main import create_app
from powerflow.src.config import HubSettings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging on the root logger (stderr)."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def _masked_secret(value: str | None) -> str:
    """Return a short non-reversible fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def log_config_summary(settings: HubSettings) -> None:
    """Log the effective configuration at startup, excluding secrets."""
    logger.info(
        "Power-flow hub starting with config: "
        "mqtt_enabled=%s, mqtt_host=%s, mqtt_port=%s, mqtt_topic=%s, "
        "mqtt_username=%s, mqtt_password=%s, db_path=%s, blueprint_path=%s, "
        "devices_yaml_path=%s, retention_days=%s, cleanup_interval_s=%s, "
        "api=%s:%s",
        settings.mqtt_enabled,
        settings.mqtt_host,
        settings.mqtt_port,
        settings.mqtt_topic,
        settings.mqtt_username or "-",
        _masked_secret(settings.mqtt_password),
        settings.db_path,
        settings.blueprint_path,
        settings.devices_yaml_path,
        settings.retention_days,
        settings.cleanup_interval_s,
        settings.api_host,
        settings.api_port,
    )


def main() -> None:
    """Synchronous entrypoint for the hub."""
    settings = HubSettings()
    configure_logging(settings.log_level)
    log_config_summary(settings)

    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
