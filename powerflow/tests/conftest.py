"""
Shared test fixtures for power-flow hub tests.

All hub env vars are cleaned before each test and the working directory is
moved to tmp_path so no .env file is picked up by HubSettings. Provides the
blueprint fixture directory, a SchemaRegistry over it, and an opened
TelemetryStore on a fresh SQLite file.

CHANGELOG:
- 2026-10-08: Add store fixture (STORY-105)
- 2026-10-06: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from powerflow.src.db.store import TelemetryStore
from powerflow.src.services.schema_registry import SchemaRegistry

BLUEPRINT_DIR = Path(__file__).resolve().parent / "fixtures" / "blueprints"

NOW_MS = 1_760_000_000_000
"""Fixed wall clock for store tests (2025-10-09T08:53:20Z)."""

# All HubSettings environment variable names, used for cleanup.
_ALL_HUB_ENV_VARS = (
    "MQTT_ENABLED",
    "MQTT_HOST",
    "MQTT_PORT",
    "MQTT_TOPIC",
    "MQTT_USERNAME",
    "MQTT_PASSWORD",
    "MQTT_CLIENT_ID",
    "DB_PATH",
    "BLUEPRINT_PATH",
    "DEVICES_YAML_PATH",
    "BLUEPRINT_CACHE_SIZE",
    "BLUEPRINT_CACHE_TTL_S",
    "RETENTION_DAYS",
    "CLEANUP_INTERVAL_S",
    "STORE_BUSY_RETRIES",
    "STORE_BUSY_DELAY_S",
    "STORE_BUSY_TIMEOUT_MS",
    "LOG_LEVEL",
    "API_HOST",
    "API_PORT",
    "CORS_ORIGINS",
)


@pytest.fixture(autouse=True)
def _clean_hub_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all hub env vars and isolate from .env files before each test."""
    for var in _ALL_HUB_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def blueprint_dir() -> Path:
    """Directory with the SUN2000, EM-24, EMPTY and a broken blueprint."""
    return BLUEPRINT_DIR


@pytest.fixture()
def schema_registry(blueprint_dir: Path) -> SchemaRegistry:
    """SchemaRegistry over the fixture blueprints."""
    return SchemaRegistry(blueprint_dir)


@pytest_asyncio.fixture()
async def store(tmp_path: Path, schema_registry: SchemaRegistry) -> AsyncGenerator[TelemetryStore, None]:
    """Opened store on a fresh database with a fixed clock and no retry delay."""
    async with TelemetryStore(
        tmp_path / "hub.db",
        schema_registry,
        busy_delay_s=0,
        clock_ms=lambda: NOW_MS,
    ) as opened:
        yield opened
