"""
Integration tests for the hub HTTP and WebSocket surface.

The app runs its real lifespan against a temporary SQLite file and the
fixture blueprints, with MQTT disabled. Batches are fed straight into the
ingestor on the app's event loop.

Tests verify:
- Startup reconciles the devices file (Inv-1 created, Ghost failed).
- GET /health reports database, bus, client and batch state.
- Device table create/delete with 404/422 mapping of blueprint errors
  and 409 for a table name already owned by another device.
- On-demand reconcile re-reads edited blueprints.
- History and stats reflect ingested batches.
- Maintenance cleanup and database size.
- WebSocket: welcome, join/leave acks, live sensor-data and
  power-flow-data, history requests, and error events.

CHANGELOG:
- 2026-10-18: Table-name conflict and reconcile blueprint reload tests
- 2026-10-13: Maintenance and WebSocket request tests
- 2026-10-11: Initial creation (STORY-111)

TODO:
- None
"""

from __future__ import annotations

import json
import sqlite3
import time
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from powerflow.src.api.main import create_app
from powerflow.src.config import HubSettings
from powerflow.src.realtime.gateway import POWER_FLOW_ROOM, sensor_room

# ---------------------------------------------------------------------------
# Helpers and fixtures
# ---------------------------------------------------------------------------

_DEVICES_YAML = """\
devices_list:
  - device_name: Inv-1
    reference: SUN2000
    device_type: solar_inverter
  - device_name: Ghost
    reference: NOPE
    device_type: power_meter
"""


def _make_batch(batch_id: str = "b-1", timestamp_ms: int | None = None) -> bytes:
    timestamp_ms = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    message = {
        "data": [
            {
                "deviceMetaData": {"device_name": "Inv-1", "device_type": "solar_inverter", "reference": "SUN2000"},
                "register": {"W": 250, "WphA": "null", "Hz": 50.0},
            },
            {
                "deviceMetaData": {"device_name": "Meter-1", "device_type": "power_meter", "reference": "EM-24"},
                "register": {"W": "-50.5"},
            },
        ],
        "metadata": {"batch_id": batch_id, "timestamp": str(timestamp_ms)},
    }
    return json.dumps(message).encode("utf-8")


def _ingest(client: TestClient, app: FastAPI, raw: bytes) -> Any:
    return client.portal.call(app.state.ingestor.handle_message, raw)


@pytest.fixture()
def settings(tmp_path: Path, blueprint_dir: Path) -> HubSettings:
    devices = tmp_path / "device.yaml"
    devices.write_text(_DEVICES_YAML, encoding="utf-8")
    return HubSettings(
        mqtt_enabled=False,
        db_path=str(tmp_path / "hub.db"),
        blueprint_path=str(blueprint_dir),
        devices_yaml_path=str(devices),
        store_busy_delay_s=0,
    )


@pytest.fixture()
def app(settings: HubSettings) -> FastAPI:
    return create_app(settings)


@pytest.fixture()
def client(app: FastAPI) -> Generator[TestClient, None, None]:
    with TestClient(app) as test_client:
        yield test_client


# ---------------------------------------------------------------------------
# Startup and health
# ---------------------------------------------------------------------------


class TestStartup:
    """Lifespan wiring."""

    def test_reconciled_on_startup(self, client: TestClient, app: FastAPI) -> None:
        assert app.state.store.provisioned_devices == ["Inv-1"]

    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "database": "ok",
            "mqtt_connected": None,
            "clients": 0,
            "rooms": 0,
            "batches": 0,
        }

    def test_health_counts_batches(self, client: TestClient, app: FastAPI) -> None:
        _ingest(client, app, _make_batch())

        assert client.get("/health").json()["batches"] == 1


# ---------------------------------------------------------------------------
# Device tables
# ---------------------------------------------------------------------------


class TestDeviceTables:
    """POST/DELETE /v1/device-tables and reconcile."""

    def test_create(self, client: TestClient) -> None:
        response = client.post("/v1/device-tables", json={"device_name": "Meter-1", "reference": "EM-24"})

        assert response.status_code == 201
        assert response.json() == {
            "device_name": "Meter-1",
            "table_name": "device_Meter_1",
            "columns": ["timestamp", "W", "WphA", "WphB", "WphC", "sample_count"],
        }

    def test_create_existing_returns_table(self, client: TestClient) -> None:
        response = client.post("/v1/device-tables", json={"device_name": "Inv-1", "reference": "SUN2000"})

        assert response.status_code == 201
        assert response.json()["table_name"] == "device_Inv_1"

    def test_unknown_blueprint_is_404(self, client: TestClient) -> None:
        response = client.post("/v1/device-tables", json={"device_name": "X", "reference": "NOPE"})
        assert response.status_code == 404

    def test_blueprint_without_registers_is_422(self, client: TestClient) -> None:
        response = client.post("/v1/device-tables", json={"device_name": "X", "reference": "EMPTY"})
        assert response.status_code == 422

    def test_missing_reference_is_422(self, client: TestClient) -> None:
        response = client.post("/v1/device-tables", json={"device_name": "X"})
        assert response.status_code == 422

    def test_delete(self, client: TestClient) -> None:
        response = client.delete("/v1/device-tables/Inv-1")

        assert response.status_code == 200
        assert response.json() == {"device_name": "Inv-1", "deleted": True}
        assert client.delete("/v1/device-tables/Inv-1").status_code == 404

    def test_reconcile_on_demand(self, client: TestClient) -> None:
        response = client.post("/v1/device-tables/reconcile")

        assert response.status_code == 200
        assert response.json() == {"created": [], "already_exist": ["Inv-1"], "failed": ["Ghost"]}

    def test_colliding_device_name_is_409(self, client: TestClient, app: FastAPI) -> None:
        response = client.post("/v1/device-tables", json={"device_name": "Inv_1", "reference": "EM-24"})

        assert response.status_code == 409
        assert "Inv-1" in response.json()["detail"]
        assert app.state.store.provisioned_devices == ["Inv-1"]

    def test_reconcile_rereads_edited_blueprints(self, tmp_path: Path) -> None:
        blueprints = tmp_path / "blueprints"
        blueprints.mkdir()
        blueprint = blueprints / "inverter.yaml"
        blueprint.write_text("header:\n  reference: SUN2000\nregisters:\n  - short_name: W\n", encoding="utf-8")
        devices = tmp_path / "reconcile-devices.yaml"
        devices.write_text("- device_name: Inv-1\n  reference: SUN2000\n", encoding="utf-8")
        settings = HubSettings(
            mqtt_enabled=False,
            db_path=str(tmp_path / "reconcile.db"),
            blueprint_path=str(blueprints),
            devices_yaml_path=str(devices),
            store_busy_delay_s=0,
        )

        with TestClient(create_app(settings)) as test_client:
            assert test_client.delete("/v1/device-tables/Inv-1").status_code == 200
            blueprint.write_text(
                "header:\n  reference: SUN2000\nregisters:\n  - short_name: W\n  - short_name: VAR\n",
                encoding="utf-8",
            )

            response = test_client.post("/v1/device-tables/reconcile")

            assert response.json()["created"] == ["Inv-1"]
            assert test_client.app.state.store.device_columns("Inv-1") == ["timestamp", "W", "VAR", "sample_count"]


# ---------------------------------------------------------------------------
# History and maintenance
# ---------------------------------------------------------------------------


class TestHistory:
    """Aggregate history over HTTP."""

    def test_empty_history(self, client: TestClient) -> None:
        response = client.get("/v1/power-flow/history")

        assert response.status_code == 200
        assert response.json() == {"success": True, "count": 0, "data": []}

    def test_history_after_ingest(self, client: TestClient, app: FastAPI) -> None:
        _ingest(client, app, _make_batch("b-1"))
        _ingest(client, app, _make_batch("b-2"))

        body = client.get("/v1/power-flow/history", params={"minutes": 5}).json()

        assert body["count"] == 2
        assert [p["batchId"] for p in body["data"]] == ["b-1", "b-2"]
        assert body["data"][0]["solar"] == 250.0
        assert body["data"][0]["grid"] == -50.5
        assert body["data"][0]["load"] == 199.5
        assert body["data"][0]["time"].endswith("Z")

    def test_device_sample_stored_for_provisioned_device(self, client: TestClient, app: FastAPI, settings: HubSettings) -> None:
        _ingest(client, app, _make_batch())

        with sqlite3.connect(settings.db_path) as conn:
            rows = conn.execute("SELECT W, WphA, sample_count FROM device_Inv_1").fetchall()
        assert rows == [(250.0, None, 1)]

    def test_window_must_be_positive(self, client: TestClient) -> None:
        assert client.get("/v1/power-flow/history", params={"hours": 0}).status_code == 422

    def test_stats(self, client: TestClient, app: FastAPI) -> None:
        _ingest(client, app, _make_batch())

        body = client.get("/v1/power-flow/stats", params={"hours": 1}).json()

        assert body["success"] is True
        assert body["data"]["count"] == 1
        assert body["data"]["solar"] == {"avg": 250.0, "min": 250.0, "max": 250.0}


class TestMaintenance:
    """Manual retention and size report."""

    def test_cleanup_keeps_recent_rows(self, client: TestClient, app: FastAPI) -> None:
        _ingest(client, app, _make_batch())

        response = client.post("/v1/maintenance/cleanup", params={"retention_days": 7})

        assert response.status_code == 200
        assert response.json() == {"deleted": 0, "retention_days": 7}

    def test_cleanup_removes_old_rows(self, client: TestClient, app: FastAPI) -> None:
        old = int(time.time() * 1000) - 40 * 86_400_000
        _ingest(client, app, _make_batch("old", old))

        response = client.post("/v1/maintenance/cleanup")

        assert response.json() == {"deleted": 1, "retention_days": 30}

    def test_cleanup_rejects_zero_days(self, client: TestClient) -> None:
        assert client.post("/v1/maintenance/cleanup", params={"retention_days": 0}).status_code == 422

    def test_database_size(self, client: TestClient) -> None:
        body = client.get("/v1/maintenance/database-size").json()

        assert body["total_bytes"] == body["pages"] * body["page_size"]


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------


class TestWebSocket:
    """Room subscriptions and requests over /ws."""

    def test_welcome(self, client: TestClient) -> None:
        with client.websocket_connect("/ws") as ws:
            welcome = ws.receive_json()

            assert welcome["event"] == "welcome"
            assert welcome["data"]["clientId"]
            assert client.get("/health").json()["clients"] == 1

    def test_power_flow_room(self, client: TestClient, app: FastAPI) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"action": "join-room", "room": POWER_FLOW_ROOM})
            assert ws.receive_json() == {"event": "room-joined", "data": {"room": POWER_FLOW_ROOM, "count": 1}}

            _ingest(client, app, _make_batch("b-7"))
            message = ws.receive_json()

        assert message["event"] == "power-flow-data"
        assert message["data"]["solar"] == 250.0
        assert message["data"]["grid"] == -50.5
        assert message["data"]["load"] == 199.5
        assert message["data"]["batchId"] == "b-7"
        assert message["data"]["receivedDevices"] == ["solar", "grid"]
        assert message["data"]["status"]["grid"] == "Inactive"

    def test_sensor_room(self, client: TestClient, app: FastAPI) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"action": "join-room", "room": sensor_room("Meter-1")})
            ws.receive_json()

            _ingest(client, app, _make_batch())
            message = ws.receive_json()

        assert message["event"] == "sensor-data"
        assert message["data"]["W"] == -50.5
        assert message["data"]["_deviceName"] == "Meter-1"

    def test_leave_room(self, client: TestClient) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"action": "join-room", "room": POWER_FLOW_ROOM})
            ws.receive_json()
            ws.send_json({"action": "leave-room", "room": POWER_FLOW_ROOM})

            assert ws.receive_json() == {"event": "room-left", "data": {"room": POWER_FLOW_ROOM, "count": 0}}

    def test_initial_data(self, client: TestClient, app: FastAPI) -> None:
        _ingest(client, app, _make_batch("b-1"))

        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"action": "get-initial-data"})
            message = ws.receive_json()

        assert message["event"] == "power-flow-history"
        assert message["data"]["success"] is True
        assert message["data"]["count"] == 1
        assert message["data"]["data"][0]["batchId"] == "b-1"

    def test_data_range_and_stats(self, client: TestClient, app: FastAPI) -> None:
        now = int(time.time() * 1000)
        _ingest(client, app, _make_batch("b-1", now - 1_000))

        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"action": "get-data-range", "startTime": now - 60_000, "endTime": now})
            ranged = ws.receive_json()
            ws.send_json({"action": "get-stats", "hours": 1})
            stats = ws.receive_json()

        assert ranged["event"] == "power-flow-range"
        assert ranged["data"]["count"] == 1
        assert stats["event"] == "power-flow-stats"
        assert stats["data"]["data"]["count"] == 1

    @pytest.mark.parametrize(
        "message",
        [
            {"action": "dance"},
            {"action": "join-room"},
            {"action": "get-data-range", "startTime": "yesterday", "endTime": 1},
            {"action": "get-stats", "hours": -1},
        ],
    )
    def test_bad_requests_get_error_event(self, client: TestClient, message: dict[str, Any]) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json(message)

            assert ws.receive_json()["event"] == "error"

    def test_invalid_json(self, client: TestClient) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text("{not json")

            assert ws.receive_json() == {"event": "error", "data": {"message": "invalid JSON"}}
