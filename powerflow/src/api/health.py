"""
Health check endpoint for the power-flow hub.

GET /health reports whether the store answers, whether the MQTT bus is
connected, and how many WebSocket clients and rooms are active. Always
HTTP 200 so container health checks only fail when the process is down;
the body tells the rest.

CHANGELOG:
- 2026-10-11: Report store, MQTT and room state (STORY-111)

TODO:
- None
"""

from typing import Any

from fastapi import APIRouter, Request

from powerflow.src.api.deps import Store, Subscriptions

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request, store: Store, subscriptions: Subscriptions) -> dict[str, Any]:
    """Return hub status.

    Returns:
        dict: ``status``, ``database``, ``mqtt_connected`` (None when the
            bus is disabled), ``clients``, ``rooms`` and ``batches``.
    """
    database_ok = await store.ping()
    mqtt = request.app.state.mqtt
    return {
        "status": "ok" if database_ok else "degraded",
        "database": "ok" if database_ok else "unavailable",
        "mqtt_connected": mqtt.connected if mqtt is not None else None,
        "clients": subscriptions.client_count,
        "rooms": len(subscriptions.rooms()),
        "batches": request.app.state.ingestor.batches_processed,
    }
