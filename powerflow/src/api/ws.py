"""
WebSocket endpoint for live subscriptions and history requests.

Protocol (JSON text frames):

Client -> server::

    {"action": "join-room", "room": "sensor:Inverter-1"}
    {"action": "leave-room", "room": "power-flow"}
    {"action": "get-initial-data"}
    {"action": "get-data-range", "startTime": ..., "endTime": ...}
    {"action": "get-stats", "hours": 24}

Server -> client: ``{"event": <name>, "data": <payload>}``. A ``welcome``
event is sent on connect; joins and leaves are acknowledged with
``room-joined`` / ``room-left`` carrying the room's reference count. Live
data arrives as ``sensor-data`` and ``power-flow-data``.

Disconnecting releases every room reference the client held.

CHANGELOG:
- 2026-10-12: Range/stats requests and join acknowledgements
- 2026-10-09: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from powerflow.src.db.store import TelemetryStore
from powerflow.src.models import StoreResult
from powerflow.src.realtime.subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)

router = APIRouter()

INITIAL_DATA_HOURS = 24


class WebSocketSubscriber:
    """Adapts a FastAPI WebSocket to the registry's subscriber protocol.

    Sends are serialised per socket: broadcasts from the ingestor and
    replies from the receive loop may overlap.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._client_id = uuid.uuid4().hex
        self._send_lock = asyncio.Lock()

    @property
    def client_id(self) -> str:
        return self._client_id

    async def send(self, event: str, data: Any) -> None:
        async with self._send_lock:
            await self._websocket.send_json({"event": event, "data": data})


def _parse_time_ms(value: Any) -> int | None:
    """Accept epoch milliseconds or an ISO 8601 string."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int | float):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return int(parsed.timestamp() * 1000)
    return None


def _result_payload(result: StoreResult) -> dict[str, Any]:
    if not result.success:
        return {"success": False, "error": result.error}
    return {"success": True, "data": result.data, "count": result.count}


class _Session:
    """Handles the action messages of one connected client."""

    def __init__(
        self,
        subscriber: WebSocketSubscriber,
        registry: SubscriptionRegistry,
        store: TelemetryStore,
    ) -> None:
        self.subscriber = subscriber
        self.registry = registry
        self.store = store

    async def error(self, message: str) -> None:
        await self.subscriber.send("error", {"message": message})

    async def dispatch(self, message: Any) -> None:
        if not isinstance(message, dict):
            await self.error("message must be a JSON object")
            return

        action = message.get("action")
        if action in ("join-room", "leave-room"):
            await self._room_action(action, message.get("room"))
        elif action == "get-initial-data":
            result = await self.store.history(hours=INITIAL_DATA_HOURS)
            await self.subscriber.send("power-flow-history", _result_payload(result))
        elif action == "get-data-range":
            await self._data_range(message)
        elif action == "get-stats":
            hours = message.get("hours") or 24
            if isinstance(hours, bool) or not isinstance(hours, int | float) or hours <= 0:
                await self.error("hours must be a positive number")
                return
            result = await self.store.stats(hours)
            await self.subscriber.send("power-flow-stats", _result_payload(result))
        else:
            await self.error(f"unknown action: {action!r}")

    async def _room_action(self, action: str, room: Any) -> None:
        if not isinstance(room, str) or not room:
            await self.error("room must be a non-empty string")
            return
        if action == "join-room":
            count = self.registry.join(self.subscriber, room)
            await self.subscriber.send("room-joined", {"room": room, "count": count})
        else:
            count = self.registry.leave(self.subscriber.client_id, room)
            await self.subscriber.send("room-left", {"room": room, "count": count})

    async def _data_range(self, message: dict[str, Any]) -> None:
        start_ms = _parse_time_ms(message.get("startTime"))
        end_ms = _parse_time_ms(message.get("endTime"))
        if start_ms is None or end_ms is None:
            await self.error("startTime and endTime must be epoch ms or ISO 8601")
            return
        result = await self.store.history_range(start_ms, end_ms)
        await self.subscriber.send("power-flow-range", _result_payload(result))


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """Serve one client until it disconnects."""
    registry: SubscriptionRegistry = websocket.app.state.subscriptions
    store: TelemetryStore = websocket.app.state.store

    await websocket.accept()
    subscriber = WebSocketSubscriber(websocket)
    registry.connect(subscriber)
    session = _Session(subscriber, registry, store)

    try:
        await subscriber.send(
            "welcome",
            {
                "message": "Connected to power-flow hub",
                "clientId": subscriber.client_id,
                "timestamp": datetime.now(tz=UTC).isoformat(),
            },
        )
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except json.JSONDecodeError:
                await session.error("invalid JSON")
                continue
            await session.dispatch(message)
    except WebSocketDisconnect:
        logger.debug("Client %s closed the socket", subscriber.client_id)
    finally:
        registry.disconnect(subscriber.client_id)
