"""
MQTT subscriber that feeds bus batches into the asyncio ingestor.

paho-mqtt runs its network loop in its own thread (``loop_start``). Each
received payload is handed to the event loop with
``asyncio.run_coroutine_threadsafe`` so all ingestion happens on the loop,
one batch at a time behind the ingestor's lock. The connection is made with
``connect_async`` so the hub starts even while the broker is down; paho keeps
reconnecting in the background and re-subscribes on every connect.

CHANGELOG:
- 2026-10-10: Connect asynchronously, re-subscribe on reconnect
- 2026-10-08: Initial creation (STORY-109)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from concurrent.futures import Future
from typing import Any

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

MessageHandler = Callable[[bytes], Awaitable[Any]]


class MqttSubscriber:
    """Subscribe to one topic and forward payloads to an async handler.

    Args:
        host: Broker hostname.
        port: Broker TCP port.
        topic: Topic carrying sensor batches.
        handler: Coroutine function receiving the raw payload bytes.
        username: Optional broker username.
        password: Optional broker password.
        client_id: Client id presented to the broker.
        qos: Subscription QoS.
        client_factory: Builds the paho client; replaced in tests.
    """

    def __init__(
        self,
        host: str,
        port: int,
        topic: str,
        handler: MessageHandler,
        *,
        username: str = "",
        password: str = "",
        client_id: str = "powerflow-hub",
        qos: int = 1,
        client_factory: Callable[..., mqtt.Client] = mqtt.Client,
    ) -> None:
        self._host = host
        self._port = port
        self._topic = topic
        self._handler = handler
        self._username = username
        self._password = password
        self._client_id = client_id
        self._qos = qos
        self._client_factory = client_factory
        self._client: mqtt.Client | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._connected = False
        self._received = 0
        self._failed = 0

    @property
    def connected(self) -> bool:
        """True while the broker connection is up."""
        return self._connected

    @property
    def stats(self) -> dict[str, int]:
        return {"received": self._received, "failed": self._failed}

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        """Connect in the background and start the network thread.

        Args:
            loop: Event loop that runs the handler coroutines.
        """
        self._loop = loop
        client = self._client_factory(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
            protocol=mqtt.MQTTv311,
        )
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        if self._username:
            client.username_pw_set(self._username, self._password or None)

        logger.info("Connecting to MQTT broker %s:%d", self._host, self._port)
        client.connect_async(self._host, self._port, keepalive=60)
        client.loop_start()
        self._client = client

    def stop(self) -> None:
        """Disconnect and stop the network thread."""
        client, self._client = self._client, None
        if client is None:
            return
        client.disconnect()
        client.loop_stop()
        self._connected = False
        logger.info(
            "MQTT subscriber stopped (received=%d failed=%d)",
            self._received,
            self._failed,
        )

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if reason_code.is_failure:
            self._connected = False
            logger.error("MQTT connection refused: %s", reason_code)
            return
        self._connected = True
        client.subscribe(self._topic, qos=self._qos)
        logger.info("Connected to MQTT broker, subscribed to %s", self._topic)

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        self._connected = False
        logger.warning("Disconnected from MQTT broker: %s", reason_code)

    def _on_message(self, client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage) -> None:
        self._received += 1
        if self._loop is None or self._loop.is_closed():
            self._failed += 1
            logger.warning("Message on %s dropped: event loop not running", message.topic)
            return
        future = asyncio.run_coroutine_threadsafe(self._handler(message.payload), self._loop)
        future.add_done_callback(self._on_handled)

    def _on_handled(self, future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self._failed += 1
            logger.error("Message handler failed", exc_info=exc)
