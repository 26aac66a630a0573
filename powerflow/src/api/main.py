"""
FastAPI application factory for the power-flow hub.

The lifespan builds every component from HubSettings, in dependency order:

1. SchemaRegistry (blueprint directory) and TelemetryStore (SQLite).
2. Reconciliation of the configured devices against the table registry.
3. SubscriptionRegistry, BroadcastGateway, AggregationEngine, MessageIngestor.
4. MQTT subscriber (unless disabled) and the periodic retention loop.

Shutdown runs in reverse: stop MQTT, close the ingestor (waits for the batch
in flight), stop the retention loop, close the store.

Run with ``python -m powerflow.src.main`` or
``uvicorn powerflow.src.api.main:create_app --factory``.

CHANGELOG:
- 2026-10-13: Register maintenance router
- 2026-10-12: Reconcile devices on startup
- 2026-10-11: Initial creation (STORY-111)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from powerflow.src.api.devices import router as devices_router
from powerflow.src.api.health import router as health_router
from powerflow.src.api.history import router as history_router
from powerflow.src.api.maintenance import router as maintenance_router
from powerflow.src.api.ws import router as ws_router
from powerflow.src.bus.mqtt_subscriber import MqttSubscriber
from powerflow.src.config import HubSettings
from powerflow.src.db.store import TelemetryStore
from powerflow.src.realtime.gateway import BroadcastGateway
from powerflow.src.realtime.subscriptions import SubscriptionRegistry
from powerflow.src.services.aggregation import AggregationEngine
from powerflow.src.services.ingestion import MessageIngestor
from powerflow.src.services.schema_registry import SchemaRegistry, load_devices

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Retention loop
# ---------------------------------------------------------------------------


async def _cleanup_once(store: TelemetryStore, retention_days: int) -> int:
    """Run one retention pass. Never raises.

    Returns:
        int: Rows deleted (0 on failure).
    """
    try:
        result = await store.cleanup(retention_days)
    except Exception:
        logger.error("Retention cleanup error", exc_info=True)
        return 0
    if not result.success:
        logger.warning("Retention cleanup failed: %s", result.error)
        return 0
    return result.count


async def retention_loop(
    *,
    store: TelemetryStore,
    retention_days: int,
    interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Run retention cleanup every *interval_s* until shutdown_event is set."""
    logger.info(
        "Retention loop started (retention=%dd, interval=%ss)",
        retention_days,
        interval_s,
    )
    while not shutdown_event.is_set():
        await _cleanup_once(store, retention_days)
        # Use wait with timeout so we can check shutdown between sleeps
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_s)
    logger.info("Retention loop stopped")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build, start and tear down the hub components."""
    settings: HubSettings = app.state.settings

    schema_registry = SchemaRegistry(
        settings.blueprint_path,
        max_entries=settings.blueprint_cache_size,
        ttl_s=settings.blueprint_cache_ttl_s,
    )
    store = TelemetryStore(
        settings.db_path,
        schema_registry,
        busy_retries=settings.store_busy_retries,
        busy_delay_s=settings.store_busy_delay_s,
        busy_timeout_ms=settings.store_busy_timeout_ms,
    )
    await store.open()

    devices = await load_devices(settings.devices_yaml_path)
    if devices:
        await schema_registry.reconcile(devices, store)

    subscriptions = SubscriptionRegistry()
    gateway = BroadcastGateway(subscriptions)
    ingestor = MessageIngestor(AggregationEngine(), gateway, store)

    mqtt: MqttSubscriber | None = None
    if settings.mqtt_enabled:
        mqtt = MqttSubscriber(
            settings.mqtt_host,
            settings.mqtt_port,
            settings.mqtt_topic,
            ingestor.handle_message,
            username=settings.mqtt_username,
            password=settings.mqtt_password,
            client_id=settings.mqtt_client_id,
        )
        mqtt.start(asyncio.get_running_loop())
    else:
        logger.info("MQTT disabled, batches only arrive through the ingestor API")

    shutdown_event = asyncio.Event()
    cleanup_task = asyncio.create_task(
        retention_loop(
            store=store,
            retention_days=settings.retention_days,
            interval_s=settings.cleanup_interval_s,
            shutdown_event=shutdown_event,
        )
    )

    app.state.schema_registry = schema_registry
    app.state.store = store
    app.state.subscriptions = subscriptions
    app.state.gateway = gateway
    app.state.ingestor = ingestor
    app.state.mqtt = mqtt

    logger.info("Power-flow hub ready")
    try:
        yield
    finally:
        logger.info("Power-flow hub shutting down")
        if mqtt is not None:
            mqtt.stop()
        await ingestor.close()
        shutdown_event.set()
        await cleanup_task
        await store.close()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_app(settings: HubSettings | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Hub settings; loaded from the environment when omitted.

    Returns:
        FastAPI: Application with every router registered.
    """
    settings = settings or HubSettings()

    app = FastAPI(
        title="Power-flow hub",
        description="Live power-flow aggregation and per-device telemetry broadcast.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type"],
    )

    app.include_router(health_router)
    app.include_router(history_router)
    app.include_router(devices_router)
    app.include_router(maintenance_router)
    app.include_router(ws_router)
    return app
