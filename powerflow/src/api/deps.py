"""
FastAPI dependency injection providers.

Every long-lived component is built once by the application lifespan and
kept on ``app.state``; these providers hand them to route handlers through
FastAPI's Depends() mechanism.

CHANGELOG:
- 2026-10-11: Initial creation (STORY-111)
"""

from typing import Annotated

from fastapi import Depends, Request

from powerflow.src.config import HubSettings
from powerflow.src.db.store import TelemetryStore
from powerflow.src.realtime.subscriptions import SubscriptionRegistry
from powerflow.src.services.schema_registry import SchemaRegistry


def get_settings(request: Request) -> HubSettings:
    """Return the settings the application was started with."""
    return request.app.state.settings


def get_store(request: Request) -> TelemetryStore:
    """Return the open telemetry store."""
    return request.app.state.store


def get_schema_registry(request: Request) -> SchemaRegistry:
    """Return the blueprint schema registry."""
    return request.app.state.schema_registry


def get_subscriptions(request: Request) -> SubscriptionRegistry:
    """Return the room subscription registry."""
    return request.app.state.subscriptions


# Type aliases for injecting components via FastAPI Depends().
# Usage in route handlers:
#   async def my_route(store: Store):
#       result = await store.history(minutes=10)
Settings = Annotated[HubSettings, Depends(get_settings)]
Store = Annotated[TelemetryStore, Depends(get_store)]
Schemas = Annotated[SchemaRegistry, Depends(get_schema_registry)]
Subscriptions = Annotated[SubscriptionRegistry, Depends(get_subscriptions)]
