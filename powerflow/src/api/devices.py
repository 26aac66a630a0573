"""
Device table lifecycle endpoints.

POST /v1/device-tables provisions the time series table of one device from
its blueprint, DELETE /v1/device-tables/{device_name} drops it, and POST
/v1/device-tables/reconcile runs the startup reconciliation on demand
against the configured devices file.

Blueprint errors map to client errors: an unknown reference is 404, a
blueprint without registers is 422. A device name whose table name is
already taken by another device is 409. A store that stays busy is 503.

CHANGELOG:
- 2026-10-18: 409 on table-name conflict; reconcile re-reads blueprints
- 2026-10-12: Add on-demand reconcile
- 2026-10-11: Initial creation (STORY-111)

TODO:
- None
"""

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from powerflow.src.api.deps import Schemas, Settings, Store
from powerflow.src.exceptions import BlueprintNotFound, SchemaIncomplete, StoreUnavailable, TableNameConflict
from powerflow.src.models import ReconcileReport
from powerflow.src.services.schema_registry import load_devices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/device-tables", tags=["device-tables"])


class DeviceTableRequest(BaseModel):
    """Request body for provisioning a device table.

    Attributes:
        device_name: Unique device name.
        reference: Blueprint reference describing the device registers.
    """

    device_name: str = Field(min_length=1)
    reference: str = Field(min_length=1)


class DeviceTableResponse(BaseModel):
    """Provisioned (or already existing) table of a device."""

    device_name: str
    table_name: str
    columns: list[str] = Field(default_factory=list)


@router.post("", response_model=DeviceTableResponse, status_code=201)
async def create_device_table(body: DeviceTableRequest, store: Store) -> DeviceTableResponse:
    """Create the device's table; an existing table is returned unchanged.

    Raises:
        HTTPException: 404 unknown blueprint, 422 blueprint without
            registers, 409 table name taken by another device, 503 store
            unavailable.
    """
    try:
        table_name = await store.create_device_table(body.device_name, body.reference)
    except BlueprintNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except SchemaIncomplete as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except TableNameConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    return DeviceTableResponse(
        device_name=body.device_name,
        table_name=table_name,
        columns=store.device_columns(body.device_name) or [],
    )


@router.delete("/{device_name}")
async def delete_device_table(device_name: str, store: Store) -> dict[str, str | bool]:
    """Drop a device's table and forget its registration.

    Raises:
        HTTPException: 404 when no table is registered, 503 store unavailable.
    """
    try:
        deleted = await store.delete_device_table(device_name)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail=f"No table registered for device '{device_name}'.")
    return {"device_name": device_name, "deleted": True}


@router.post("/reconcile", response_model=ReconcileReport)
async def reconcile(settings: Settings, store: Store, schemas: Schemas) -> ReconcileReport:
    """Create tables for every configured device that lacks one.

    Cached blueprints are dropped first so edited files are re-read.
    """
    schemas.invalidate()
    devices = await load_devices(settings.devices_yaml_path)
    return await schemas.reconcile(devices, store)
