"""API routes: admission introspection and policy-guarded workshop endpoints."""

import logging
import threading
import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from admission.api.dependencies import (
    get_admission_manager,
    get_caller_identity,
    require_admission,
)
from admission.identity import CallerIdentity
from admission.quota import AdmissionManager, UnauthorizedRoleError, UnknownPolicyError

logger = logging.getLogger(__name__)
router = APIRouter()


# --- Request/Response Models ---

class PolicyStatusResponse(BaseModel):
    """Non-consuming quota status for the caller."""
    policy: str
    applied_policy: dict[str, Any]
    partition_key: str
    usage: dict[str, Any]


class VehicleUpdateRequest(BaseModel):
    """Vehicle update payload."""
    model: str = Field(..., min_length=1, description="Vehicle model name")
    year: int = Field(..., ge=1900, le=2100)
    serial_number: str = Field(..., min_length=1, description="VIN / serial number")
    mileage: int = Field(..., ge=0)
    client_id: uuid.UUID
    brand_id: uuid.UUID


class Vehicle(VehicleUpdateRequest):
    """Vehicle as returned by the API."""
    id: uuid.UUID


class VehicleStore:
    """In-process vehicle store backing the demo workshop endpoints."""

    def __init__(self) -> None:
        self._items: dict[uuid.UUID, Vehicle] = {}
        self._lock = threading.Lock()

    def all(self) -> list[Vehicle]:
        with self._lock:
            return list(self._items.values())

    def upsert(self, vehicle_id: uuid.UUID, data: VehicleUpdateRequest) -> Vehicle:
        vehicle = Vehicle(id=vehicle_id, **data.model_dump())
        with self._lock:
            self._items[vehicle_id] = vehicle
        return vehicle


def get_vehicle_store(request: Request) -> VehicleStore:
    """The application's vehicle store."""
    return request.app.state.vehicles


# --- Admission endpoints ---

@router.get("/admission/policies")
async def list_policies(manager: AdmissionManager = Depends(get_admission_manager)):
    """List configured admission policies."""
    return {"policies": manager.describe_policies()}


@router.get("/admission/status", response_model=PolicyStatusResponse)
async def admission_status(
    policy: str = Query(default="readCommon", description="Policy name"),
    manager: AdmissionManager = Depends(get_admission_manager),
    identity: CallerIdentity = Depends(get_caller_identity),
):
    """Quota status for the calling identity, without consuming quota."""
    try:
        return manager.status(policy, identity)
    except UnknownPolicyError:
        raise HTTPException(status_code=404, detail=f"Unknown policy: {policy}")
    except UnauthorizedRoleError:
        raise HTTPException(status_code=403, detail=f"Role not permitted for policy: {policy}")


# --- Workshop endpoints ---

@router.get(
    "/vehicles",
    response_model=list[Vehicle],
    dependencies=[Depends(require_admission("readCommon"))],
)
async def list_vehicles(store: VehicleStore = Depends(get_vehicle_store)):
    """List vehicles."""
    return store.all()


@router.put(
    "/vehicles/{vehicle_id}",
    response_model=Vehicle,
    dependencies=[Depends(require_admission("writeByRole"))],
)
async def update_vehicle(
    vehicle_id: uuid.UUID,
    payload: VehicleUpdateRequest,
    store: VehicleStore = Depends(get_vehicle_store),
):
    """Create or replace a vehicle."""
    vehicle = store.upsert(vehicle_id, payload)
    logger.info(f"Updated vehicle {vehicle_id}")
    return vehicle
