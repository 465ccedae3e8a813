import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import Actor, get_current_actor, has_any_role, require_roles
from ..schemas.tracking import (
    RefreshResponse,
    SearchVehiclesResponse,
    StatusHistoryResponse,
    StatusOverviewResponse,
    StatusUpdateResponse,
    SyncStatusesResponse,
    TransitionSource,
    UtilizationSnapshot,
    UtilizationStatsResponse,
    VehicleStatus,
    VehicleStatusRecordResponse,
    VehicleStatusUpdate,
    VehiclesByStatusResponse,
)
from ..services.query_service import QueryService

router = APIRouter(prefix="/vehicles", tags=["vehicle-status"])

# Roles allowed to write a transition for each source (admin always allowed)
SOURCE_ROLES = {
    TransitionSource.manual: ("supervisor",),
    TransitionSource.contract: ("system",),
    TransitionSource.garage: ("system",),
    TransitionSource.fleet: ("system",),
    TransitionSource.system: ("system",),
}


def get_query_service(request: Request, db: Session = Depends(get_db)) -> QueryService:
    """QueryService bound to this request's Session and the app-wide aggregation cache"""
    return QueryService(db, request.app.state.aggregation_cache, clock=request.app.state.clock)


# ---------- FLEET-WIDE ----------
@router.get("/status_overview/", response_model=StatusOverviewResponse)
def status_overview(
    service: QueryService = Depends(get_query_service),
    _=Depends(get_current_actor),
):
    """Current status breakdown across the fleet"""
    return service.fetch_vehicle_status_overview()


@router.get("/utilization_stats/", response_model=UtilizationStatsResponse)
def utilization_stats(
    days: Optional[int] = Query(default=None, ge=1),
    service: QueryService = Depends(get_query_service),
    _=Depends(get_current_actor),
):
    """Fleet utilization over the last ``days`` days"""
    return service.fetch_utilization_stats(days)


@router.get("/by_status/", response_model=VehiclesByStatusResponse)
def vehicles_by_status(
    status: VehicleStatus,
    service: QueryService = Depends(get_query_service),
    _=Depends(get_current_actor),
):
    """Vehicles currently in ``status``"""
    return service.fetch_vehicles_by_status(status)


@router.get("/search_vehicles/", response_model=SearchVehiclesResponse)
def search_vehicles(
    q: str = Query(default="", max_length=100),
    status: Optional[VehicleStatus] = None,
    service: QueryService = Depends(get_query_service),
    _=Depends(get_current_actor),
):
    return service.search_vehicles(q, status)


@router.post("/refresh/", response_model=RefreshResponse)
def refresh(
    service: QueryService = Depends(get_query_service),
    _=Depends(get_current_actor),
):
    """Drop cached analytics so the next read recomputes them"""
    refreshed_at = service.refresh()
    return RefreshResponse(message="Status analytics refreshed", refreshed_at=refreshed_at)


@router.post("/sync_statuses/", response_model=SyncStatusesResponse)
def sync_statuses(
    service: QueryService = Depends(get_query_service),
    actor: Actor = Depends(require_roles("system", "supervisor")),
):
    """Start status tracking for every active vehicle that is not tracked yet"""
    updated_count = service.sync_statuses(actor.ref())
    return SyncStatusesResponse(
        message=f"Synced {updated_count} vehicle status record(s)",
        updated_count=updated_count,
    )


# ---------- PER VEHICLE ----------
@router.post("/{vehicle_id}/status/register/", response_model=VehicleStatusRecordResponse, status_code=201)
def register_vehicle(
    vehicle_id: uuid.UUID,
    service: QueryService = Depends(get_query_service),
    actor: Actor = Depends(require_roles("system", "supervisor")),
):
    """Start status tracking for a vehicle created by the fleet module"""
    return service.register_vehicle(vehicle_id, actor.ref())


@router.get("/{vehicle_id}/status/", response_model=VehicleStatusRecordResponse)
def get_vehicle_status(
    vehicle_id: uuid.UUID,
    service: QueryService = Depends(get_query_service),
    _=Depends(get_current_actor),
):
    """Current status and version token"""
    return service.get_status_record(vehicle_id)


@router.patch("/{vehicle_id}/status/", response_model=StatusUpdateResponse)
def update_vehicle_status(
    vehicle_id: uuid.UUID,
    payload: VehicleStatusUpdate,
    service: QueryService = Depends(get_query_service),
    actor: Actor = Depends(get_current_actor),
):
    """Apply one status transition"""
    if not has_any_role(actor, *SOURCE_ROLES[payload.source]):
        raise HTTPException(status_code=403, detail="Forbidden")
    record = service.update_vehicle_status(
        vehicle_id,
        payload.status,
        payload.reason,
        payload.expected_version,
        actor.ref(),
        source=payload.source,
        location=payload.location,
        mileage=payload.mileage,
    )
    return StatusUpdateResponse(
        message=f"Vehicle status updated to {payload.status.value}",
        vehicle=VehicleStatusRecordResponse.model_validate(record),
    )


@router.get("/{vehicle_id}/status_history/", response_model=StatusHistoryResponse)
def vehicle_status_history(
    vehicle_id: uuid.UUID,
    days: Optional[int] = Query(default=None, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    cursor: Optional[str] = None,
    service: QueryService = Depends(get_query_service),
    _=Depends(get_current_actor),
):
    """Transition timeline, oldest first, paged by cursor"""
    return service.fetch_vehicle_status_history(vehicle_id, days=days, limit=limit, cursor=cursor)


@router.get("/{vehicle_id}/utilization/", response_model=UtilizationSnapshot)
def vehicle_utilization(
    vehicle_id: uuid.UUID,
    days: Optional[int] = Query(default=None, ge=1),
    service: QueryService = Depends(get_query_service),
    _=Depends(get_current_actor),
):
    return service.fetch_vehicle_utilization(vehicle_id, days)
