import uuid
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any
from enum import Enum

from pydantic import BaseModel, Field, field_validator


# Enums
class VehicleStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    HIRED = "HIRED"
    IN_GARAGE = "IN_GARAGE"
    UNAVAILABLE = "UNAVAILABLE"


STATUS_LABELS: Dict[VehicleStatus, str] = {
    VehicleStatus.AVAILABLE: "Available",
    VehicleStatus.HIRED: "On Hire",
    VehicleStatus.IN_GARAGE: "In Garage",
    VehicleStatus.UNAVAILABLE: "Unavailable",
}


class TransitionSource(str, Enum):
    manual = "manual"
    contract = "contract"
    garage = "garage"
    fleet = "fleet"
    system = "system"


class ReportKind(str, Enum):
    GRID = "grid"
    TIMELINE = "timeline"
    ANALYTICS = "analytics"
    REPORTS = "reports"


# Status records
class VehicleStatusUpdate(BaseModel):
    status: VehicleStatus
    expected_version: int = Field(ge=0)
    reason: Optional[str] = None
    location: Optional[str] = None
    mileage: Optional[int] = Field(default=None, ge=0)
    source: TransitionSource = TransitionSource.manual

    @field_validator("reason", "location")
    @classmethod
    def _strip(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class VehicleStatusRecordResponse(BaseModel):
    vehicle_id: uuid.UUID
    current_status: VehicleStatus
    status_since: datetime
    version: int
    current_location: Optional[str] = None
    current_mileage: Optional[int] = None
    updated_by_id: Optional[str] = None
    updated_by_role: Optional[str] = None

    class Config:
        from_attributes = True

    @field_validator("status_since")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        # SQLite hands back naive values; they are always written as UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class StatusUpdateResponse(BaseModel):
    message: str
    vehicle: VehicleStatusRecordResponse


# Overview
class VehicleSummary(BaseModel):
    id: uuid.UUID
    registration_number: str
    make: Optional[str] = None
    model: Optional[str] = None
    location: Optional[str] = None
    last_update: datetime


class StatusBreakdownEntry(BaseModel):
    count: int
    percentage: float
    label: str
    vehicles: List[VehicleSummary] = []


class StatusOverviewResponse(BaseModel):
    total_vehicles: int
    status_breakdown: Dict[VehicleStatus, StatusBreakdownEntry]
    last_updated: datetime
    stale: bool = False


# Utilization
class UtilizationSnapshot(BaseModel):
    vehicle_id: Optional[uuid.UUID] = None  # None for fleet-wide
    window_start: datetime
    window_end: datetime
    time_in_status: Dict[VehicleStatus, float]  # seconds
    observed_seconds: float
    utilization_percentage: float
    stale: bool = False


class UtilizationStatsResponse(BaseModel):
    average_utilization: float
    total_vehicles: int
    hired_vehicles: int
    available_vehicles: int
    maintenance_vehicles: int
    period_days: int
    time_in_status: Dict[VehicleStatus, float]
    window_start: datetime
    window_end: datetime
    stale: bool = False


# Vehicles by status / search
class StatusActor(BaseModel):
    id: Optional[str] = None
    role: Optional[str] = None


class VehicleByStatusItem(BaseModel):
    id: uuid.UUID
    registration_number: str
    make: Optional[str] = None
    model: Optional[str] = None
    current_location: Optional[str] = None
    last_status_update: datetime
    status_updated_by: Optional[StatusActor] = None
    current_mileage: Optional[int] = None
    fuel_level: Optional[float] = None
    utilization_30d: float
    version: int


class VehiclesByStatusResponse(BaseModel):
    status: VehicleStatus
    count: int
    vehicles: List[VehicleByStatusItem]


class VehicleSearchItem(BaseModel):
    id: uuid.UUID
    registration_number: str
    make: Optional[str] = None
    model: Optional[str] = None
    status: Optional[VehicleStatus] = None  # None when the vehicle has no status record yet
    current_location: Optional[str] = None
    last_status_update: Optional[datetime] = None
    current_mileage: Optional[int] = None
    fuel_level: Optional[float] = None


class SearchVehiclesResponse(BaseModel):
    query: str
    status_filter: Optional[VehicleStatus] = None
    count: int
    vehicles: List[VehicleSearchItem]


# Timeline
class StatusHistoryItem(BaseModel):
    id: uuid.UUID
    sequence_number: int
    old_status: Optional[VehicleStatus] = None
    new_status: VehicleStatus
    timestamp: datetime
    updated_by: StatusActor
    source: TransitionSource
    location: Optional[str] = None
    reason: Optional[str] = None
    mileage_at_change: Optional[int] = None
    time_since_update: str


class StatusHistoryResponse(BaseModel):
    vehicle_id: uuid.UUID
    registration_number: str
    history: List[StatusHistoryItem]
    next_cursor: Optional[str] = None
    period_days: int


# Misc
class RefreshResponse(BaseModel):
    message: str
    refreshed_at: datetime


class SyncStatusesResponse(BaseModel):
    message: str
    updated_count: int


class ReportResponse(BaseModel):
    kind: ReportKind
    generated_at: datetime
    stale: bool = False
    data: Dict[str, Any]
