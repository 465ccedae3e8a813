"""
Tracking reports, one handler per ReportKind.
"""
import uuid
from typing import Any, Dict, Optional

from ..schemas.tracking import STATUS_LABELS, ReportKind, ReportResponse, VehicleStatus
from .query_service import QueryService


def build_report(
    service: QueryService,
    kind: ReportKind,
    vehicle_id: Optional[uuid.UUID] = None,
    window_days: Optional[int] = None,
) -> ReportResponse:
    if kind is ReportKind.GRID:
        data, stale = _grid(service)
    elif kind is ReportKind.TIMELINE:
        data, stale = _timeline(service, vehicle_id, window_days)
    elif kind is ReportKind.ANALYTICS:
        data, stale = _analytics(service, window_days)
    elif kind is ReportKind.REPORTS:
        data, stale = _reports(service, window_days)
    else:
        raise ValueError(f"Unknown report kind: {kind}")
    return ReportResponse(kind=kind, generated_at=service.clock(), stale=stale, data=data)


def _grid(service: QueryService):
    overview = service.fetch_vehicle_status_overview()
    return overview.model_dump(mode="json"), overview.stale


def _timeline(service: QueryService, vehicle_id: Optional[uuid.UUID], window_days: Optional[int]):
    if vehicle_id is None:
        events = service.recent_transitions()
        return {"vehicle_id": None, "history": [e.model_dump(mode="json") for e in events]}, False
    history = service.fetch_vehicle_status_history(vehicle_id, days=window_days)
    return history.model_dump(mode="json"), False


def _analytics(service: QueryService, window_days: Optional[int]):
    overview = service.fetch_vehicle_status_overview()
    stats = service.fetch_utilization_stats(window_days)
    data: Dict[str, Any] = {
        "utilization": stats.model_dump(mode="json"),
        "distribution": {
            status.value: {
                "label": entry.label,
                "count": entry.count,
                "percentage": entry.percentage,
            }
            for status, entry in overview.status_breakdown.items()
        },
    }
    return data, overview.stale or stats.stale


def _share(count: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(count / total * 100, 1)


def _reports(service: QueryService, window_days: Optional[int]):
    overview = service.fetch_vehicle_status_overview()
    stats = service.fetch_utilization_stats(window_days)
    sections = [
        {
            "title": "Fleet Status Summary",
            "description": "Current status distribution across all vehicles",
            "items": [
                {
                    "label": STATUS_LABELS[status],
                    "value": overview.status_breakdown[status].count,
                    "percentage": overview.status_breakdown[status].percentage,
                }
                for status in VehicleStatus
            ],
        },
        {
            "title": "Vehicle Utilization Report",
            "description": f"{stats.period_days}-day utilization metrics",
            "items": [
                {"label": "Average Utilization", "value": stats.average_utilization, "percentage": stats.average_utilization},
                {"label": "Vehicles on Hire", "value": stats.hired_vehicles, "percentage": _share(stats.hired_vehicles, stats.total_vehicles)},
                {"label": "Available Vehicles", "value": stats.available_vehicles, "percentage": _share(stats.available_vehicles, stats.total_vehicles)},
                {"label": "In Maintenance", "value": stats.maintenance_vehicles, "percentage": _share(stats.maintenance_vehicles, stats.total_vehicles)},
            ],
        },
    ]
    return {"sections": sections}, overview.stale or stats.stale
