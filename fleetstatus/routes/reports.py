import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..auth.security import get_current_actor
from ..schemas.tracking import ReportKind, ReportResponse
from ..services.query_service import QueryService
from ..services.reports import build_report
from .vehicles import get_query_service

router = APIRouter(prefix="/tracking", tags=["tracking"])


@router.get("/reports/{kind}", response_model=ReportResponse)
def tracking_report(
    kind: ReportKind,
    vehicle_id: Optional[uuid.UUID] = None,
    days: Optional[int] = Query(default=None, ge=1),
    service: QueryService = Depends(get_query_service),
    _=Depends(get_current_actor),
):
    """Tracking overview report: grid, timeline, analytics or reports"""
    return build_report(service, kind, vehicle_id=vehicle_id, window_days=days)
