"""
Aggregation engine.
Read-only analytics over the status store and timeline log: the fleet status
overview snapshot and windowed utilization statistics.
"""
import uuid
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import AggregationDegraded
from ..models.models import StatusTransitionEvent
from ..schemas.tracking import (
    STATUS_LABELS,
    StatusBreakdownEntry,
    StatusOverviewResponse,
    UtilizationSnapshot,
    VehicleStatus,
    VehicleSummary,
)
from .status_store import StatusStore
from .time_rules import ensure_utc, utcnow, window_bounds
from .timeline import TimelineLog

logger = structlog.get_logger(__name__)

FLEET = "fleet"


def split_percentages(counts: Dict[VehicleStatus, int], total: int) -> Dict[VehicleStatus, float]:
    """
    Percentages rounded to one decimal that sum to exactly 100.0.

    Largest-remainder rounding over tenths of a percent; ties go to the status
    declared first. An empty fleet yields all zeros.
    """
    if total <= 0:
        return {status: 0.0 for status in counts}
    tenths: Dict[VehicleStatus, int] = {}
    remainders: List[Tuple[int, int, VehicleStatus]] = []
    order = list(VehicleStatus)
    for status, count in counts.items():
        quotient, remainder = divmod(count * 1000, total)
        tenths[status] = quotient
        remainders.append((-remainder, order.index(status), status))
    leftover = 1000 - sum(tenths.values())
    for _, _, status in sorted(remainders)[:leftover]:
        tenths[status] += 1
    return {status: value / 10 for status, value in tenths.items()}


def _empty_durations() -> Dict[VehicleStatus, float]:
    return {status: 0.0 for status in VehicleStatus}


def walk_intervals(
    carry_in: Optional[StatusTransitionEvent],
    events: Sequence[StatusTransitionEvent],
    window_start: datetime,
    window_end: datetime,
) -> Tuple[Dict[VehicleStatus, float], float]:
    """
    Attribute window time to statuses for one vehicle.

    The carry-in status is active from window_start. Without one (vehicle
    created inside the window) time starts at the first event. Each event
    closes the open interval and opens its own; the last interval closes at
    window_end.

    Returns:
        (seconds per status, observed seconds)
    """
    durations = _empty_durations()
    remaining = list(events)
    if carry_in is not None:
        cursor = window_start
        current = VehicleStatus(carry_in.to_status)
    elif remaining:
        first = remaining.pop(0)
        cursor = min(max(ensure_utc(first.occurred_at), window_start), window_end)
        current = VehicleStatus(first.to_status)
    else:
        return durations, 0.0

    observed_from = cursor
    for event in remaining:
        # Clamp so a skewed clock can never produce negative intervals
        at = min(max(ensure_utc(event.occurred_at), cursor), window_end)
        durations[current] += (at - cursor).total_seconds()
        cursor = at
        current = VehicleStatus(event.to_status)
    durations[current] += (window_end - cursor).total_seconds()
    return durations, (window_end - observed_from).total_seconds()


def utilization_percentage(hired_seconds: float, observed_seconds: float) -> float:
    if observed_seconds <= 0:
        return 0.0
    return round(hired_seconds / observed_seconds * 100, 1)


class AggregationEngine:
    def __init__(
        self,
        store: Optional[StatusStore] = None,
        timeline: Optional[TimelineLog] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store or StatusStore()
        self.timeline = timeline or TimelineLog()
        self._clock = clock

    def compute_status_overview(self, db: Session) -> StatusOverviewResponse:
        """Point-in-time status breakdown; each record is read in a single row fetch."""
        try:
            rows = self.store.list_all(db)
        except SQLAlchemyError as exc:
            raise self._degraded(db, "status_overview", exc)

        grouped: Dict[VehicleStatus, List[VehicleSummary]] = {status: [] for status in VehicleStatus}
        for record, vehicle in rows:
            grouped[VehicleStatus(record.current_status)].append(
                VehicleSummary(
                    id=vehicle.id,
                    registration_number=vehicle.registration_number,
                    make=vehicle.make,
                    model=vehicle.model,
                    location=record.current_location,
                    last_update=ensure_utc(record.status_since),
                )
            )

        counts = {status: len(vehicles) for status, vehicles in grouped.items()}
        total = len(rows)
        percentages = split_percentages(counts, total)
        return StatusOverviewResponse(
            total_vehicles=total,
            status_breakdown={
                status: StatusBreakdownEntry(
                    count=counts[status],
                    percentage=percentages[status],
                    label=STATUS_LABELS[status],
                    vehicles=grouped[status],
                )
                for status in VehicleStatus
            },
            last_updated=self._clock(),
        )

    def compute_status_counts(self, db: Session) -> Dict[VehicleStatus, int]:
        try:
            return self.store.counts_by_status(db)
        except SQLAlchemyError as exc:
            raise self._degraded(db, "status_counts", exc)

    def compute_utilization_stats(self, db: Session, scope, window_days: int) -> UtilizationSnapshot:
        """
        Windowed utilization for one vehicle (scope = vehicle id) or the fleet (scope = FLEET).

        Fleet figures weight every vehicle by its observed time: total HIRED
        seconds over total observed seconds, never a mean of percentages.
        """
        window_start, window_end = window_bounds(self._clock(), window_days)
        vehicle_ids = None if scope == FLEET else [scope]
        per_vehicle = self._per_vehicle(db, window_start, window_end, vehicle_ids)

        durations = _empty_durations()
        observed = 0.0
        for vehicle_durations, vehicle_observed in per_vehicle.values():
            for status, seconds in vehicle_durations.items():
                durations[status] += seconds
            observed += vehicle_observed

        return UtilizationSnapshot(
            vehicle_id=None if scope == FLEET else scope,
            window_start=window_start,
            window_end=window_end,
            time_in_status=durations,
            observed_seconds=observed,
            utilization_percentage=utilization_percentage(durations[VehicleStatus.HIRED], observed),
        )

    def compute_vehicle_utilizations(
        self,
        db: Session,
        vehicle_ids: Iterable[uuid.UUID],
        window_days: int,
    ) -> Dict[uuid.UUID, float]:
        """Utilization percentage per vehicle, computed in one batch."""
        vehicle_ids = list(vehicle_ids)
        if not vehicle_ids:
            return {}
        window_start, window_end = window_bounds(self._clock(), window_days)
        per_vehicle = self._per_vehicle(db, window_start, window_end, vehicle_ids)
        result = {}
        for vehicle_id in vehicle_ids:
            vehicle_durations, vehicle_observed = per_vehicle.get(vehicle_id, (_empty_durations(), 0.0))
            result[vehicle_id] = utilization_percentage(vehicle_durations[VehicleStatus.HIRED], vehicle_observed)
        return result

    def _per_vehicle(
        self,
        db: Session,
        window_start: datetime,
        window_end: datetime,
        vehicle_ids: Optional[List[uuid.UUID]],
    ) -> Dict[uuid.UUID, Tuple[Dict[VehicleStatus, float], float]]:
        try:
            carry = self.timeline.carry_in(db, window_start, vehicle_ids)
            in_window = self.timeline.window_events(db, window_start, window_end, vehicle_ids)
        except SQLAlchemyError as exc:
            raise self._degraded(db, "utilization", exc)

        per_vehicle = {}
        for vehicle_id in set(carry) | set(in_window):
            per_vehicle[vehicle_id] = walk_intervals(
                carry.get(vehicle_id),
                in_window.get(vehicle_id, []),
                window_start,
                window_end,
            )
        return per_vehicle

    def _degraded(self, db: Session, view: str, exc: SQLAlchemyError) -> AggregationDegraded:
        db.rollback()
        logger.warning("aggregation_degraded", view=view, error=str(exc))
        degraded = AggregationDegraded(f"{view} unavailable: {exc}")
        degraded.__cause__ = exc
        return degraded
