"""
Query service.
Stateless facade over the status subsystem; one instance per request.
"""
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import AlreadyRegistered, InvalidWindow
from ..models.models import VehicleStatusRecord
from ..schemas.tracking import (
    STATUS_LABELS,
    SearchVehiclesResponse,
    StatusActor,
    StatusBreakdownEntry,
    StatusHistoryItem,
    StatusHistoryResponse,
    StatusOverviewResponse,
    TransitionSource,
    UtilizationSnapshot,
    UtilizationStatsResponse,
    VehicleByStatusItem,
    VehicleSearchItem,
    VehicleStatus,
    VehiclesByStatusResponse,
)
from .aggregation import FLEET, AggregationEngine
from .aggregation_cache import AggregationCache
from .fleet_directory import FleetDirectory
from .status_store import StatusStore
from .time_rules import ensure_utc, humanize_elapsed, utcnow, window_bounds
from .timeline import TimelineLog
from .transitions import SYSTEM_ACTOR, ActorRef, TransitionValidator

LIST_UTILIZATION_DAYS = 30


class QueryService:
    def __init__(
        self,
        db: Session,
        cache: AggregationCache,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.cache = cache
        self.clock = clock
        self.store = StatusStore()
        self.timeline = TimelineLog()
        self.directory = FleetDirectory()
        self.validator = TransitionValidator(self.store, self.timeline, clock)
        self.engine = AggregationEngine(self.store, self.timeline, clock)

    # ---------- WRITES ----------
    def register_vehicle(
        self,
        vehicle_id: uuid.UUID,
        actor: ActorRef = SYSTEM_ACTOR,
    ) -> VehicleStatusRecord:
        record = self.validator.register(self.db, vehicle_id, actor)
        self.cache.invalidate("vehicle_registered")
        return record

    def update_vehicle_status(
        self,
        vehicle_id: uuid.UUID,
        new_status: VehicleStatus,
        reason: Optional[str],
        expected_version: int,
        actor: ActorRef,
        source: TransitionSource = TransitionSource.manual,
        location: Optional[str] = None,
        mileage: Optional[int] = None,
    ) -> VehicleStatusRecord:
        record = self.validator.apply(
            self.db,
            vehicle_id,
            new_status,
            actor,
            reason,
            expected_version,
            source=source,
            location=location,
            mileage=mileage,
        )
        self.cache.invalidate("status_transition")
        return record

    def sync_statuses(self, actor: ActorRef = SYSTEM_ACTOR) -> int:
        """Register every active fleet vehicle that has no status record yet. Returns the number created."""
        created = 0
        for vehicle in self.directory.unregistered(self.db):
            try:
                self.validator.register(self.db, vehicle.id, actor, TransitionSource.system)
            except AlreadyRegistered:
                # Registered concurrently by the fleet module
                continue
            created += 1
        if created:
            self.cache.invalidate("status_sync")
        return created

    def get_status_record(self, vehicle_id: uuid.UUID) -> VehicleStatusRecord:
        return self.store.get(self.db, vehicle_id)

    def refresh(self) -> datetime:
        self.cache.invalidate("manual_refresh")
        return self.clock()

    # ---------- READS ----------
    def fetch_vehicle_status_overview(self) -> StatusOverviewResponse:
        return self.cache.get_or_compute(
            ("status_overview",),
            lambda: self.engine.compute_status_overview(self.db),
            self._empty_overview,
        )

    def fetch_utilization_stats(self, window_days: Optional[int] = None) -> UtilizationStatsResponse:
        window_days = self._window(window_days)
        return self.cache.get_or_compute(
            ("utilization_stats", window_days),
            lambda: self._utilization_stats(window_days),
            lambda: self._empty_utilization_stats(window_days),
        )

    def fetch_vehicle_utilization(self, vehicle_id: uuid.UUID, window_days: Optional[int] = None) -> UtilizationSnapshot:
        window_days = self._window(window_days)
        self.store.get(self.db, vehicle_id)
        return self.cache.get_or_compute(
            ("vehicle_utilization", vehicle_id, window_days),
            lambda: self.engine.compute_utilization_stats(self.db, vehicle_id, window_days),
            lambda: self._empty_snapshot(vehicle_id, window_days),
            retain_stale=False,
        )

    def fetch_vehicles_by_status(self, status: VehicleStatus) -> VehiclesByStatusResponse:
        rows = self.store.list_by_status(self.db, status)
        utilization = self.engine.compute_vehicle_utilizations(
            self.db, [record.vehicle_id for record, _ in rows], LIST_UTILIZATION_DAYS
        )
        vehicles = [
            VehicleByStatusItem(
                id=vehicle.id,
                registration_number=vehicle.registration_number,
                make=vehicle.make,
                model=vehicle.model,
                current_location=record.current_location,
                last_status_update=ensure_utc(record.status_since),
                status_updated_by=(
                    StatusActor(id=record.updated_by_id, role=record.updated_by_role)
                    if record.updated_by_id or record.updated_by_role
                    else None
                ),
                current_mileage=record.current_mileage,
                fuel_level=vehicle.fuel_level,
                utilization_30d=utilization.get(vehicle.id, 0.0),
                version=record.version,
            )
            for record, vehicle in rows
        ]
        return VehiclesByStatusResponse(status=status, count=len(vehicles), vehicles=vehicles)

    def fetch_vehicle_status_history(
        self,
        vehicle_id: uuid.UUID,
        days: Optional[int] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> StatusHistoryResponse:
        days = self._window(days)
        limit = min(limit or settings.timeline_page_size, settings.max_timeline_page_size)
        vehicle = self.directory.get(self.db, vehicle_id)
        self.store.get(self.db, vehicle_id)

        now = self.clock()
        page = self.timeline.query(
            self.db,
            vehicle_id,
            from_time=now - timedelta(days=days),
            limit=limit,
            cursor=cursor,
        )
        return StatusHistoryResponse(
            vehicle_id=vehicle_id,
            registration_number=vehicle.registration_number,
            history=[self._history_item(event, now) for event in page.events],
            next_cursor=page.next_cursor,
            period_days=days,
        )

    def recent_transitions(self, limit: Optional[int] = None):
        limit = min(limit or settings.timeline_page_size, settings.max_timeline_page_size)
        now = self.clock()
        return [self._history_item(event, now) for event in self.timeline.recent(self.db, limit)]

    def search_vehicles(self, query: str = "", status: Optional[VehicleStatus] = None) -> SearchVehiclesResponse:
        rows = self.directory.search(self.db, query, status)
        vehicles = [
            VehicleSearchItem(
                id=vehicle.id,
                registration_number=vehicle.registration_number,
                make=vehicle.make,
                model=vehicle.model,
                status=VehicleStatus(record.current_status) if record else None,
                current_location=record.current_location if record else None,
                last_status_update=ensure_utc(record.status_since) if record else None,
                current_mileage=record.current_mileage if record else None,
                fuel_level=vehicle.fuel_level,
            )
            for vehicle, record in rows
        ]
        return SearchVehiclesResponse(query=query, status_filter=status, count=len(vehicles), vehicles=vehicles)

    # ---------- HELPERS ----------
    def _window(self, window_days: Optional[int]) -> int:
        if window_days is None:
            return settings.default_window_days
        if window_days <= 0 or window_days > settings.max_window_days:
            raise InvalidWindow(f"days must be between 1 and {settings.max_window_days}")
        return window_days

    def _utilization_stats(self, window_days: int) -> UtilizationStatsResponse:
        counts = self.engine.compute_status_counts(self.db)
        snapshot = self.engine.compute_utilization_stats(self.db, FLEET, window_days)
        return UtilizationStatsResponse(
            average_utilization=snapshot.utilization_percentage,
            total_vehicles=sum(counts.values()),
            hired_vehicles=counts[VehicleStatus.HIRED],
            available_vehicles=counts[VehicleStatus.AVAILABLE],
            maintenance_vehicles=counts[VehicleStatus.IN_GARAGE],
            period_days=window_days,
            time_in_status=snapshot.time_in_status,
            window_start=snapshot.window_start,
            window_end=snapshot.window_end,
        )

    def _history_item(self, event, now: datetime) -> StatusHistoryItem:
        occurred_at = ensure_utc(event.occurred_at)
        return StatusHistoryItem(
            id=event.event_id,
            sequence_number=event.sequence_number,
            old_status=VehicleStatus(event.from_status) if event.from_status else None,
            new_status=VehicleStatus(event.to_status),
            timestamp=occurred_at,
            updated_by=StatusActor(id=event.actor_id, role=event.actor_role),
            source=TransitionSource(event.source),
            location=event.location,
            reason=event.reason,
            mileage_at_change=event.mileage_at_change,
            time_since_update=humanize_elapsed(occurred_at, now),
        )

    def _empty_overview(self) -> StatusOverviewResponse:
        return StatusOverviewResponse(
            total_vehicles=0,
            status_breakdown={
                status: StatusBreakdownEntry(count=0, percentage=0.0, label=STATUS_LABELS[status])
                for status in VehicleStatus
            },
            last_updated=self.clock(),
        )

    def _empty_snapshot(self, vehicle_id: Optional[uuid.UUID], window_days: int) -> UtilizationSnapshot:
        window_start, window_end = window_bounds(self.clock(), window_days)
        return UtilizationSnapshot(
            vehicle_id=vehicle_id,
            window_start=window_start,
            window_end=window_end,
            time_in_status={status: 0.0 for status in VehicleStatus},
            observed_seconds=0.0,
            utilization_percentage=0.0,
        )

    def _empty_utilization_stats(self, window_days: int) -> UtilizationStatsResponse:
        snapshot = self._empty_snapshot(None, window_days)
        return UtilizationStatsResponse(
            average_utilization=0.0,
            total_vehicles=0,
            hired_vehicles=0,
            available_vehicles=0,
            maintenance_vehicles=0,
            period_days=window_days,
            time_in_status=snapshot.time_in_status,
            window_start=snapshot.window_start,
            window_end=snapshot.window_end,
        )
