"""
Vehicle status lifecycle.
HARD STOP rules: only transitions in ALLOWED_TRANSITIONS are applied, and
every applied transition writes exactly one timeline event.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..exceptions import (
    AlreadyRegistered,
    InvalidTransition,
    ReasonRequired,
    SequenceViolation,
    VehicleNotFound,
    VersionConflict,
)
from ..models.models import StatusTransitionEvent, Vehicle, VehicleStatusRecord
from ..schemas.tracking import TransitionSource, VehicleStatus
from .status_store import StatusStore
from .time_rules import utcnow
from .timeline import TimelineLog

logger = structlog.get_logger(__name__)

S = VehicleStatus

# HIRED -> UNAVAILABLE and IN_GARAGE -> HIRED are never legal, for any actor
ALLOWED_TRANSITIONS: Dict[VehicleStatus, FrozenSet[VehicleStatus]] = {
    S.AVAILABLE: frozenset({S.HIRED, S.IN_GARAGE, S.UNAVAILABLE}),
    S.HIRED: frozenset({S.AVAILABLE, S.IN_GARAGE}),
    S.IN_GARAGE: frozenset({S.AVAILABLE, S.UNAVAILABLE}),
    S.UNAVAILABLE: frozenset({S.AVAILABLE}),
}

_STATUS_ORDER = list(VehicleStatus)


def allowed_next_states(current: VehicleStatus) -> List[VehicleStatus]:
    """Legal targets from ``current``, in enum declaration order."""
    allowed = ALLOWED_TRANSITIONS.get(current, frozenset())
    return [status for status in _STATUS_ORDER if status in allowed]


def is_allowed(current: VehicleStatus, requested: VehicleStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class ActorRef:
    id: Optional[str]
    role: Optional[str]


SYSTEM_ACTOR = ActorRef(id=None, role="system")


class TransitionValidator:
    """The only write path for vehicle status."""

    def __init__(
        self,
        store: Optional[StatusStore] = None,
        timeline: Optional[TimelineLog] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store or StatusStore()
        self.timeline = timeline or TimelineLog()
        self._clock = clock

    def register(
        self,
        db: Session,
        vehicle_id: uuid.UUID,
        actor: ActorRef = SYSTEM_ACTOR,
        source: TransitionSource = TransitionSource.fleet,
    ) -> VehicleStatusRecord:
        """
        Create the status record and creation event (AVAILABLE, sequence 0).

        Raises:
            VehicleNotFound: the fleet module has no such vehicle
            AlreadyRegistered: a record already exists
        """
        if db.query(Vehicle.id).filter(Vehicle.id == vehicle_id).first() is None:
            raise VehicleNotFound(vehicle_id)
        if self.store.find(db, vehicle_id) is not None:
            raise AlreadyRegistered(vehicle_id)

        occurred_at = self._clock()
        try:
            self.timeline.append(
                db,
                StatusTransitionEvent(
                    vehicle_id=vehicle_id,
                    sequence_number=0,
                    from_status=None,
                    to_status=VehicleStatus.AVAILABLE.value,
                    actor_id=actor.id,
                    actor_role=actor.role,
                    source=source.value,
                    occurred_at=occurred_at,
                ),
            )
            record = self.store.create(db, vehicle_id, occurred_at, actor.id, actor.role)
            db.commit()
        except (IntegrityError, SequenceViolation):
            # Registered by a concurrent writer after the existence check
            db.rollback()
            raise AlreadyRegistered(vehicle_id)
        except Exception:
            db.rollback()
            raise

        db.refresh(record)
        logger.info("vehicle_registered", vehicle_id=str(vehicle_id), actor_id=actor.id, source=source.value)
        return record

    def apply(
        self,
        db: Session,
        vehicle_id: uuid.UUID,
        requested_to: VehicleStatus,
        actor: ActorRef,
        reason: Optional[str],
        expected_version: int,
        source: TransitionSource = TransitionSource.manual,
        location: Optional[str] = None,
        mileage: Optional[int] = None,
    ) -> VehicleStatusRecord:
        """
        Validate and apply one status transition.

        The event append and the record compare-and-set run in one transaction:
        both commit or neither does.

        Raises:
            VehicleNotFound: no status record for the vehicle
            VersionConflict: expected_version is not the stored version, or a
                concurrent writer won the race
            InvalidTransition: (current, requested) is not a legal pair
            ReasonRequired: manual override without a reason
        """
        record = self.store.get(db, vehicle_id)
        current = VehicleStatus(record.current_status)

        if record.version != expected_version:
            self._rejected(vehicle_id, "version_conflict", current, requested_to, source)
            raise VersionConflict(
                vehicle_id=vehicle_id,
                expected_version=expected_version,
                current_version=record.version,
            )

        if not is_allowed(current, requested_to):
            self._rejected(vehicle_id, "invalid_transition", current, requested_to, source)
            raise InvalidTransition(
                vehicle_id=vehicle_id,
                current_status=current.value,
                requested_status=requested_to.value,
                allowed_transitions=[s.value for s in allowed_next_states(current)],
            )

        if source == TransitionSource.manual and not (reason and reason.strip()):
            self._rejected(vehicle_id, "reason_required", current, requested_to, source)
            raise ReasonRequired("A reason is required for manual status overrides")

        occurred_at = self._clock()
        try:
            self.timeline.append(
                db,
                StatusTransitionEvent(
                    vehicle_id=vehicle_id,
                    sequence_number=expected_version + 1,
                    from_status=current.value,
                    to_status=requested_to.value,
                    actor_id=actor.id,
                    actor_role=actor.role,
                    source=source.value,
                    reason=reason,
                    location=location,
                    mileage_at_change=mileage,
                    occurred_at=occurred_at,
                ),
            )
            won = self.store.compare_and_set(
                db,
                vehicle_id,
                expected_version,
                requested_to,
                occurred_at,
                actor_id=actor.id,
                actor_role=actor.role,
                location=location,
                mileage=mileage,
            )
            if not won:
                raise VersionConflict(vehicle_id=vehicle_id, expected_version=expected_version)
            db.commit()
        except IntegrityError:
            # Another writer inserted this sequence number first
            db.rollback()
            self._rejected(vehicle_id, "version_conflict", current, requested_to, source)
            raise VersionConflict(vehicle_id=vehicle_id, expected_version=expected_version)
        except SequenceViolation as exc:
            # A concurrent writer appended after this record was read
            db.rollback()
            self._rejected(vehicle_id, "version_conflict", current, requested_to, source)
            raise VersionConflict(
                vehicle_id=vehicle_id,
                expected_version=expected_version,
                current_version=exc.expected - 1,
            )
        except VersionConflict:
            db.rollback()
            self._rejected(vehicle_id, "version_conflict", current, requested_to, source)
            raise
        except Exception:
            db.rollback()
            raise

        db.refresh(record)
        logger.info(
            "status_transition_applied",
            vehicle_id=str(vehicle_id),
            from_status=current.value,
            to_status=requested_to.value,
            version=record.version,
            actor_id=actor.id,
            actor_role=actor.role,
            source=source.value,
        )
        return record

    def _rejected(
        self,
        vehicle_id: uuid.UUID,
        error: str,
        current: VehicleStatus,
        requested: VehicleStatus,
        source: TransitionSource,
    ) -> None:
        logger.info(
            "status_transition_rejected",
            vehicle_id=str(vehicle_id),
            error=error,
            from_status=current.value,
            to_status=requested.value,
            source=source.value,
        )
