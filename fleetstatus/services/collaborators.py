"""
Status hooks for the contract and garage modules.

Each hook reads the current record and applies exactly one transition with the
record's version token. Nothing here retries or cascades: a VersionConflict or
InvalidTransition goes straight back to the calling module, which decides what
to do (e.g. a contract must be closed before its vehicle leaves HIRED).
"""
import uuid
from typing import Optional

from ..models.models import VehicleStatusRecord
from ..schemas.tracking import TransitionSource, VehicleStatus
from .query_service import QueryService
from .transitions import ActorRef

CONTRACT_ACTOR = ActorRef(id=None, role="system")
GARAGE_ACTOR = ActorRef(id=None, role="system")


def _transition(
    service: QueryService,
    vehicle_id: uuid.UUID,
    new_status: VehicleStatus,
    source: TransitionSource,
    reason: str,
    actor: ActorRef,
    mileage: Optional[int] = None,
    location: Optional[str] = None,
) -> VehicleStatusRecord:
    record = service.get_status_record(vehicle_id)
    return service.update_vehicle_status(
        vehicle_id,
        new_status,
        reason,
        record.version,
        actor,
        source=source,
        location=location,
        mileage=mileage,
    )


def on_contract_activated(
    service: QueryService,
    vehicle_id: uuid.UUID,
    contract_ref: str,
    actor: ActorRef = CONTRACT_ACTOR,
    mileage: Optional[int] = None,
) -> VehicleStatusRecord:
    return _transition(
        service, vehicle_id, VehicleStatus.HIRED, TransitionSource.contract,
        f"Contract {contract_ref} activated", actor, mileage=mileage,
    )


def on_contract_completed(
    service: QueryService,
    vehicle_id: uuid.UUID,
    contract_ref: str,
    actor: ActorRef = CONTRACT_ACTOR,
    mileage: Optional[int] = None,
    location: Optional[str] = None,
) -> VehicleStatusRecord:
    return _transition(
        service, vehicle_id, VehicleStatus.AVAILABLE, TransitionSource.contract,
        f"Contract {contract_ref} completed", actor, mileage=mileage, location=location,
    )


def on_job_card_created(
    service: QueryService,
    vehicle_id: uuid.UUID,
    job_card_ref: str,
    actor: ActorRef = GARAGE_ACTOR,
    mileage: Optional[int] = None,
) -> VehicleStatusRecord:
    return _transition(
        service, vehicle_id, VehicleStatus.IN_GARAGE, TransitionSource.garage,
        f"Job card {job_card_ref} opened", actor, mileage=mileage, location="Garage",
    )


def on_job_card_completed(
    service: QueryService,
    vehicle_id: uuid.UUID,
    job_card_ref: str,
    actor: ActorRef = GARAGE_ACTOR,
    mileage: Optional[int] = None,
) -> VehicleStatusRecord:
    return _transition(
        service, vehicle_id, VehicleStatus.AVAILABLE, TransitionSource.garage,
        f"Job card {job_card_ref} completed", actor, mileage=mileage,
    )
