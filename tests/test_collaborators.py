"""Tests for the contract and garage status hooks."""

import pytest

from fleetstatus.exceptions import InvalidTransition
from fleetstatus.models.models import StatusTransitionEvent
from fleetstatus.schemas.tracking import VehicleStatus
from fleetstatus.services.collaborators import (
    on_contract_activated,
    on_contract_completed,
    on_job_card_completed,
    on_job_card_created,
)

S = VehicleStatus


def _last_event(db, vehicle_id):
    return (
        db.query(StatusTransitionEvent)
        .filter(StatusTransitionEvent.vehicle_id == vehicle_id)
        .order_by(StatusTransitionEvent.sequence_number.desc())
        .first()
    )


def test_contract_lifecycle(db, make_vehicle, service, clock) -> None:
    vehicle = make_vehicle()

    record = on_contract_activated(service, vehicle.id, "HC-1001", mileage=10500)
    assert record.current_status == S.HIRED.value
    event = _last_event(db, vehicle.id)
    assert event.source == "contract"
    assert event.reason == "Contract HC-1001 activated"
    assert event.actor_role == "system"
    assert event.mileage_at_change == 10500

    clock.advance(days=4)
    record = on_contract_completed(service, vehicle.id, "HC-1001", mileage=11200, location="Depot B")
    assert record.current_status == S.AVAILABLE.value
    assert record.current_location == "Depot B"
    assert record.version == 2


def test_job_card_lifecycle(db, make_vehicle, service) -> None:
    vehicle = make_vehicle()

    record = on_job_card_created(service, vehicle.id, "JC-7")
    assert record.current_status == S.IN_GARAGE.value
    assert record.current_location == "Garage"
    assert _last_event(db, vehicle.id).source == "garage"

    record = on_job_card_completed(service, vehicle.id, "JC-7")
    assert record.current_status == S.AVAILABLE.value


def test_contract_cannot_start_while_in_garage(make_vehicle, service) -> None:
    vehicle = make_vehicle()
    on_job_card_created(service, vehicle.id, "JC-8")

    with pytest.raises(InvalidTransition) as exc_info:
        on_contract_activated(service, vehicle.id, "HC-2002")
    assert exc_info.value.allowed_transitions == ["AVAILABLE", "UNAVAILABLE"]


def test_hooks_invalidate_cached_overview(make_vehicle, service) -> None:
    vehicle = make_vehicle()
    assert service.fetch_vehicle_status_overview().status_breakdown[S.HIRED].count == 0

    on_contract_activated(service, vehicle.id, "HC-3003")
    assert service.fetch_vehicle_status_overview().status_breakdown[S.HIRED].count == 1
