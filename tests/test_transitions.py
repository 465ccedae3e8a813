"""Tests for the status lifecycle and the transition write path."""

import uuid

import pytest
from sqlalchemy.exc import IntegrityError

from fleetstatus.exceptions import (
    AlreadyRegistered,
    InvalidTransition,
    ReasonRequired,
    VehicleNotFound,
    VersionConflict,
)
from fleetstatus.models.models import StatusTransitionEvent
from fleetstatus.schemas.tracking import TransitionSource, VehicleStatus
from fleetstatus.services.status_store import StatusStore
from fleetstatus.services.transitions import (
    ALLOWED_TRANSITIONS,
    ActorRef,
    TransitionValidator,
    allowed_next_states,
    is_allowed,
)
from conftest import SUPERVISOR

S = VehicleStatus


def _events(db, vehicle_id):
    return (
        db.query(StatusTransitionEvent)
        .filter(StatusTransitionEvent.vehicle_id == vehicle_id)
        .order_by(StatusTransitionEvent.sequence_number.asc())
        .all()
    )


class TestLifecycleTable:
    @pytest.mark.parametrize(
        "current,requested",
        [
            (S.AVAILABLE, S.HIRED),
            (S.AVAILABLE, S.IN_GARAGE),
            (S.AVAILABLE, S.UNAVAILABLE),
            (S.HIRED, S.AVAILABLE),
            (S.HIRED, S.IN_GARAGE),
            (S.IN_GARAGE, S.AVAILABLE),
            (S.IN_GARAGE, S.UNAVAILABLE),
            (S.UNAVAILABLE, S.AVAILABLE),
        ],
    )
    def test_allowed_pairs(self, current, requested) -> None:
        assert is_allowed(current, requested)

    @pytest.mark.parametrize(
        "current,requested",
        [
            (S.HIRED, S.UNAVAILABLE),
            (S.IN_GARAGE, S.HIRED),
            (S.UNAVAILABLE, S.HIRED),
            (S.UNAVAILABLE, S.IN_GARAGE),
        ],
    )
    def test_forbidden_pairs(self, current, requested) -> None:
        assert not is_allowed(current, requested)

    def test_self_transitions_are_illegal(self) -> None:
        for status in S:
            assert not is_allowed(status, status)
            assert status not in ALLOWED_TRANSITIONS[status]

    def test_allowed_next_states_follow_declaration_order(self) -> None:
        assert allowed_next_states(S.IN_GARAGE) == [S.AVAILABLE, S.UNAVAILABLE]
        assert allowed_next_states(S.AVAILABLE) == [S.HIRED, S.IN_GARAGE, S.UNAVAILABLE]


class TestRegister:
    def test_creates_record_and_creation_event(self, db, make_vehicle, service, clock) -> None:
        vehicle = make_vehicle()

        record = service.get_status_record(vehicle.id)
        assert record.current_status == S.AVAILABLE.value
        assert record.version == 0

        events = _events(db, vehicle.id)
        assert len(events) == 1
        assert events[0].sequence_number == 0
        assert events[0].from_status is None
        assert events[0].to_status == S.AVAILABLE.value
        assert events[0].source == TransitionSource.fleet.value

    def test_twice_raises_already_registered(self, make_vehicle, validator, db) -> None:
        vehicle = make_vehicle()
        with pytest.raises(AlreadyRegistered):
            validator.register(db, vehicle.id)

    def test_unknown_fleet_vehicle(self, validator, db) -> None:
        with pytest.raises(VehicleNotFound):
            validator.register(db, uuid.uuid4())


class TestApply:
    def test_applied_transition_bumps_version_and_appends_event(self, db, make_vehicle, service, clock) -> None:
        vehicle = make_vehicle()
        clock.advance(hours=3)

        record = service.update_vehicle_status(
            vehicle.id, S.HIRED, "Walk-in hire", 0, SUPERVISOR, location="Depot A", mileage=1200
        )

        assert record.current_status == S.HIRED.value
        assert record.version == 1
        assert record.current_location == "Depot A"
        assert record.current_mileage == 1200
        assert record.updated_by_id == "user-1"
        assert record.updated_by_role == "supervisor"

        events = _events(db, vehicle.id)
        assert [e.sequence_number for e in events] == [0, 1]
        last = events[-1]
        assert (last.from_status, last.to_status) == (S.AVAILABLE.value, S.HIRED.value)
        assert last.reason == "Walk-in hire"
        assert last.mileage_at_change == 1200
        assert last.actor_role == "supervisor"

    def test_garage_to_hired_lists_legal_targets(self, make_vehicle, transition, service) -> None:
        vehicle = make_vehicle()
        transition(vehicle.id, S.IN_GARAGE)

        with pytest.raises(InvalidTransition) as exc_info:
            service.update_vehicle_status(vehicle.id, S.HIRED, "rush job", 1, SUPERVISOR)

        exc = exc_info.value
        assert exc.current_status == "IN_GARAGE"
        assert exc.requested_status == "HIRED"
        assert exc.allowed_transitions == ["AVAILABLE", "UNAVAILABLE"]

    def test_rejected_transition_writes_nothing(self, db, make_vehicle, transition, service) -> None:
        vehicle = make_vehicle()
        transition(vehicle.id, S.HIRED)

        with pytest.raises(InvalidTransition):
            service.update_vehicle_status(vehicle.id, S.UNAVAILABLE, "broken", 1, SUPERVISOR)

        record = service.get_status_record(vehicle.id)
        assert record.current_status == S.HIRED.value
        assert record.version == 1
        assert len(_events(db, vehicle.id)) == 2

    @pytest.mark.parametrize(
        "actor,source",
        [
            (ActorRef(id="root", role="admin"), TransitionSource.manual),
            (ActorRef(id=None, role="system"), TransitionSource.contract),
            (ActorRef(id=None, role="system"), TransitionSource.system),
        ],
    )
    def test_forbidden_pairs_rejected_for_every_actor(self, make_vehicle, transition, service, actor, source) -> None:
        hired = make_vehicle()
        transition(hired.id, S.HIRED)
        garage = make_vehicle()
        transition(garage.id, S.IN_GARAGE)

        with pytest.raises(InvalidTransition):
            service.update_vehicle_status(hired.id, S.UNAVAILABLE, "override", 1, actor, source=source)
        with pytest.raises(InvalidTransition):
            service.update_vehicle_status(garage.id, S.HIRED, "override", 1, actor, source=source)

    def test_self_transition_rejected(self, make_vehicle, service) -> None:
        vehicle = make_vehicle()
        with pytest.raises(InvalidTransition):
            service.update_vehicle_status(vehicle.id, S.AVAILABLE, "noop", 0, SUPERVISOR)

    def test_stale_version_conflicts(self, db, make_vehicle, service) -> None:
        vehicle = make_vehicle()
        service.update_vehicle_status(vehicle.id, S.HIRED, "first writer", 0, SUPERVISOR)

        with pytest.raises(VersionConflict) as exc_info:
            service.update_vehicle_status(vehicle.id, S.IN_GARAGE, "second writer", 0, SUPERVISOR)

        assert exc_info.value.expected_version == 0
        assert exc_info.value.current_version == 1
        assert len(_events(db, vehicle.id)) == 2

    def test_version_checked_before_transition(self, make_vehicle, service) -> None:
        vehicle = make_vehicle()
        with pytest.raises(VersionConflict):
            service.update_vehicle_status(vehicle.id, S.AVAILABLE, "noop", 7, SUPERVISOR)

    def test_lost_race_on_sequence_maps_to_conflict(self, db, make_vehicle, service, monkeypatch) -> None:
        vehicle = make_vehicle()

        def _duplicate(*args, **kwargs):
            raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

        monkeypatch.setattr(service.validator.timeline, "append", _duplicate)

        with pytest.raises(VersionConflict):
            service.update_vehicle_status(vehicle.id, S.HIRED, "race", 0, SUPERVISOR)
        assert service.get_status_record(vehicle.id).version == 0

    def test_lost_compare_and_set_rolls_back_event(self, db, make_vehicle, service, monkeypatch) -> None:
        vehicle = make_vehicle()
        monkeypatch.setattr(service.validator.store, "compare_and_set", lambda *a, **kw: False)

        with pytest.raises(VersionConflict):
            service.update_vehicle_status(vehicle.id, S.HIRED, "race", 0, SUPERVISOR)

        assert len(_events(db, vehicle.id)) == 1

    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_manual_override_requires_reason(self, make_vehicle, service, reason) -> None:
        vehicle = make_vehicle()
        with pytest.raises(ReasonRequired):
            service.update_vehicle_status(vehicle.id, S.UNAVAILABLE, reason, 0, SUPERVISOR)

    def test_collaborator_sources_do_not_need_reason(self, make_vehicle, service) -> None:
        vehicle = make_vehicle()
        record = service.update_vehicle_status(
            vehicle.id, S.HIRED, None, 0, SUPERVISOR, source=TransitionSource.contract
        )
        assert record.current_status == S.HIRED.value

    def test_unknown_vehicle(self, service) -> None:
        with pytest.raises(VehicleNotFound):
            service.update_vehicle_status(uuid.uuid4(), S.HIRED, "x", 0, SUPERVISOR)

    def test_record_always_matches_last_event(self, db, make_vehicle, transition, service, clock) -> None:
        vehicle = make_vehicle()
        path = [S.HIRED, S.AVAILABLE, S.IN_GARAGE, S.UNAVAILABLE, S.AVAILABLE, S.HIRED, S.IN_GARAGE]
        for status in path:
            clock.advance(hours=1)
            transition(vehicle.id, status)

        events = _events(db, vehicle.id)
        record = service.get_status_record(vehicle.id)
        assert [e.sequence_number for e in events] == list(range(len(path) + 1))
        assert record.version == events[-1].sequence_number
        assert record.current_status == events[-1].to_status
        assert record.status_since.replace(tzinfo=None) == events[-1].occurred_at.replace(tzinfo=None)
        for previous, current in zip(events, events[1:]):
            assert current.from_status == previous.to_status


class TestConcurrentWriters:
    """Two sessions that read the same version race to apply a transition."""

    @pytest.fixture
    def sessions(self, session_factory):
        first, second = session_factory(), session_factory()
        try:
            yield first, second
        finally:
            first.close()
            second.close()

    def test_second_writer_gets_conflict_and_timeline_stays_gap_free(
        self, sessions, session_factory, make_vehicle, clock
    ) -> None:
        first_db, second_db = sessions
        vehicle = make_vehicle()
        store = StatusStore()
        assert store.get(first_db, vehicle.id).version == 0
        assert store.get(second_db, vehicle.id).version == 0

        clock.advance(minutes=5)
        TransitionValidator(clock=clock).apply(first_db, vehicle.id, S.HIRED, SUPERVISOR, "first writer", 0)

        # second_db still holds the version 0 record it read above
        with pytest.raises(VersionConflict) as exc_info:
            TransitionValidator(clock=clock).apply(
                second_db, vehicle.id, S.IN_GARAGE, SUPERVISOR, "second writer", 0
            )
        assert exc_info.value.expected_version == 0
        assert exc_info.value.current_version == 1

        check = session_factory()
        try:
            record = store.get(check, vehicle.id)
            events = _events(check, vehicle.id)
        finally:
            check.close()
        assert (record.current_status, record.version) == (S.HIRED.value, 1)
        assert [e.sequence_number for e in events] == [0, 1]
        assert [e.reason for e in events] == [None, "first writer"]

    def test_stale_compare_and_set_does_not_overwrite(self, sessions, session_factory, make_vehicle, clock) -> None:
        first_db, second_db = sessions
        vehicle = make_vehicle()
        store = StatusStore()
        store.get(first_db, vehicle.id)
        store.get(second_db, vehicle.id)

        TransitionValidator(clock=clock).apply(first_db, vehicle.id, S.HIRED, SUPERVISOR, "first writer", 0)

        assert not store.compare_and_set(second_db, vehicle.id, 0, S.IN_GARAGE, clock())
        second_db.rollback()

        check = session_factory()
        try:
            record = store.get(check, vehicle.id)
        finally:
            check.close()
        assert (record.current_status, record.version) == (S.HIRED.value, 1)

    def test_registration_race_reports_already_registered(self, sessions, make_vehicle, clock, monkeypatch) -> None:
        first_db, second_db = sessions
        vehicle = make_vehicle(register=False)
        validator = TransitionValidator(clock=clock)
        validator.register(first_db, vehicle.id)

        # The existence check already passed for the second writer
        second = TransitionValidator(clock=clock)
        monkeypatch.setattr(second.store, "find", lambda db, vehicle_id: None)
        with pytest.raises(AlreadyRegistered):
            second.register(second_db, vehicle.id)
