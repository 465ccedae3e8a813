"""Pytest configuration and shared fixtures."""

import os
import uuid
from datetime import datetime, timedelta
from typing import Optional

import pytest
import pytz

# Settings are read at import time; keep the app off the on-disk dev database
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("RATE_LIMIT", "100000/minute")
os.environ.setdefault("JWT_SECRET", "test-secret")

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fleetstatus.auth.security import create_access_token
from fleetstatus.db import Base, get_db
from fleetstatus.main import app
from fleetstatus.models.models import Vehicle
from fleetstatus.schemas.tracking import TransitionSource, VehicleStatus
from fleetstatus.services.aggregation_cache import AggregationCache
from fleetstatus.services.query_service import QueryService
from fleetstatus.services.transitions import ActorRef, TransitionValidator

START = datetime(2024, 1, 1, tzinfo=pytz.UTC)
SUPERVISOR = ActorRef(id="user-1", role="supervisor")


class FakeClock:
    """Deterministic clock; advance() moves it forward."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, when: datetime) -> datetime:
        self.now = when
        return self.now


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def cache(monotonic):
    return AggregationCache(ttl_seconds=300, monotonic=monotonic)


@pytest.fixture
def service(db, cache, clock):
    return QueryService(db, cache, clock=clock)


@pytest.fixture
def validator(clock):
    return TransitionValidator(clock=clock)


@pytest.fixture
def make_vehicle(db, clock):
    """Insert a fleet vehicle; optionally register it for status tracking."""
    counter = {"n": 0}

    def _make(
        registration_number: Optional[str] = None,
        register: bool = True,
        make: str = "Toyota",
        model: str = "Corolla",
        fuel_level: Optional[float] = 80.0,
        is_active: bool = True,
    ) -> Vehicle:
        counter["n"] += 1
        vehicle = Vehicle(
            id=uuid.uuid4(),
            registration_number=registration_number or f"REG-{counter['n']:03d}",
            make=make,
            model=model,
            fuel_level=fuel_level,
            is_active=is_active,
            created_at=clock(),
        )
        db.add(vehicle)
        db.commit()
        if register:
            TransitionValidator(clock=clock).register(db, vehicle.id)
        return vehicle

    return _make


@pytest.fixture
def transition(service):
    """Apply one transition with the record's current version."""

    def _apply(vehicle_id, status: VehicleStatus, source: TransitionSource = TransitionSource.manual, **kwargs):
        record = service.get_status_record(vehicle_id)
        kwargs.setdefault("reason", "test")
        return service.update_vehicle_status(
            vehicle_id,
            status,
            kwargs.pop("reason"),
            record.version,
            kwargs.pop("actor", SUPERVISOR),
            source=source,
            **kwargs,
        )

    return _apply


@pytest.fixture
def client(session_factory, cache, clock):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    previous_cache, previous_clock = app.state.aggregation_cache, app.state.clock
    app.state.aggregation_cache = cache
    app.state.clock = clock
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        app.state.aggregation_cache = previous_cache
        app.state.clock = previous_clock


def auth_header(*roles: str, actor_id: str = "user-1") -> dict:
    return {"Authorization": f"Bearer {create_access_token(actor_id, list(roles))}"}


@pytest.fixture
def supervisor_headers():
    return auth_header("supervisor")


@pytest.fixture
def system_headers():
    return auth_header("system", actor_id="svc-contracts")


@pytest.fixture
def staff_headers():
    return auth_header("staff", actor_id="user-2")
