import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Integer,
    Float,
    Text,
    Uuid,
    UniqueConstraint,
    Index,
    event,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base
from ..exceptions import ImmutableEvent


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)


class Vehicle(Base):
    """Fleet vehicles. Owned by the fleet module; read-only for status tracking."""
    __tablename__ = "vehicles"

    id: Mapped[uuid.UUID] = uuid_pk()
    registration_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True, index=True)
    make: Mapped[Optional[str]] = mapped_column(String(100))
    model: Mapped[Optional[str]] = mapped_column(String(100))
    fuel_level: Mapped[Optional[float]] = mapped_column(Float)  # Percentage 0-100
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    status_record = relationship("VehicleStatusRecord", back_populates="vehicle", uselist=False)


class VehicleStatusRecord(Base):
    """Current operational status, one row per vehicle"""
    __tablename__ = "vehicle_status_records"

    vehicle_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("vehicles.id"), primary_key=True)
    current_status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)  # AVAILABLE|HIRED|IN_GARAGE|UNAVAILABLE
    status_since: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)  # occurred_at of the latest event
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # sequence_number of the latest event
    current_location: Mapped[Optional[str]] = mapped_column(String(255))
    current_mileage: Mapped[Optional[int]] = mapped_column(Integer)
    updated_by_id: Mapped[Optional[str]] = mapped_column(String(64))
    updated_by_role: Mapped[Optional[str]] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    vehicle = relationship("Vehicle", back_populates="status_record")


class StatusTransitionEvent(Base):
    """Append-only status transition log"""
    __tablename__ = "status_transition_events"

    event_id: Mapped[uuid.UUID] = uuid_pk()
    vehicle_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("vehicles.id"), nullable=False, index=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)  # 0 for the creation event
    from_status: Mapped[Optional[str]] = mapped_column(String(20))  # NULL for the creation event
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64))
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))  # admin|supervisor|system|...
    source: Mapped[str] = mapped_column(String(20), nullable=False)  # manual|contract|garage|fleet|system
    reason: Mapped[Optional[str]] = mapped_column(Text)
    location: Mapped[Optional[str]] = mapped_column(String(255))
    mileage_at_change: Mapped[Optional[int]] = mapped_column(Integer)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("vehicle_id", "sequence_number", name="uq_status_event_vehicle_seq"),
        Index("idx_status_event_vehicle_time", "vehicle_id", "occurred_at"),
    )


@event.listens_for(StatusTransitionEvent, "before_update")
def _reject_event_update(mapper, connection, target):
    raise ImmutableEvent(f"Status event {target.event_id} is immutable")


@event.listens_for(StatusTransitionEvent, "before_delete")
def _reject_event_delete(mapper, connection, target):
    raise ImmutableEvent(f"Status event {target.event_id} cannot be deleted")
