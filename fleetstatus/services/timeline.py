"""
Timeline log.
Append-only, per-vehicle ordered history of status transitions.
"""
import base64
import binascii
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from ..exceptions import InvalidCursor, SequenceViolation
from ..models.models import StatusTransitionEvent

_CURSOR_PREFIX = "seq:"


def encode_cursor(sequence_number: int) -> str:
    raw = f"{_CURSOR_PREFIX}{sequence_number}".encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_cursor(cursor: str) -> int:
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode()).decode()
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise InvalidCursor(f"Malformed cursor: {cursor!r}")
    if not raw.startswith(_CURSOR_PREFIX):
        raise InvalidCursor(f"Malformed cursor: {cursor!r}")
    try:
        value = int(raw[len(_CURSOR_PREFIX):])
    except ValueError:
        raise InvalidCursor(f"Malformed cursor: {cursor!r}")
    if value < 0:
        raise InvalidCursor(f"Malformed cursor: {cursor!r}")
    return value


@dataclass
class TimelinePage:
    events: List[StatusTransitionEvent]
    next_cursor: Optional[str] = None


class TimelineLog:
    def last_sequence(self, db: Session, vehicle_id: uuid.UUID) -> Optional[int]:
        return (
            db.query(func.max(StatusTransitionEvent.sequence_number))
            .filter(StatusTransitionEvent.vehicle_id == vehicle_id)
            .scalar()
        )

    def append(self, db: Session, event: StatusTransitionEvent) -> StatusTransitionEvent:
        """
        Append an event inside the caller's transaction.

        The event is flushed immediately so it is written before the status
        record update that follows it. Writers are serialized per vehicle by the
        status version check; this only verifies the sequence invariant.

        Raises:
            SequenceViolation: sequence_number is not exactly last + 1 (0 for the first event)
        """
        last = self.last_sequence(db, event.vehicle_id)
        expected = 0 if last is None else last + 1
        if event.sequence_number != expected:
            raise SequenceViolation(
                vehicle_id=event.vehicle_id,
                expected=expected,
                actual=event.sequence_number,
            )
        db.add(event)
        db.flush()
        return event

    def query(
        self,
        db: Session,
        vehicle_id: uuid.UUID,
        from_time: Optional[datetime] = None,
        to_time: Optional[datetime] = None,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> TimelinePage:
        """
        One page of a vehicle's events, ascending by sequence_number.

        Args:
            from_time: Inclusive lower bound on occurred_at
            to_time: Inclusive upper bound on occurred_at
            limit: Page size
            cursor: next_cursor from a previous page; resumes after it

        Returns:
            TimelinePage whose next_cursor is None on the last page
        """
        if limit <= 0:
            raise ValueError("limit must be positive")
        query = db.query(StatusTransitionEvent).filter(StatusTransitionEvent.vehicle_id == vehicle_id)
        if from_time is not None:
            query = query.filter(StatusTransitionEvent.occurred_at >= from_time)
        if to_time is not None:
            query = query.filter(StatusTransitionEvent.occurred_at <= to_time)
        if cursor:
            query = query.filter(StatusTransitionEvent.sequence_number > decode_cursor(cursor))
        rows = query.order_by(StatusTransitionEvent.sequence_number.asc()).limit(limit + 1).all()

        next_cursor = None
        if len(rows) > limit:
            rows = rows[:limit]
            next_cursor = encode_cursor(rows[-1].sequence_number)
        return TimelinePage(events=rows, next_cursor=next_cursor)

    def iter_events(
        self,
        db: Session,
        vehicle_id: uuid.UUID,
        from_time: Optional[datetime] = None,
        to_time: Optional[datetime] = None,
        batch_size: int = 200,
        cursor: Optional[str] = None,
    ) -> Iterator[StatusTransitionEvent]:
        """Lazily page through a vehicle's events; stops after the last page."""
        while True:
            page = self.query(db, vehicle_id, from_time, to_time, limit=batch_size, cursor=cursor)
            yield from page.events
            if page.next_cursor is None:
                return
            cursor = page.next_cursor

    def recent(self, db: Session, limit: int = 50) -> List[StatusTransitionEvent]:
        """Latest events across the fleet, newest first."""
        return (
            db.query(StatusTransitionEvent)
            .order_by(StatusTransitionEvent.occurred_at.desc(), StatusTransitionEvent.sequence_number.desc())
            .limit(limit)
            .all()
        )

    def carry_in(
        self,
        db: Session,
        at: datetime,
        vehicle_ids: Optional[Iterable[uuid.UUID]] = None,
    ) -> Dict[uuid.UUID, StatusTransitionEvent]:
        """
        Latest event with occurred_at <= ``at`` for each vehicle.

        Vehicles created after ``at`` have no entry. One grouped query.
        """
        latest = db.query(
            StatusTransitionEvent.vehicle_id.label("vehicle_id"),
            func.max(StatusTransitionEvent.sequence_number).label("sequence_number"),
        ).filter(StatusTransitionEvent.occurred_at <= at)
        if vehicle_ids is not None:
            latest = latest.filter(StatusTransitionEvent.vehicle_id.in_(list(vehicle_ids)))
        latest = latest.group_by(StatusTransitionEvent.vehicle_id).subquery()

        rows = (
            db.query(StatusTransitionEvent)
            .join(
                latest,
                and_(
                    StatusTransitionEvent.vehicle_id == latest.c.vehicle_id,
                    StatusTransitionEvent.sequence_number == latest.c.sequence_number,
                ),
            )
            .all()
        )
        return {row.vehicle_id: row for row in rows}

    def window_events(
        self,
        db: Session,
        start: datetime,
        end: datetime,
        vehicle_ids: Optional[Iterable[uuid.UUID]] = None,
    ) -> Dict[uuid.UUID, List[StatusTransitionEvent]]:
        """Events with occurred_at in (start, end], grouped per vehicle in sequence order."""
        query = db.query(StatusTransitionEvent).filter(
            StatusTransitionEvent.occurred_at > start,
            StatusTransitionEvent.occurred_at <= end,
        )
        if vehicle_ids is not None:
            query = query.filter(StatusTransitionEvent.vehicle_id.in_(list(vehicle_ids)))
        rows = query.order_by(
            StatusTransitionEvent.vehicle_id.asc(),
            StatusTransitionEvent.sequence_number.asc(),
        ).all()

        grouped: Dict[uuid.UUID, List[StatusTransitionEvent]] = {}
        for row in rows:
            grouped.setdefault(row.vehicle_id, []).append(row)
        return grouped
