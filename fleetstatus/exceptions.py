"""Exception hierarchy for vehicle status tracking."""

from typing import List, Optional


class TrackingError(Exception):
    """Base exception for all status-tracking errors."""


class VehicleNotFound(TrackingError):
    """Unknown vehicle id (no status record, or no fleet vehicle)."""

    def __init__(self, vehicle_id) -> None:
        self.vehicle_id = vehicle_id
        super().__init__(f"Vehicle {vehicle_id} not found")


class AlreadyRegistered(TrackingError):
    """A status record already exists for the vehicle."""

    def __init__(self, vehicle_id) -> None:
        self.vehicle_id = vehicle_id
        super().__init__(f"Vehicle {vehicle_id} already has a status record")


class InvalidTransition(TrackingError):
    """Requested transition is not in the lifecycle table.

    Not retryable with the same target; ``allowed_transitions`` lists the
    states that are legal from ``current_status``.
    """

    def __init__(
        self,
        *,
        vehicle_id,
        current_status: str,
        requested_status: str,
        allowed_transitions: List[str],
    ) -> None:
        self.vehicle_id = vehicle_id
        self.current_status = current_status
        self.requested_status = requested_status
        self.allowed_transitions = allowed_transitions
        super().__init__(
            f"Cannot change status from {current_status} to {requested_status}; "
            f"allowed: {', '.join(allowed_transitions) or 'none'}"
        )


class VersionConflict(TrackingError):
    """Record was modified concurrently; refetch and retry."""

    def __init__(
        self,
        *,
        vehicle_id,
        expected_version: int,
        current_version: Optional[int] = None,
    ) -> None:
        self.vehicle_id = vehicle_id
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(
            f"Version conflict for vehicle {vehicle_id}: expected {expected_version}, "
            f"current {current_version if current_version is not None else 'unknown'}"
        )


class ReasonRequired(TrackingError):
    """Manual overrides must carry a reason."""


class SequenceViolation(TrackingError):
    """An event's sequence number does not directly follow the last stored one."""

    def __init__(self, *, vehicle_id, expected: int, actual: int) -> None:
        self.vehicle_id = vehicle_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Sequence violation for vehicle {vehicle_id}: expected {expected}, got {actual}"
        )


class ImmutableEvent(TrackingError):
    """Status transition events cannot be edited or removed."""


class InvalidCursor(TrackingError):
    """Timeline cursor could not be decoded."""


class AggregationDegraded(TrackingError):
    """Backing store for analytics is unreachable.

    Raised by the aggregation engine; the aggregation cache catches it and
    serves the last-known-good result tagged as stale.
    """


class InvalidWindow(TrackingError):
    """Aggregation window outside the configured bounds."""
