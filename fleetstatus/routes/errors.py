"""
HTTP mapping for status-tracking errors.
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..exceptions import (
    AggregationDegraded,
    AlreadyRegistered,
    ImmutableEvent,
    InvalidCursor,
    InvalidTransition,
    InvalidWindow,
    ReasonRequired,
    SequenceViolation,
    VehicleNotFound,
    VersionConflict,
)


async def _invalid_transition(request: Request, exc: InvalidTransition):
    return JSONResponse(
        status_code=409,
        content={
            "error": "InvalidTransition",
            "detail": str(exc),
            "current_status": exc.current_status,
            "requested_status": exc.requested_status,
            "allowed_transitions": exc.allowed_transitions,
        },
    )


async def _version_conflict(request: Request, exc: VersionConflict):
    return JSONResponse(
        status_code=409,
        content={
            "error": "VersionConflict",
            "detail": str(exc),
            "expected_version": exc.expected_version,
            "current_version": exc.current_version,
        },
    )


def _simple(status_code: int, error: str):
    async def _handler(request: Request, exc: Exception):
        return JSONResponse(status_code=status_code, content={"error": error, "detail": str(exc)})

    return _handler


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(InvalidTransition, _invalid_transition)
    app.add_exception_handler(VersionConflict, _version_conflict)
    app.add_exception_handler(VehicleNotFound, _simple(404, "NotFound"))
    app.add_exception_handler(AlreadyRegistered, _simple(409, "AlreadyRegistered"))
    app.add_exception_handler(ReasonRequired, _simple(422, "ReasonRequired"))
    app.add_exception_handler(InvalidCursor, _simple(422, "InvalidCursor"))
    app.add_exception_handler(InvalidWindow, _simple(422, "InvalidWindow"))
    app.add_exception_handler(AggregationDegraded, _simple(503, "AggregationDegraded"))
    # Invariant breaches: the transaction was rolled back, nothing was applied
    app.add_exception_handler(SequenceViolation, _simple(500, "SequenceViolation"))
    app.add_exception_handler(ImmutableEvent, _simple(500, "ImmutableEvent"))
