"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any, Iterable

from fastapi import HTTPException, Request, status

from turnkeeper.domain.errors import (
    BookingRejectedError,
    CapExceededError,
    ConfigError,
    EngineError,
    NotFoundError,
    SelectionStateError,
    SettlementValidationError,
)
from turnkeeper.domain.events import EngineEvent
from turnkeeper.services.reservation_service import ReservationService
from turnkeeper.services.rotation_service import RotationService
from turnkeeper.services.season_summary_service import SeasonSummaryService
from turnkeeper.services.selection_service import SelectionService
from turnkeeper.services.settlement_service import DayMismatch, SettlementEngine
from turnkeeper.services.usage_ledger import UsageLedger
from turnkeeper.services.window_service import WindowService


def _service(request: Request, attribute: str, label: str) -> Any:
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_rotation_service(request: Request) -> RotationService:
    return _service(request, "rotation_service", "Rotation service")


def get_window_service(request: Request) -> WindowService:
    return _service(request, "window_service", "Window service")


def get_usage_ledger(request: Request) -> UsageLedger:
    return _service(request, "usage_ledger", "Usage ledger")


def get_selection_service(request: Request) -> SelectionService:
    return _service(request, "selection_service", "Selection service")


def get_reservation_service(request: Request) -> ReservationService:
    return _service(request, "reservation_service", "Reservation service")


def get_settlement_engine(request: Request) -> SettlementEngine:
    return _service(request, "settlement_engine", "Settlement engine")


def get_summary_service(request: Request) -> SeasonSummaryService:
    return _service(request, "summary_service", "Season summary service")


def serialize_events(events: Iterable[EngineEvent]) -> list[dict[str, Any]]:
    return [{"type": type(event).__name__, **asdict(event)} for event in events]


def violation_detail(violation: object) -> dict[str, Any]:
    if isinstance(violation, DayMismatch):
        return {
            "kind": "day_mismatch",
            "date": violation.day.isoformat(),
            "expected": violation.expected,
            "actual": violation.actual,
            "message": violation.message,
        }
    return {
        "kind": "structural",
        "party": getattr(violation, "party", None),
        "message": getattr(violation, "message", str(violation)),
    }


def to_http_exception(exc: EngineError) -> HTTPException:
    """Map an engine rejection onto its HTTP status with a structured detail."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ConfigError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, BookingRejectedError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": type(exc).__name__, "reasons": list(exc.reasons)},
        )
    if isinstance(exc, CapExceededError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": type(exc).__name__,
                "family_group": exc.family_group,
                "selection_round": exc.selection_round,
                "cap": exc.cap,
                "message": str(exc),
            },
        )
    if isinstance(exc, SelectionStateError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, SettlementValidationError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": type(exc).__name__,
                "violations": [violation_detail(item) for item in exc.violations],
            },
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
