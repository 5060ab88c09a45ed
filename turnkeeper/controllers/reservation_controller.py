"""HTTP controller layer for booking, editing and deleting reservations."""

from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, model_validator

from turnkeeper.controllers.dependencies import (
    get_reservation_service,
    serialize_events,
    to_http_exception,
)
from turnkeeper.domain.errors import EngineError
from turnkeeper.domain.models import Reservation
from turnkeeper.services.reservation_service import ReservationService
from turnkeeper.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["reservations"])


class BookingRequest(BaseModel):
    family_group: str = Field(min_length=1)
    start_date: date
    end_date: date
    guests: float = Field(default=0.0, ge=0.0)
    daily_occupancy: dict[date, float] | None = None
    open_booking: bool = False

    @model_validator(mode="after")
    def validate_range(self) -> "BookingRequest":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class EditReservationRequest(BaseModel):
    start_date: date
    end_date: date
    daily_occupancy: dict[date, float] | None = None


class ReservationResponse(BaseModel):
    reservation_id: int
    organization_id: str
    family_group: str
    start_date: date
    end_date: date
    nights: int
    daily_occupancy: dict[date, float]
    total_cost: float
    allocated_start: date | None = None
    allocated_end: date | None = None
    period_number: int | None = None
    selection_round: str | None = None
    rotation_year: int | None = None
    events: list[dict[str, Any]] = Field(default_factory=list)


def _reservation_response(
    reservation: Reservation,
    events: list[dict[str, Any]] | None = None,
) -> ReservationResponse:
    return ReservationResponse(
        reservation_id=int(reservation.reservation_id),
        organization_id=reservation.organization_id,
        family_group=reservation.family_group,
        start_date=reservation.start_date,
        end_date=reservation.end_date,
        nights=reservation.nights,
        daily_occupancy=dict(reservation.daily_occupancy),
        total_cost=reservation.total_cost,
        allocated_start=reservation.allocated_start,
        allocated_end=reservation.allocated_end,
        period_number=reservation.period_number,
        selection_round=reservation.selection_round.value if reservation.selection_round else None,
        rotation_year=reservation.rotation_year,
        events=events or [],
    )


@router.post(
    "/organizations/{organization_id}/reservations",
    response_model=ReservationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_reservation(
    organization_id: str,
    payload: BookingRequest,
    service: ReservationService = Depends(get_reservation_service),
) -> ReservationResponse:
    try:
        result = service.book(
            organization_id,
            payload.family_group,
            payload.start_date,
            payload.end_date,
            guests=payload.guests,
            daily_occupancy=payload.daily_occupancy,
            open_booking=payload.open_booking,
        )
        return _reservation_response(result.reservation, serialize_events(result.events))
    except EngineError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected booking failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create reservation",
        ) from exc


@router.get("/reservations/{reservation_id}", response_model=ReservationResponse)
async def get_reservation(
    reservation_id: int,
    service: ReservationService = Depends(get_reservation_service),
) -> ReservationResponse:
    try:
        return _reservation_response(service.get(reservation_id))
    except EngineError as exc:
        raise to_http_exception(exc) from exc


@router.patch("/reservations/{reservation_id}", response_model=ReservationResponse)
async def edit_reservation(
    reservation_id: int,
    payload: EditReservationRequest,
    service: ReservationService = Depends(get_reservation_service),
) -> ReservationResponse:
    try:
        reservation = service.edit(
            reservation_id,
            payload.start_date,
            payload.end_date,
            daily_occupancy=payload.daily_occupancy,
        )
        return _reservation_response(reservation)
    except EngineError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected reservation edit failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to edit reservation",
        ) from exc


@router.delete("/reservations/{reservation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_reservation(
    reservation_id: int,
    service: ReservationService = Depends(get_reservation_service),
) -> None:
    try:
        service.delete(reservation_id)
    except EngineError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected reservation delete failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to delete reservation",
        ) from exc
