"""HTTP controller layer for the primary and secondary selection rounds."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from turnkeeper.controllers.dependencies import (
    get_selection_service,
    serialize_events,
    to_http_exception,
)
from turnkeeper.domain.errors import EngineError
from turnkeeper.domain.models import (
    Complete,
    InProgress,
    SelectionRound,
    SelectionStatus,
    TurnEndReason,
)
from turnkeeper.services.selection_service import SelectionService
from turnkeeper.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["selection"])

_BASE_PATH = "/organizations/{organization_id}/selection/{year}/{selection_round}"


class AdvanceTurnRequest(BaseModel):
    """Ends the active turn; ``family_group`` guards against advancing someone else's turn."""

    family_group: str | None = None
    reason: TurnEndReason = TurnEndReason.COMPLETED


class ExtendTurnRequest(BaseModel):
    family_group: str = Field(min_length=1)
    extended_until: datetime
    reason: str | None = None


class GroupStatusResponse(BaseModel):
    family_group: str
    position: int = Field(gt=0)
    state: str
    remaining: int = Field(ge=0)
    deadline: datetime | None = None
    days_remaining: int | None = None
    progress_text: str | None = None


class SelectionStatusResponse(BaseModel):
    selection_round: SelectionRound
    phase: str
    current_group: str | None = None
    turn_started_at: datetime | None = None
    completed_at: datetime | None = None
    passed_groups: list[str] = Field(default_factory=list)
    order: list[str] = Field(default_factory=list)
    board: list[GroupStatusResponse] = Field(default_factory=list)
    events: list[dict[str, Any]] = Field(default_factory=list)


class ProjectedTurnResponse(BaseModel):
    family_group: str
    starts_at: datetime
    ends_at: datetime


def _status_response(
    service: SelectionService,
    organization_id: str,
    year: int,
    selection_round: SelectionRound,
    selection_status: SelectionStatus,
    events: list[dict[str, Any]] | None = None,
) -> SelectionStatusResponse:
    machine = service.machine(selection_round)
    phase = selection_status.phase
    return SelectionStatusResponse(
        selection_round=selection_round,
        phase=(
            "in_progress"
            if isinstance(phase, InProgress)
            else "complete" if isinstance(phase, Complete) else "not_started"
        ),
        current_group=phase.current_group if isinstance(phase, InProgress) else None,
        turn_started_at=phase.turn_started_at if isinstance(phase, InProgress) else None,
        completed_at=phase.completed_at if isinstance(phase, Complete) else None,
        passed_groups=list(selection_status.passed_groups),
        order=list(machine.order_for_year(organization_id, year)),
        board=[
            GroupStatusResponse(**vars(row))
            for row in machine.status_board(organization_id, year)
        ],
        events=events or [],
    )


@router.get(_BASE_PATH, response_model=SelectionStatusResponse)
async def get_selection_status(
    organization_id: str,
    year: int,
    selection_round: SelectionRound,
    service: SelectionService = Depends(get_selection_service),
) -> SelectionStatusResponse:
    """Read the round, expiring an overdue turn first."""
    try:
        transition = service.machine(selection_round).refresh(organization_id, year)
        return _status_response(
            service,
            organization_id,
            year,
            selection_round,
            transition.status,
            serialize_events(transition.events),
        )
    except EngineError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected selection status failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load selection status",
        ) from exc


@router.post(f"{_BASE_PATH}/start", response_model=SelectionStatusResponse)
async def start_selection(
    organization_id: str,
    year: int,
    selection_round: SelectionRound,
    service: SelectionService = Depends(get_selection_service),
) -> SelectionStatusResponse:
    try:
        transition = service.machine(selection_round).start(organization_id, year)
        return _status_response(
            service,
            organization_id,
            year,
            selection_round,
            transition.status,
            serialize_events(transition.events),
        )
    except EngineError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected selection start failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start selection",
        ) from exc


@router.post(f"{_BASE_PATH}/advance", response_model=SelectionStatusResponse)
async def advance_selection(
    organization_id: str,
    year: int,
    selection_round: SelectionRound,
    payload: AdvanceTurnRequest,
    service: SelectionService = Depends(get_selection_service),
) -> SelectionStatusResponse:
    try:
        transition = service.machine(selection_round).advance(
            organization_id,
            year,
            payload.reason,
            expected_group=payload.family_group,
        )
        return _status_response(
            service,
            organization_id,
            year,
            selection_round,
            transition.status,
            serialize_events(transition.events),
        )
    except EngineError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected selection advance failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to advance selection",
        ) from exc


@router.post(f"{_BASE_PATH}/extensions", status_code=status.HTTP_201_CREATED)
async def extend_turn(
    organization_id: str,
    year: int,
    selection_round: SelectionRound,
    payload: ExtendTurnRequest,
    service: SelectionService = Depends(get_selection_service),
) -> dict[str, Any]:
    try:
        extension = service.machine(selection_round).extend_turn(
            organization_id,
            year,
            payload.family_group,
            payload.extended_until,
            payload.reason,
        )
        return {
            "family_group": extension.family_group,
            "original_end": extension.original_end,
            "extended_until": extension.extended_until,
            "reason": extension.reason,
        }
    except EngineError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected turn extension failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to extend turn",
        ) from exc


@router.get(f"{_BASE_PATH}/schedule", response_model=list[ProjectedTurnResponse])
async def get_turn_schedule(
    organization_id: str,
    year: int,
    selection_round: SelectionRound,
    service: SelectionService = Depends(get_selection_service),
) -> list[ProjectedTurnResponse]:
    try:
        return [
            ProjectedTurnResponse(**vars(turn))
            for turn in service.machine(selection_round).schedule(organization_id, year)
        ]
    except EngineError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected schedule projection failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to project turn schedule",
        ) from exc


@router.get(f"{_BASE_PATH}/reminder")
async def get_pending_reminder(
    organization_id: str,
    year: int,
    selection_round: SelectionRound,
    service: SelectionService = Depends(get_selection_service),
) -> dict[str, Any]:
    """Turn-ending-soon event for the host to deliver, if one is due."""
    try:
        reminder = service.machine(selection_round).pending_reminder(organization_id, year)
        return {"reminder": serialize_events([reminder])[0] if reminder else None}
    except EngineError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected reminder lookup failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to evaluate reminder",
        ) from exc
