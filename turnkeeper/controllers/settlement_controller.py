"""HTTP controller layer for cost splits, split payments and season summaries."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator

from turnkeeper.controllers.dependencies import (
    get_settlement_engine,
    get_summary_service,
    serialize_events,
    to_http_exception,
    violation_detail,
)
from turnkeeper.domain.errors import EngineError
from turnkeeper.domain.models import CostSplit, SplitShare
from turnkeeper.services.season_summary_service import SeasonSummaryService
from turnkeeper.services.settlement_service import PartyAllocation, SettlementEngine
from turnkeeper.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["settlement"])


class PartyAllocationRequest(BaseModel):
    party: str = Field(min_length=1)
    daily_guests: dict[date, float]


class SplitRequest(BaseModel):
    """Recipients take guest-nights from the source; the source keeps the rest unless given."""

    recipients: list[PartyAllocationRequest]
    source_party: str | None = None
    source_guests: dict[date, float] | None = None
    total_amount: float | None = Field(default=None, ge=0.0)

    @field_validator("recipients")
    @classmethod
    def validate_unique_parties(
        cls,
        value: list[PartyAllocationRequest],
    ) -> list[PartyAllocationRequest]:
        parties = [item.party for item in value]
        if len(parties) != len(set(parties)):
            raise ValueError("recipient parties must be unique")
        return value

    def allocations(self) -> list[PartyAllocation]:
        return [PartyAllocation(item.party, item.daily_guests) for item in self.recipients]


class PaymentRequest(BaseModel):
    amount: float = Field(gt=0.0)


class ShareResponse(BaseModel):
    share_id: int | None = None
    party: str
    daily_guests: dict[date, float]
    guest_nights: float
    amount: float
    amount_paid: float
    balance_due: float
    payment_status: str


class SplitPreviewResponse(BaseModel):
    reservation_id: int
    total_amount: float
    per_diem_rate: float
    source: ShareResponse
    recipients: list[ShareResponse]
    is_valid: bool
    violations: list[dict[str, Any]]


class SplitResponse(BaseModel):
    split_id: int
    reservation_id: int
    total_amount: float
    per_diem_rate: float
    created_at: datetime | None = None
    source: ShareResponse
    recipients: list[ShareResponse]
    amount_collected: float
    events: list[dict[str, Any]] = Field(default_factory=list)


def _share_response(share: SplitShare) -> ShareResponse:
    return ShareResponse(
        share_id=share.share_id,
        party=share.party,
        daily_guests=dict(share.daily_guests),
        guest_nights=share.guest_nights,
        amount=round(share.amount, 2),
        amount_paid=round(share.amount_paid, 2),
        balance_due=round(share.balance_due, 2),
        payment_status=share.payment_status,
    )


def _split_response(split: CostSplit, events: list[dict[str, Any]] | None = None) -> SplitResponse:
    return SplitResponse(
        split_id=int(split.split_id),
        reservation_id=split.reservation_id,
        total_amount=split.total_amount,
        per_diem_rate=split.per_diem_rate,
        created_at=split.created_at,
        source=_share_response(split.source),
        recipients=[_share_response(share) for share in split.recipients],
        amount_collected=round(split.amount_collected, 2),
        events=events or [],
    )


@router.post(
    "/reservations/{reservation_id}/splits/preview",
    response_model=SplitPreviewResponse,
)
async def preview_split(
    reservation_id: int,
    payload: SplitRequest,
    engine: SettlementEngine = Depends(get_settlement_engine),
) -> SplitPreviewResponse:
    """Price and validate a split without writing anything."""
    try:
        plan = engine.preview(
            reservation_id,
            payload.allocations(),
            source_party=payload.source_party,
            source_guests=payload.source_guests,
            total_amount=payload.total_amount,
        )
        return SplitPreviewResponse(
            reservation_id=reservation_id,
            total_amount=plan.total_amount,
            per_diem_rate=plan.per_diem_rate,
            source=_share_response(plan.source),
            recipients=[_share_response(share) for share in plan.recipients],
            is_valid=plan.is_valid,
            violations=[violation_detail(item) for item in plan.violations],
        )
    except EngineError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected split preview failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to preview cost split",
        ) from exc


@router.post(
    "/reservations/{reservation_id}/splits",
    response_model=SplitResponse,
    status_code=status.HTTP_201_CREATED,
)
async def commit_split(
    reservation_id: int,
    payload: SplitRequest,
    engine: SettlementEngine = Depends(get_settlement_engine),
) -> SplitResponse:
    try:
        split, event = engine.commit(
            reservation_id,
            payload.allocations(),
            source_party=payload.source_party,
            source_guests=payload.source_guests,
            total_amount=payload.total_amount,
        )
        return _split_response(split, serialize_events([event]))
    except EngineError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected split commit failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to commit cost split",
        ) from exc


@router.get("/organizations/{organization_id}/splits", response_model=list[SplitResponse])
async def list_splits(
    organization_id: str,
    reservation_id: int | None = Query(default=None, gt=0),
    engine: SettlementEngine = Depends(get_settlement_engine),
) -> list[SplitResponse]:
    return [_split_response(split) for split in engine.list_splits(organization_id, reservation_id)]


@router.post(
    "/splits/{split_id}/shares/{share_id}/payments",
    response_model=ShareResponse,
)
async def record_payment(
    split_id: int,
    share_id: int,
    payload: PaymentRequest,
    engine: SettlementEngine = Depends(get_settlement_engine),
) -> ShareResponse:
    try:
        return _share_response(engine.record_payment(split_id, share_id, payload.amount))
    except EngineError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected split payment failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to record payment",
        ) from exc


@router.delete("/splits/{split_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_split(
    split_id: int,
    engine: SettlementEngine = Depends(get_settlement_engine),
) -> None:
    try:
        engine.delete_split(split_id)
    except EngineError as exc:
        raise to_http_exception(exc) from exc


@router.get("/organizations/{organization_id}/seasons/{year}/summary")
async def get_season_summary(
    organization_id: str,
    year: int,
    service: SeasonSummaryService = Depends(get_summary_service),
) -> list[dict[str, Any]]:
    try:
        return service.summarize(organization_id, year)
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected season summary failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to build season summary",
        ) from exc
