"""HTTP controller layer for rotation order, windows and usage."""

from __future__ import annotations

from datetime import date, time

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator

from turnkeeper.controllers.dependencies import (
    get_rotation_service,
    get_usage_ledger,
    get_window_service,
    to_http_exception,
)
from turnkeeper.domain.errors import EngineError
from turnkeeper.domain.models import (
    PartialBlockPolicy,
    RotationConfig,
    RotationDirection,
    RotationMode,
    WindowTermination,
)
from turnkeeper.services.rotation_service import RotationService
from turnkeeper.services.usage_ledger import UsageLedger
from turnkeeper.services.window_service import WindowService
from turnkeeper.utils.config import get_settings
from turnkeeper.utils.logger import get_logger


logger = get_logger(__name__)
settings = get_settings()

router = APIRouter(tags=["rotation"])


class RotationConfigRequest(BaseModel):
    """Input DTO; omitted fields fall back to configured defaults."""

    base_order: list[str] = Field(min_length=1)
    mode: RotationMode = RotationMode.CONSTANT
    direction: RotationDirection = RotationDirection.FIRST_TO_LAST
    max_slots: int = Field(default=settings.default_max_slots, gt=0)
    max_nights: int = Field(default=settings.default_max_nights, gt=0)
    start_weekday: str = settings.default_start_weekday
    start_time: time = time.fromisoformat(settings.default_start_time)
    start_month: str = settings.default_start_month
    selection_days: int = Field(default=settings.default_selection_days, gt=0)
    secondary_enabled: bool = False
    secondary_max_slots: int = Field(default=settings.default_secondary_max_slots, gt=0)
    secondary_selection_days: int = Field(default=settings.default_secondary_selection_days, gt=0)
    termination: WindowTermination = WindowTermination.ALL_SLOTS
    partial_blocks: PartialBlockPolicy = PartialBlockPolicy.NONE
    season_months: int = Field(default=12, gt=0)

    @field_validator("base_order")
    @classmethod
    def strip_group_names(cls, value: list[str]) -> list[str]:
        return [name.strip() for name in value]


class RotationOrderResponse(BaseModel):
    organization_id: str
    year: int
    reference_year: int
    mode: RotationMode
    order: list[str]


class WindowResponse(BaseModel):
    family_group: str
    period_index: int = Field(gt=0)
    start_date: date
    end_date: date
    nights: int = Field(ge=0)
    max_nights: int = Field(gt=0)


class UsageResponse(BaseModel):
    family_group: str
    primary_used: int = Field(ge=0)
    primary_remaining: int = Field(ge=0)
    secondary_used: int = Field(ge=0)
    secondary_remaining: int = Field(ge=0)
    selection_round: str
    last_selection_at: str | None = None


@router.put(
    "/organizations/{organization_id}/rotation/{year}",
    response_model=RotationOrderResponse,
    status_code=status.HTTP_200_OK,
)
async def save_rotation_config(
    organization_id: str,
    year: int,
    payload: RotationConfigRequest,
    service: RotationService = Depends(get_rotation_service),
) -> RotationOrderResponse:
    try:
        config = service.save_config(
            RotationConfig(
                organization_id=organization_id,
                rotation_year=year,
                base_order=tuple(payload.base_order),
                **payload.model_dump(exclude={"base_order"}),
            )
        )
        return RotationOrderResponse(
            organization_id=organization_id,
            year=year,
            reference_year=config.rotation_year,
            mode=config.mode,
            order=list(service.order_from_config(config, year)),
        )
    except EngineError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected rotation config failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save rotation configuration",
        ) from exc


@router.get(
    "/organizations/{organization_id}/rotation/{year}",
    response_model=RotationOrderResponse,
)
async def get_rotation_order(
    organization_id: str,
    year: int,
    service: RotationService = Depends(get_rotation_service),
) -> RotationOrderResponse:
    try:
        config = service.load_config(organization_id, year)
        return RotationOrderResponse(
            organization_id=organization_id,
            year=year,
            reference_year=config.rotation_year,
            mode=config.mode,
            order=list(service.order_from_config(config, year)),
        )
    except EngineError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected rotation lookup failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to resolve rotation order",
        ) from exc


@router.get(
    "/organizations/{organization_id}/windows/{year}",
    response_model=list[WindowResponse],
)
async def list_windows(
    organization_id: str,
    year: int,
    month: int | None = Query(default=None, ge=1, le=12),
    service: WindowService = Depends(get_window_service),
) -> list[WindowResponse]:
    """Season windows, or only those overlapping ``month`` when given."""
    try:
        if month is None:
            windows = service.windows(organization_id, year)
        else:
            windows = service.windows_for_month(organization_id, year, month)
        return [
            WindowResponse(
                family_group=window.family_group,
                period_index=window.period_index,
                start_date=window.start_date,
                end_date=window.end_date,
                nights=window.nights,
                max_nights=window.max_nights,
            )
            for window in windows
        ]
    except EngineError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected window layout failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to compute allocation windows",
        ) from exc


@router.get(
    "/organizations/{organization_id}/usage/{year}",
    response_model=list[UsageResponse],
)
async def list_usage(
    organization_id: str,
    year: int,
    rotation_service: RotationService = Depends(get_rotation_service),
    ledger: UsageLedger = Depends(get_usage_ledger),
) -> list[UsageResponse]:
    try:
        config = rotation_service.load_config(organization_id, year)
        return [UsageResponse(**row) for row in ledger.summary(config, year)]
    except EngineError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected usage lookup failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load usage",
        ) from exc
