"""Yearly turn-order resolution."""

from __future__ import annotations

from datetime import date
from functools import lru_cache
from typing import Optional

from turnkeeper.domain.constraints import validate_base_order, validate_rotation_config
from turnkeeper.domain.errors import ConfigError
from turnkeeper.domain.models import (
    MONTH_NAMES,
    NotStarted,
    RotationConfig,
    RotationDirection,
    RotationMode,
    SelectionRound,
)
from turnkeeper.repository.data_repository import DataRepository
from turnkeeper.utils.clock import Clock, utc_now
from turnkeeper.utils.config import Settings, get_settings
from turnkeeper.utils.logger import get_logger


logger = get_logger(__name__)


@lru_cache(maxsize=256)
def _rotate(
    base_order: tuple[str, ...],
    offset: int,
    direction: RotationDirection,
) -> tuple[str, ...]:
    shift = offset % len(base_order)
    if shift == 0:
        return base_order
    if direction is RotationDirection.LAST_TO_FIRST:
        shift = len(base_order) - shift
    return base_order[shift:] + base_order[:shift]


def resolve_rotation(
    base_order: tuple[str, ...] | list[str],
    year: int,
    *,
    mode: RotationMode,
    direction: RotationDirection = RotationDirection.FIRST_TO_LAST,
    reference_year: int,
) -> tuple[str, ...]:
    """Return the effective turn order for ``year``.

    In ``rotates`` mode the base order is shifted once per year elapsed
    since ``reference_year``: left when the first group moves to last,
    right when the last group moves to first. Years before the reference
    year wrap the other way.
    """
    order = tuple(base_order)
    if not order:
        raise ConfigError("rotation base order must contain at least one family group")
    if mode is RotationMode.CONSTANT:
        return order
    return _rotate(order, year - reference_year, direction)


def selection_rotation_year(start_month: str, today: date) -> int:
    """Year being selected for: next year once the start month has begun."""
    if start_month not in MONTH_NAMES:
        raise ConfigError(f"start_month must be one of {', '.join(MONTH_NAMES)}")
    start_of_selection = date(today.year, MONTH_NAMES.index(start_month) + 1, 1)
    if today >= start_of_selection:
        return today.year + 1
    return today.year


class RotationService:
    """Loads rotation configuration and resolves yearly turn orders."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock

    def load_config(self, organization_id: str, rotation_year: int) -> RotationConfig:
        config = self._repository.load_rotation_config(organization_id, rotation_year)
        if config is None:
            raise ConfigError(
                f"no rotation configuration for organization '{organization_id}' "
                f"in or before {rotation_year}"
            )
        validate_rotation_config(config)
        return config

    def save_config(self, config: RotationConfig) -> RotationConfig:
        """Replace a year's config; refused once that year's selection has begun."""
        validate_rotation_config(config)
        status = self._repository.load_selection_status(
            config.organization_id,
            config.rotation_year,
            SelectionRound.PRIMARY,
        )
        if not isinstance(status.phase, NotStarted):
            raise ConfigError(
                f"rotation configuration for {config.rotation_year} is locked; "
                "selection has already begun"
            )
        self._repository.save_rotation_config(config)
        self._repository.initialize_usage(
            config.organization_id,
            config.rotation_year,
            list(config.base_order),
        )
        logger.info(
            "Rotation config saved | organization_id=%s rotation_year=%s groups=%s mode=%s",
            config.organization_id,
            config.rotation_year,
            len(config.base_order),
            config.mode.value,
        )
        return config

    def order_for_year(self, organization_id: str, year: int) -> tuple[str, ...]:
        config = self.load_config(organization_id, year)
        return self.order_from_config(config, year)

    @staticmethod
    def order_from_config(config: RotationConfig, year: int) -> tuple[str, ...]:
        validate_base_order(config.base_order)
        return resolve_rotation(
            config.base_order,
            year,
            mode=config.mode,
            direction=config.direction,
            reference_year=config.rotation_year,
        )

    def current_selection_year(self, organization_id: str) -> int:
        today = self._clock().date()
        config = self._repository.load_rotation_config(organization_id, today.year + 1)
        start_month = config.start_month if config else self._settings.default_start_month
        return selection_rotation_year(start_month, today)
