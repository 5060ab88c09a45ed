"""Allocation window layout for a selection season."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, time, timedelta
from typing import Iterator, Optional

from turnkeeper.domain.errors import ConfigError
from turnkeeper.domain.models import (
    AllocationWindow,
    PartialBlockPolicy,
    RotationConfig,
    WindowTermination,
)
from turnkeeper.repository.data_repository import DataRepository
from turnkeeper.services.rotation_service import RotationService
from turnkeeper.utils.clock import Clock, utc_now
from turnkeeper.utils.config import Settings, get_settings
from turnkeeper.utils.logger import get_logger


logger = get_logger(__name__)


def first_weekday_on_or_after(day: date, weekday: int) -> date:
    return day + timedelta(days=(weekday - day.weekday()) % 7)


def add_months(day: date, months: int) -> date:
    """First day of the month ``months`` after ``day``'s month."""
    years, month_index = divmod(day.month - 1 + months, 12)
    return date(day.year + years, month_index + 1, 1)


@dataclass(frozen=True)
class AllocationWindowSequence:
    """Lazy, restartable round-robin layout of windows for one season.

    Blocks are laid out group by group within a slot (A1, B1, C1, A2, ...)
    starting on the first start weekday on or after day 1 of the start
    month. Every iteration regenerates the same windows from these inputs.
    """

    order: tuple[str, ...]
    year: int
    max_slots: int
    max_nights: int
    start_weekday_index: int
    start_month: int
    start_time: time = time(12, 0)
    termination: WindowTermination = WindowTermination.ALL_SLOTS
    partial_blocks: PartialBlockPolicy = PartialBlockPolicy.NONE
    season_months: int = 12

    def __post_init__(self) -> None:
        if not self.order:
            raise ConfigError("window layout needs at least one family group")
        if self.max_slots <= 0 or self.max_nights <= 0:
            raise ConfigError("max_slots and max_nights must be > 0")
        if self.season_months <= 0:
            raise ConfigError("season_months must be > 0")

    @classmethod
    def from_config(
        cls,
        config: RotationConfig,
        order: tuple[str, ...],
        year: int,
    ) -> "AllocationWindowSequence":
        return cls(
            order=tuple(order),
            year=year,
            max_slots=config.max_slots,
            max_nights=config.max_nights,
            start_weekday_index=config.start_weekday_index,
            start_month=config.start_month_number,
            start_time=config.start_time,
            termination=config.termination,
            partial_blocks=config.partial_blocks,
            season_months=config.season_months,
        )

    @property
    def month_start(self) -> date:
        return date(self.year, self.start_month, 1)

    @property
    def season_start(self) -> date:
        return first_weekday_on_or_after(self.month_start, self.start_weekday_index)

    @property
    def season_end(self) -> date:
        return add_months(self.month_start, self.season_months)

    def __iter__(self) -> Iterator[AllocationWindow]:
        season_start = self.season_start
        season_end = self.season_end
        group_count = len(self.order)
        block = timedelta(days=self.max_nights)

        cursor = season_start
        if self.partial_blocks.leading and season_start > self.month_start:
            cursor = self.month_start

        position = 0
        while True:
            cycle, group_position = divmod(position, group_count)
            period_index = cycle + 1
            if self.termination is WindowTermination.ALL_SLOTS:
                if period_index > self.max_slots:
                    return
            elif cursor >= season_end:
                return

            end = season_start if cursor < season_start else cursor + block
            if (
                self.termination is WindowTermination.SEASON_END
                and self.partial_blocks.trailing
                and end > season_end
            ):
                end = season_end

            yield AllocationWindow(
                family_group=self.order[group_position],
                period_index=period_index,
                start_date=cursor,
                end_date=end,
                max_nights=self.max_nights,
                check_in_time=self.start_time,
            )
            cursor = end
            position += 1

    def for_group(self, family_group: str) -> list[AllocationWindow]:
        return [window for window in self if window.family_group == family_group]

    def overlapping(self, start: date, end: date) -> list[AllocationWindow]:
        return [window for window in self if window.overlaps(start, end)]


class WindowService:
    """Builds window sequences for an organization within the booking horizon."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
        rotation_service: Optional[RotationService] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock
        self._rotation_service = rotation_service or RotationService(
            repository=self._repository,
            settings=self._settings,
            clock=clock,
        )

    def within_horizon(self, year: int) -> bool:
        current_year = self._clock().year
        return current_year <= year <= current_year + self._settings.booking_horizon_years

    def sequence(self, organization_id: str, year: int) -> AllocationWindowSequence:
        config = self._rotation_service.load_config(organization_id, year)
        order = self._rotation_service.order_from_config(config, year)
        return AllocationWindowSequence.from_config(config, order, year)

    def windows(self, organization_id: str, year: int) -> list[AllocationWindow]:
        """All windows of a season, or none when the year is outside the horizon."""
        if not self.within_horizon(year):
            logger.info(
                "Window request outside booking horizon | organization_id=%s year=%s",
                organization_id,
                year,
            )
            return []
        return list(self.sequence(organization_id, year))

    def seasons_covering(
        self,
        organization_id: str,
        start: date,
        end: date,
    ) -> list[tuple[int, list[AllocationWindow]]]:
        """Seasons whose windows may overlap [start, end).

        A season begun in one calendar year can run into the next, so the
        previous year's season is considered too.
        """
        seasons: list[tuple[int, list[AllocationWindow]]] = []
        for year in (start.year - 1, start.year):
            if self._repository.load_rotation_config(organization_id, year) is None:
                continue
            windows = self.sequence(organization_id, year).overlapping(start, end)
            if windows:
                seasons.append((year, windows))
        return seasons

    def windows_for_month(
        self,
        organization_id: str,
        year: int,
        month: int,
    ) -> list[AllocationWindow]:
        if not 1 <= month <= 12:
            raise ConfigError("month must be between 1 and 12")
        if not self.within_horizon(year):
            return []
        month_start = date(year, month, 1)
        month_end = add_months(month_start, 1)
        windows: list[AllocationWindow] = []
        for _, season_windows in self.seasons_covering(organization_id, month_start, month_end):
            windows.extend(season_windows)
        return sorted(windows, key=lambda window: window.start_date)
