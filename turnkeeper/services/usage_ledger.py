"""Per-group usage counters; the final gate on selection capacity."""

from __future__ import annotations

from typing import Optional

from turnkeeper.domain.errors import CapExceededError
from turnkeeper.domain.models import RotationConfig, SelectionRound, UsageRecord
from turnkeeper.repository.data_repository import DataRepository
from turnkeeper.utils.clock import Clock, utc_now
from turnkeeper.utils.config import Settings, get_settings
from turnkeeper.utils.logger import get_logger


logger = get_logger(__name__)


class UsageLedger:
    """Reads and atomically mutates usage rows for one rotation config's caps."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock

    def initialize(self, organization_id: str, rotation_year: int, groups: list[str]) -> None:
        self._repository.initialize_usage(organization_id, rotation_year, groups)

    def get(self, organization_id: str, rotation_year: int, family_group: str) -> UsageRecord:
        return self._repository.load_usage(organization_id, rotation_year, family_group)

    def remaining(
        self,
        config: RotationConfig,
        rotation_year: int,
        family_group: str,
        selection_round: SelectionRound,
    ) -> int:
        usage = self.get(config.organization_id, rotation_year, family_group)
        return max(0, config.cap_for(selection_round) - usage.used(selection_round))

    def increment(
        self,
        config: RotationConfig,
        rotation_year: int,
        family_group: str,
        selection_round: SelectionRound,
    ) -> UsageRecord:
        """Consume one period, re-checking the cap inside the write itself."""
        cap = config.cap_for(selection_round)
        consumed = self._repository.increment_usage(
            config.organization_id,
            rotation_year,
            family_group,
            selection_round,
            cap,
            self._clock(),
        )
        if not consumed:
            logger.warning(
                "Usage increment refused at cap | organization_id=%s year=%s group=%s round=%s cap=%s",
                config.organization_id,
                rotation_year,
                family_group,
                selection_round.value,
                cap,
            )
            raise CapExceededError(family_group, selection_round.value, cap)

        usage = self.get(config.organization_id, rotation_year, family_group)
        logger.info(
            "Usage incremented | organization_id=%s year=%s group=%s round=%s used=%s cap=%s",
            config.organization_id,
            rotation_year,
            family_group,
            selection_round.value,
            usage.used(selection_round),
            cap,
        )
        return usage

    def release(
        self,
        organization_id: str,
        rotation_year: int,
        family_group: str,
        selection_round: SelectionRound,
    ) -> UsageRecord:
        released = self._repository.release_usage(
            organization_id, rotation_year, family_group, selection_round
        )
        if released:
            logger.info(
                "Usage released | organization_id=%s year=%s group=%s round=%s",
                organization_id,
                rotation_year,
                family_group,
                selection_round.value,
            )
        return self.get(organization_id, rotation_year, family_group)

    def summary(self, config: RotationConfig, rotation_year: int) -> list[dict[str, object]]:
        rows = []
        for record in self._repository.list_usage(config.organization_id, rotation_year):
            rows.append(
                {
                    "family_group": record.family_group,
                    "primary_used": record.primary_used,
                    "primary_remaining": max(0, config.max_slots - record.primary_used),
                    "secondary_used": record.secondary_used,
                    "secondary_remaining": (
                        max(0, config.secondary_max_slots - record.secondary_used)
                        if config.secondary_enabled
                        else 0
                    ),
                    "selection_round": record.selection_round.value,
                    "last_selection_at": (
                        record.last_selection_at.isoformat() if record.last_selection_at else None
                    ),
                }
            )
        return rows
