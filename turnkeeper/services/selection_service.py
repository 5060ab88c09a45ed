"""Turn state machines for the primary and secondary selection rounds.

Each machine persists a ``SelectionStatus`` row and moves it through
``NotStarted -> InProgress -> Complete``. Writes go through the
repository's compare-and-swap, so two concurrent advances of the same
turn produce one transition. Deadlines are evaluated lazily whenever the
status is read; there is no background timer.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import ClassVar, Optional

from turnkeeper.domain.errors import SelectionStateError
from turnkeeper.domain.events import (
    EngineEvent,
    RoundCompleted,
    TurnEnded,
    TurnEndingSoon,
    TurnStarted,
)
from turnkeeper.domain.models import (
    Complete,
    InProgress,
    NotStarted,
    RotationConfig,
    SelectionExtension,
    SelectionRound,
    SelectionStatus,
    TurnEndReason,
    TurnPhase,
)
from turnkeeper.repository.data_repository import DataRepository
from turnkeeper.services.rotation_service import RotationService
from turnkeeper.services.usage_ledger import UsageLedger
from turnkeeper.utils.clock import Clock, utc_now
from turnkeeper.utils.config import Settings, get_settings
from turnkeeper.utils.logger import get_logger


logger = get_logger(__name__)

_DAY = timedelta(days=1)


@dataclass(frozen=True)
class TurnTransition:
    """Outcome of a machine call: the stored status and any events it produced."""

    status: SelectionStatus
    events: tuple[EngineEvent, ...] = ()


@dataclass(frozen=True)
class GroupTurnStatus:
    family_group: str
    position: int
    state: str
    remaining: int
    deadline: Optional[datetime] = None
    days_remaining: Optional[int] = None
    progress_text: Optional[str] = None


@dataclass(frozen=True)
class ProjectedTurn:
    family_group: str
    starts_at: datetime
    ends_at: datetime


def is_current_turn(status: SelectionStatus, family_group: str) -> bool:
    phase = status.phase
    return isinstance(phase, InProgress) and phase.current_group == family_group


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _whole_days(span: timedelta) -> int:
    return max(0, math.ceil(span.total_seconds() / _DAY.total_seconds()))


class _SelectionMachine:
    selection_round: ClassVar[SelectionRound]

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
        rotation_service: Optional[RotationService] = None,
        ledger: Optional[UsageLedger] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock
        self._rotation_service = rotation_service or RotationService(
            repository=self._repository,
            settings=self._settings,
            clock=clock,
        )
        self._ledger = ledger or UsageLedger(
            repository=self._repository,
            settings=self._settings,
            clock=clock,
        )

    # Ordering and eligibility

    def order(self, config: RotationConfig, rotation_year: int) -> tuple[str, ...]:
        return self._rotation_service.order_from_config(config, rotation_year)

    def order_for_year(self, organization_id: str, rotation_year: int) -> tuple[str, ...]:
        config = self._rotation_service.load_config(organization_id, rotation_year)
        return self.order(config, rotation_year)

    def _check_can_start(self, config: RotationConfig, rotation_year: int) -> None:
        return None

    def _used(self, config: RotationConfig, rotation_year: int, family_group: str) -> int:
        usage = self._ledger.get(config.organization_id, rotation_year, family_group)
        return usage.used(self.selection_round)

    def _next_eligible(
        self,
        config: RotationConfig,
        rotation_year: int,
        order: tuple[str, ...],
        start_index: int,
        passed_groups: tuple[str, ...],
    ) -> Optional[int]:
        """Cyclic search from ``start_index`` for a group still able to pick."""
        for step in range(len(order)):
            index = (start_index + step) % len(order)
            group = order[index]
            if group in passed_groups:
                continue
            if self._ledger.remaining(config, rotation_year, group, self.selection_round) > 0:
                return index
        return None

    # Deadlines

    def _window_days(self, config: RotationConfig) -> int:
        return config.window_days_for(self.selection_round)

    def _base_deadline(self, config: RotationConfig, phase: InProgress) -> datetime:
        return _as_utc(phase.turn_started_at) + timedelta(days=self._window_days(config))

    def deadline(
        self,
        config: RotationConfig,
        rotation_year: int,
        phase: InProgress,
    ) -> datetime:
        deadline = self._base_deadline(config, phase)
        extension = self._repository.load_selection_extension(
            config.organization_id,
            rotation_year,
            self.selection_round,
            phase.current_group,
        )
        if extension is not None:
            deadline = max(deadline, _as_utc(extension.extended_until))
        return deadline

    # Persistence helpers

    def _load(self, organization_id: str, rotation_year: int) -> SelectionStatus:
        return self._repository.load_selection_status(
            organization_id, rotation_year, self.selection_round
        )

    def _begin_turn(
        self,
        config: RotationConfig,
        rotation_year: int,
        order: tuple[str, ...],
        index: int,
        now: datetime,
    ) -> tuple[InProgress, TurnStarted]:
        group = order[index]
        phase = InProgress(
            current_group=group,
            current_index=index,
            turn_started_at=now,
            used_at_turn_start=self._used(config, rotation_year, group),
        )
        event = TurnStarted(
            organization_id=config.organization_id,
            rotation_year=rotation_year,
            selection_round=self.selection_round,
            family_group=group,
            turn_started_at=now,
            deadline=self.deadline(config, rotation_year, phase),
        )
        return phase, event

    def _complete(
        self,
        config: RotationConfig,
        rotation_year: int,
        now: datetime,
    ) -> tuple[Complete, RoundCompleted]:
        return Complete(completed_at=now), RoundCompleted(
            organization_id=config.organization_id,
            rotation_year=rotation_year,
            selection_round=self.selection_round,
            completed_at=now,
        )

    # Transitions

    def start(self, organization_id: str, rotation_year: int) -> TurnTransition:
        config = self._rotation_service.load_config(organization_id, rotation_year)
        status = self._load(organization_id, rotation_year)
        if not isinstance(status.phase, NotStarted):
            raise SelectionStateError(
                f"{self.selection_round.value} selection for {rotation_year} has already started"
            )
        self._check_can_start(config, rotation_year)

        order = self.order(config, rotation_year)
        self._ledger.initialize(organization_id, rotation_year, list(order))
        now = self._clock()
        index = self._next_eligible(config, rotation_year, order, 0, ())
        phase: TurnPhase
        event: EngineEvent
        if index is None:
            phase, event = self._complete(config, rotation_year, now)
        else:
            phase, event = self._begin_turn(config, rotation_year, order, index, now)

        saved = self._repository.save_selection_status(
            replace(status, phase=phase, passed_groups=())
        )
        if saved is None:
            raise SelectionStateError(
                f"{self.selection_round.value} selection for {rotation_year} was started concurrently"
            )
        self._repository.mark_usage_round(organization_id, rotation_year, self.selection_round)
        logger.info(
            "Selection round started | organization_id=%s year=%s round=%s current_group=%s",
            organization_id,
            rotation_year,
            self.selection_round.value,
            getattr(phase, "current_group", None),
        )
        return TurnTransition(status=saved, events=(event,))

    def advance(
        self,
        organization_id: str,
        rotation_year: int,
        reason: TurnEndReason = TurnEndReason.COMPLETED,
        *,
        expected_group: Optional[str] = None,
    ) -> TurnTransition:
        """End the current turn and hand over to the next eligible group.

        A no-op outside ``InProgress``, and when ``expected_group`` no
        longer holds the turn.
        """
        status = self._load(organization_id, rotation_year)
        phase = status.phase
        if not isinstance(phase, InProgress):
            return TurnTransition(status=status)
        if expected_group is not None and phase.current_group != expected_group:
            return TurnTransition(status=status)
        config = self._rotation_service.load_config(organization_id, rotation_year)
        return self._advance_from(config, rotation_year, status, phase, reason)

    def _advance_from(
        self,
        config: RotationConfig,
        rotation_year: int,
        status: SelectionStatus,
        phase: InProgress,
        reason: TurnEndReason,
    ) -> TurnTransition:
        now = self._clock()
        group = phase.current_group
        passed_groups = status.passed_groups
        # A turn that ends without consuming a period removes the group from this round.
        if self._used(config, rotation_year, group) <= phase.used_at_turn_start:
            if group not in passed_groups:
                passed_groups = passed_groups + (group,)

        events: list[EngineEvent] = [
            TurnEnded(
                organization_id=config.organization_id,
                rotation_year=rotation_year,
                selection_round=self.selection_round,
                family_group=group,
                reason=reason,
                ended_at=now,
            )
        ]
        order = self.order(config, rotation_year)
        index = self._next_eligible(
            config, rotation_year, order, phase.current_index + 1, passed_groups
        )
        next_phase: TurnPhase
        if index is None:
            next_phase, follow_up = self._complete(config, rotation_year, now)
        else:
            next_phase, follow_up = self._begin_turn(config, rotation_year, order, index, now)
        events.append(follow_up)

        saved = self._repository.save_selection_status(
            replace(status, phase=next_phase, passed_groups=passed_groups)
        )
        if saved is None:
            logger.info(
                "Turn advance lost to a concurrent writer | organization_id=%s year=%s round=%s group=%s",
                config.organization_id,
                rotation_year,
                self.selection_round.value,
                group,
            )
            return TurnTransition(status=self._load(config.organization_id, rotation_year))

        self.clear_extension(config.organization_id, rotation_year, group)
        logger.info(
            "Turn advanced | organization_id=%s year=%s round=%s from=%s reason=%s to=%s",
            config.organization_id,
            rotation_year,
            self.selection_round.value,
            group,
            reason.value,
            next_phase.current_group if isinstance(next_phase, InProgress) else "<complete>",
        )
        if isinstance(next_phase, Complete):
            logger.info(
                "Selection round complete | organization_id=%s year=%s round=%s passed=%s",
                config.organization_id,
                rotation_year,
                self.selection_round.value,
                ",".join(passed_groups) or "-",
            )
        return TurnTransition(status=saved, events=tuple(events))

    def refresh(self, organization_id: str, rotation_year: int) -> TurnTransition:
        """Load the status, expiring the active turn first if its deadline has passed."""
        status = self._load(organization_id, rotation_year)
        phase = status.phase
        if not isinstance(phase, InProgress):
            return TurnTransition(status=status)
        config = self._rotation_service.load_config(organization_id, rotation_year)
        if self._clock() <= self.deadline(config, rotation_year, phase):
            return TurnTransition(status=status)
        logger.info(
            "Turn expired | organization_id=%s year=%s round=%s group=%s",
            organization_id,
            rotation_year,
            self.selection_round.value,
            phase.current_group,
        )
        return self._advance_from(config, rotation_year, status, phase, TurnEndReason.EXPIRED)

    def current_status(self, organization_id: str, rotation_year: int) -> SelectionStatus:
        return self.refresh(organization_id, rotation_year).status

    def is_current_turn(self, organization_id: str, rotation_year: int, family_group: str) -> bool:
        return is_current_turn(self.current_status(organization_id, rotation_year), family_group)

    # Extensions

    def extend_turn(
        self,
        organization_id: str,
        rotation_year: int,
        family_group: str,
        extended_until: datetime,
        reason: Optional[str] = None,
    ) -> SelectionExtension:
        status = self.current_status(organization_id, rotation_year)
        phase = status.phase
        if not isinstance(phase, InProgress) or phase.current_group != family_group:
            raise SelectionStateError(
                f"{family_group} does not hold the active {self.selection_round.value} turn"
            )
        config = self._rotation_service.load_config(organization_id, rotation_year)
        original_end = self._base_deadline(config, phase)
        extended_until = _as_utc(extended_until)
        if extended_until <= original_end:
            raise SelectionStateError(
                f"extension must end after the turn deadline {original_end.isoformat()}"
            )
        extension = SelectionExtension(
            organization_id=organization_id,
            rotation_year=rotation_year,
            selection_round=self.selection_round,
            family_group=family_group,
            original_end=original_end,
            extended_until=extended_until,
            reason=reason,
        )
        self._repository.save_selection_extension(extension)
        logger.info(
            "Turn extended | organization_id=%s year=%s round=%s group=%s until=%s",
            organization_id,
            rotation_year,
            self.selection_round.value,
            family_group,
            extended_until.isoformat(),
        )
        return extension

    def clear_extension(self, organization_id: str, rotation_year: int, family_group: str) -> bool:
        return self._repository.delete_selection_extension(
            organization_id, rotation_year, self.selection_round, family_group
        )

    # Read models

    def pending_reminder(self, organization_id: str, rotation_year: int) -> Optional[TurnEndingSoon]:
        """Return a turn-ending-soon event when the active deadline is within the reminder lead."""
        status = self.current_status(organization_id, rotation_year)
        phase = status.phase
        if not isinstance(phase, InProgress):
            return None
        config = self._rotation_service.load_config(organization_id, rotation_year)
        deadline = self.deadline(config, rotation_year, phase)
        left = deadline - self._clock()
        if left <= timedelta(0) or left > timedelta(days=self._settings.reminder_lead_days):
            return None
        return TurnEndingSoon(
            organization_id=organization_id,
            rotation_year=rotation_year,
            selection_round=self.selection_round,
            family_group=phase.current_group,
            deadline=deadline,
            days_remaining=_whole_days(left),
        )

    def status_board(self, organization_id: str, rotation_year: int) -> list[GroupTurnStatus]:
        status = self.current_status(organization_id, rotation_year)
        config = self._rotation_service.load_config(organization_id, rotation_year)
        order = self.order(config, rotation_year)
        phase = status.phase
        now = self._clock()
        window_days = self._window_days(config)

        board: list[GroupTurnStatus] = []
        for position, group in enumerate(order, start=1):
            remaining = self._ledger.remaining(config, rotation_year, group, self.selection_round)
            if isinstance(phase, InProgress) and phase.current_group == group:
                deadline = self.deadline(config, rotation_year, phase)
                elapsed = now - _as_utc(phase.turn_started_at)
                day_number = min(window_days, max(1, elapsed.days + 1))
                board.append(
                    GroupTurnStatus(
                        family_group=group,
                        position=position,
                        state="active",
                        remaining=remaining,
                        deadline=deadline,
                        days_remaining=_whole_days(deadline - now),
                        progress_text=f"Day {day_number} of {window_days}",
                    )
                )
                continue
            if group in status.passed_groups:
                state = "passed"
            elif remaining == 0 or isinstance(phase, Complete):
                state = "completed"
            else:
                state = "waiting"
            board.append(GroupTurnStatus(group, position, state, remaining))
        return board

    def schedule(self, organization_id: str, rotation_year: int) -> list[ProjectedTurn]:
        """Project turn dates for groups still able to pick, chaining full windows."""
        status = self.current_status(organization_id, rotation_year)
        phase = status.phase
        if isinstance(phase, Complete):
            return []
        config = self._rotation_service.load_config(organization_id, rotation_year)
        order = self.order(config, rotation_year)
        length = timedelta(days=self._window_days(config))

        projected: list[ProjectedTurn] = []
        if isinstance(phase, InProgress):
            deadline = self.deadline(config, rotation_year, phase)
            projected.append(
                ProjectedTurn(phase.current_group, _as_utc(phase.turn_started_at), deadline)
            )
            cursor = deadline
            first_index = phase.current_index + 1
            skip = {phase.current_group}
        else:
            cursor = self._clock()
            first_index = 0
            skip = set()

        for step in range(len(order)):
            group = order[(first_index + step) % len(order)]
            if group in skip or group in status.passed_groups:
                continue
            if self._ledger.remaining(config, rotation_year, group, self.selection_round) <= 0:
                continue
            projected.append(ProjectedTurn(group, cursor, cursor + length))
            cursor = cursor + length
        return projected


class SequentialSelectionMachine(_SelectionMachine):
    """Primary round: the resolved rotation order against the primary cap."""

    selection_round = SelectionRound.PRIMARY


class SecondarySelectionMachine(_SelectionMachine):
    """Secondary round: the reversed order against the secondary cap.

    Starts only once secondary selection is enabled and the primary round
    is complete.
    """

    selection_round = SelectionRound.SECONDARY

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
        rotation_service: Optional[RotationService] = None,
        ledger: Optional[UsageLedger] = None,
        primary: Optional[SequentialSelectionMachine] = None,
    ) -> None:
        super().__init__(repository, settings, clock, rotation_service, ledger)
        self._primary = primary or SequentialSelectionMachine(
            repository=self._repository,
            settings=self._settings,
            clock=clock,
            rotation_service=self._rotation_service,
            ledger=self._ledger,
        )

    def order(self, config: RotationConfig, rotation_year: int) -> tuple[str, ...]:
        return tuple(reversed(super().order(config, rotation_year)))

    def _check_can_start(self, config: RotationConfig, rotation_year: int) -> None:
        if not config.secondary_enabled:
            raise SelectionStateError(
                f"secondary selection is not enabled for {config.organization_id} in {rotation_year}"
            )
        primary_status = self._primary.current_status(config.organization_id, rotation_year)
        if not isinstance(primary_status.phase, Complete):
            raise SelectionStateError("secondary selection requires the primary round to be complete")


class SelectionService:
    """Pairs the two machines for one repository/clock."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
        rotation_service: Optional[RotationService] = None,
        ledger: Optional[UsageLedger] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._rotation_service = rotation_service or RotationService(
            repository=self._repository, settings=self._settings, clock=clock
        )
        ledger = ledger or UsageLedger(
            repository=self._repository, settings=self._settings, clock=clock
        )
        self.primary = SequentialSelectionMachine(
            self._repository, self._settings, clock, self._rotation_service, ledger
        )
        self.secondary = SecondarySelectionMachine(
            self._repository,
            self._settings,
            clock,
            self._rotation_service,
            ledger,
            primary=self.primary,
        )

    def machine(self, selection_round: SelectionRound) -> _SelectionMachine:
        if selection_round is SelectionRound.PRIMARY:
            return self.primary
        return self.secondary

    def active_round(self, organization_id: str, rotation_year: int) -> Optional[SelectionRound]:
        """Round currently taking picks, if any."""
        for machine in (self.primary, self.secondary):
            if isinstance(machine.current_status(organization_id, rotation_year).phase, InProgress):
                return machine.selection_round
        return None

    def all_rounds_finished(self, organization_id: str, rotation_year: int) -> bool:
        primary = self.primary.current_status(organization_id, rotation_year)
        if not isinstance(primary.phase, Complete):
            return False
        config = self._rotation_service.load_config(organization_id, rotation_year)
        if not config.secondary_enabled:
            return True
        secondary = self.secondary.current_status(organization_id, rotation_year)
        return isinstance(secondary.phase, Complete)
