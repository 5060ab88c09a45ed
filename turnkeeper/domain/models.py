"""Domain models for turn-based reservation allocation and cost settlement."""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Mapping, Optional, Union


WEEKDAY_NAMES: tuple[str, ...] = tuple(calendar.day_name)
MONTH_NAMES: tuple[str, ...] = tuple(calendar.month_name)[1:]


class RotationMode(str, Enum):
    CONSTANT = "constant"
    ROTATES = "rotates"


class RotationDirection(str, Enum):
    FIRST_TO_LAST = "first-moves-to-last"
    LAST_TO_FIRST = "last-moves-to-first"


class WindowTermination(str, Enum):
    """When the window layout stops producing blocks."""

    ALL_SLOTS = "all_slots"
    SEASON_END = "season_end"


class PartialBlockPolicy(str, Enum):
    NONE = "none"
    LEADING = "leading"
    TRAILING = "trailing"
    BOTH = "both"

    @property
    def leading(self) -> bool:
        return self in (PartialBlockPolicy.LEADING, PartialBlockPolicy.BOTH)

    @property
    def trailing(self) -> bool:
        return self in (PartialBlockPolicy.TRAILING, PartialBlockPolicy.BOTH)


class SelectionRound(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class TurnEndReason(str, Enum):
    COMPLETED = "completed"
    DECLINED = "declined"
    EXPIRED = "expired"


@dataclass(frozen=True)
class GroupMember:
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class FamilyGroup:
    organization_id: str
    name: str
    lead_name: Optional[str] = None
    lead_email: Optional[str] = None
    lead_phone: Optional[str] = None
    members: tuple[GroupMember, ...] = ()


@dataclass(frozen=True)
class RotationConfig:
    """Per-organization selection rules for one rotation year.

    ``rotation_year`` is the reference year: the year in which
    ``base_order`` applies as entered.
    """

    organization_id: str
    rotation_year: int
    base_order: tuple[str, ...]
    mode: RotationMode = RotationMode.CONSTANT
    direction: RotationDirection = RotationDirection.FIRST_TO_LAST
    max_slots: int = 2
    max_nights: int = 7
    start_weekday: str = "Friday"
    start_time: time = time(12, 0)
    start_month: str = "January"
    selection_days: int = 14
    secondary_enabled: bool = False
    secondary_max_slots: int = 1
    secondary_selection_days: int = 7
    termination: WindowTermination = WindowTermination.ALL_SLOTS
    partial_blocks: PartialBlockPolicy = PartialBlockPolicy.NONE
    season_months: int = 12

    @property
    def start_weekday_index(self) -> int:
        """Python weekday number (Monday is 0)."""
        return WEEKDAY_NAMES.index(self.start_weekday)

    @property
    def start_month_number(self) -> int:
        return MONTH_NAMES.index(self.start_month) + 1

    def cap_for(self, selection_round: SelectionRound) -> int:
        if selection_round is SelectionRound.PRIMARY:
            return self.max_slots
        return self.secondary_max_slots

    def window_days_for(self, selection_round: SelectionRound) -> int:
        if selection_round is SelectionRound.PRIMARY:
            return self.selection_days
        return self.secondary_selection_days


@dataclass(frozen=True)
class AllocationWindow:
    """A computed calendar range assigned to one group's one turn.

    ``end_date`` is the check-out day, so the window spans
    ``end_date - start_date`` nights.
    """

    family_group: str
    period_index: int
    start_date: date
    end_date: date
    max_nights: int
    check_in_time: time = time(12, 0)

    @property
    def nights(self) -> int:
        return (self.end_date - self.start_date).days

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.start_date, self.check_in_time)

    @property
    def ends_at(self) -> datetime:
        return datetime.combine(self.end_date, self.check_in_time)

    def contains(self, start: date, end: date) -> bool:
        return self.start_date <= start and end <= self.end_date

    def overlaps(self, start: date, end: date) -> bool:
        return start < self.end_date and self.start_date < end


@dataclass(frozen=True)
class UsageRecord:
    organization_id: str
    rotation_year: int
    family_group: str
    primary_used: int = 0
    secondary_used: int = 0
    selection_round: SelectionRound = SelectionRound.PRIMARY
    last_selection_at: Optional[datetime] = None

    def used(self, selection_round: SelectionRound) -> int:
        if selection_round is SelectionRound.PRIMARY:
            return self.primary_used
        return self.secondary_used


@dataclass(frozen=True)
class NotStarted:
    pass


@dataclass(frozen=True)
class InProgress:
    current_group: str
    current_index: int
    turn_started_at: datetime
    used_at_turn_start: int = 0


@dataclass(frozen=True)
class Complete:
    completed_at: datetime


TurnPhase = Union[NotStarted, InProgress, Complete]


@dataclass(frozen=True)
class SelectionStatus:
    """Persisted state of one selection round for one organization/year.

    ``passed_groups`` holds groups that declined or let a turn lapse in
    this round; they are not offered another turn in it. ``version`` is
    bumped on every write and used for compare-and-swap.
    """

    organization_id: str
    rotation_year: int
    selection_round: SelectionRound
    phase: TurnPhase = field(default_factory=NotStarted)
    passed_groups: tuple[str, ...] = ()
    version: int = 0


@dataclass(frozen=True)
class SelectionExtension:
    organization_id: str
    rotation_year: int
    selection_round: SelectionRound
    family_group: str
    original_end: datetime
    extended_until: datetime
    reason: Optional[str] = None


@dataclass(frozen=True)
class Reservation:
    organization_id: str
    family_group: str
    start_date: date
    end_date: date
    daily_occupancy: Mapping[date, float] = field(default_factory=dict)
    total_cost: float = 0.0
    allocated_start: Optional[date] = None
    allocated_end: Optional[date] = None
    period_number: Optional[int] = None
    selection_round: Optional[SelectionRound] = None
    rotation_year: Optional[int] = None
    reservation_id: Optional[int] = None

    @property
    def nights(self) -> int:
        return (self.end_date - self.start_date).days

    def stay_dates(self) -> list[date]:
        return [self.start_date + timedelta(days=offset) for offset in range(self.nights)]


@dataclass(frozen=True)
class SplitShare:
    """One party's slice of a cost split."""

    party: str
    daily_guests: Mapping[date, float]
    amount: float
    amount_paid: float = 0.0
    share_id: Optional[int] = None

    @property
    def guest_nights(self) -> float:
        return float(sum(self.daily_guests.values()))

    @property
    def balance_due(self) -> float:
        return max(0.0, self.amount - self.amount_paid)

    @property
    def payment_status(self) -> str:
        if self.amount_paid <= 0.0:
            return "pending"
        if self.amount_paid + 1e-9 >= self.amount:
            return "paid"
        return "partial"


@dataclass(frozen=True)
class CostSplit:
    organization_id: str
    reservation_id: int
    total_amount: float
    per_diem_rate: float
    source: SplitShare
    recipients: tuple[SplitShare, ...]
    created_at: Optional[datetime] = None
    split_id: Optional[int] = None

    @property
    def amount_collected(self) -> float:
        return sum(share.amount_paid for share in self.recipients)
