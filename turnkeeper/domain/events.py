"""Notification events emitted by engine transitions.

The engine only produces these values; delivery belongs to the host
application.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from turnkeeper.domain.models import SelectionRound, TurnEndReason


@dataclass(frozen=True)
class TurnStarted:
    organization_id: str
    rotation_year: int
    selection_round: SelectionRound
    family_group: str
    turn_started_at: datetime
    deadline: datetime


@dataclass(frozen=True)
class TurnEnded:
    organization_id: str
    rotation_year: int
    selection_round: SelectionRound
    family_group: str
    reason: TurnEndReason
    ended_at: datetime


@dataclass(frozen=True)
class TurnEndingSoon:
    organization_id: str
    rotation_year: int
    selection_round: SelectionRound
    family_group: str
    deadline: datetime
    days_remaining: int


@dataclass(frozen=True)
class RoundCompleted:
    organization_id: str
    rotation_year: int
    selection_round: SelectionRound
    completed_at: datetime


@dataclass(frozen=True)
class SplitCreated:
    organization_id: str
    split_id: int
    reservation_id: int
    source_party: str
    recipient_parties: tuple[str, ...]
    recipient_amounts: tuple[float, ...]


EngineEvent = TurnStarted | TurnEnded | TurnEndingSoon | RoundCompleted | SplitCreated
