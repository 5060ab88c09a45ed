"""Engine error taxonomy.

Every rejection the engine can produce is an exception carrying enough
structure for the caller to explain it; nothing here is retried.
"""

from __future__ import annotations

from datetime import date
from typing import Sequence


class EngineError(Exception):
    """Base exception for rotation and settlement failures."""


class ConfigError(EngineError):
    """Raised when rotation configuration is missing or invalid."""


class NotFoundError(EngineError):
    """Raised when a referenced record does not exist."""


class SelectionStateError(EngineError):
    """Raised when a turn machine transition is invalid for its current state."""


class BookingRejectedError(EngineError):
    """Base class for user-correctable booking rejections."""

    def __init__(self, reasons: Sequence[str]) -> None:
        self.reasons: tuple[str, ...] = tuple(reasons)
        super().__init__("; ".join(self.reasons))


class OutsideWindowError(BookingRejectedError):
    """Raised when no allocation window of the group contains the requested stay."""

    def __init__(self, family_group: str, start: date, end: date) -> None:
        self.family_group = family_group
        self.start = start
        self.end = end
        super().__init__(
            [
                f"{start.isoformat()} to {end.isoformat()} does not fall within "
                f"an allocation window assigned to {family_group}"
            ]
        )


class ShrinkOnlyViolationError(BookingRejectedError):
    """Raised when an edit grows a reservation beyond its original allocation."""


class InvalidStayError(BookingRejectedError):
    """Raised when a stay's own length is invalid (too short or too long)."""


class ReservationConflictError(BookingRejectedError):
    """Raised when a stay overlaps nights another reservation already holds.

    ``conflicts`` holds ``(family_group, start, end)`` for each overlapping
    stay. Checking out and checking in on the same day is not a conflict.
    """

    def __init__(self, conflicts: Sequence[tuple[str, date, date]]) -> None:
        self.conflicts = tuple(conflicts)
        super().__init__(
            [
                f"overlaps {group}'s stay {start.isoformat()} to {end.isoformat()}"
                for group, start, end in self.conflicts
            ]
        )


class CapExceededError(EngineError):
    """Raised when a group has no remaining capacity in a selection round."""

    def __init__(self, family_group: str, selection_round: str, cap: int) -> None:
        self.family_group = family_group
        self.selection_round = selection_round
        self.cap = cap
        super().__init__(
            f"{family_group} has no remaining {selection_round} periods (cap {cap})"
        )


class SettlementValidationError(EngineError):
    """Raised when a cost split does not reconcile with the reservation."""

    def __init__(self, violations: Sequence[object]) -> None:
        self.violations = tuple(violations)
        super().__init__(
            f"Cost split failed validation with {len(self.violations)} violation(s)"
        )
