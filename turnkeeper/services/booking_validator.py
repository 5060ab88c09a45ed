"""Pure acceptance checks for new bookings and edits.

Nothing here touches storage; callers pass in the windows and remaining
capacity they loaded, and commit through the usage ledger afterwards.
"""

from __future__ import annotations

from datetime import date
from typing import Iterable, Optional

from turnkeeper.domain.errors import (
    CapExceededError,
    InvalidStayError,
    OutsideWindowError,
    ShrinkOnlyViolationError,
)
from turnkeeper.domain.models import AllocationWindow, Reservation, SelectionRound


def _nights(start: date, end: date) -> int:
    return (end - start).days


def find_window(
    windows: Iterable[AllocationWindow],
    start: date,
    end: date,
    family_group: Optional[str] = None,
) -> Optional[AllocationWindow]:
    """First window containing [start, end), optionally restricted to one group."""
    for window in windows:
        if family_group is not None and window.family_group != family_group:
            continue
        if window.contains(start, end):
            return window
    return None


def validate_new_booking(
    *,
    start: date,
    end: date,
    family_group: str,
    windows: Iterable[AllocationWindow],
    remaining: int,
    cap: int,
    selection_round: SelectionRound = SelectionRound.PRIMARY,
    open_booking: bool = False,
) -> AllocationWindow:
    """Accept a new stay and return the window it was drawn from.

    ``open_booking`` matches any group's window and skips the capacity
    pre-check; it is used once selection is over or by a calendar keeper.
    """
    nights = _nights(start, end)
    if nights < 1:
        raise InvalidStayError(
            [f"Stay must be at least 1 night; {start.isoformat()} to {end.isoformat()} is {nights}"]
        )

    window = find_window(windows, start, end, None if open_booking else family_group)
    if window is None:
        raise OutsideWindowError(family_group, start, end)

    if nights > window.max_nights:
        raise InvalidStayError(
            [f"Stay of {nights} nights exceeds the maximum of {window.max_nights} nights"]
        )

    if not open_booking and remaining <= 0:
        raise CapExceededError(family_group, selection_round.value, cap)
    return window


def validate_edit(reservation: Reservation, new_start: date, new_end: date) -> None:
    """Shrink-only rule: an edit may never reach outside the original allocation.

    All violated rules are reported together.
    """
    new_nights = _nights(new_start, new_end)
    if new_nights < 1:
        raise InvalidStayError(
            [
                f"Stay must be at least 1 night; {new_start.isoformat()} to "
                f"{new_end.isoformat()} is {new_nights}"
            ]
        )

    allocated_start = reservation.allocated_start or reservation.start_date
    allocated_end = reservation.allocated_end or reservation.end_date
    original_nights = reservation.nights

    reasons: list[str] = []
    if new_start < allocated_start:
        reasons.append(
            "Cannot move start date before original allocated period "
            f"({allocated_start.isoformat()})"
        )
    if new_end > allocated_end:
        reasons.append(
            "Cannot extend end date beyond original allocated period "
            f"({allocated_end.isoformat()})"
        )
    if new_nights > original_nights:
        reasons.append(
            "Cannot extend booking duration. "
            f"Original: {original_nights} nights, New: {new_nights} nights"
        )
    if reasons:
        raise ShrinkOnlyViolationError(reasons)
