"""Reservation lifecycle: book, edit and delete against the turn rules."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, timedelta
from typing import Mapping, Optional

from turnkeeper.domain.errors import (
    BookingRejectedError,
    CapExceededError,
    InvalidStayError,
    NotFoundError,
    OutsideWindowError,
    ReservationConflictError,
    SelectionStateError,
)
from turnkeeper.domain.events import EngineEvent
from turnkeeper.domain.models import Reservation, SelectionRound, TurnEndReason
from turnkeeper.repository.data_repository import DataRepository
from turnkeeper.services.billing_service import BillingCalculator
from turnkeeper.services.booking_validator import find_window, validate_edit, validate_new_booking
from turnkeeper.services.rotation_service import RotationService
from turnkeeper.services.selection_service import SelectionService
from turnkeeper.services.usage_ledger import UsageLedger
from turnkeeper.services.window_service import WindowService
from turnkeeper.utils.clock import Clock, utc_now
from turnkeeper.utils.config import Settings, get_settings
from turnkeeper.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class BookingResult:
    reservation: Reservation
    events: tuple[EngineEvent, ...] = ()


def _stay_nights(start: date, end: date) -> list[date]:
    return [start + timedelta(days=offset) for offset in range((end - start).days)]


def build_occupancy(
    start: date,
    end: date,
    guests: float = 0.0,
    daily_occupancy: Optional[Mapping[date, float]] = None,
) -> dict[date, float]:
    """One entry per night; explicit counts override the flat ``guests`` default."""
    nights = _stay_nights(start, end)
    explicit = dict(daily_occupancy or {})
    outside = sorted(day for day in explicit if day not in nights)
    if outside:
        raise InvalidStayError(
            [f"{day.isoformat()} is not a night of the stay" for day in outside]
        )
    negative = sorted(day for day, value in explicit.items() if value < 0)
    if negative or guests < 0:
        raise InvalidStayError(["guest counts cannot be negative"])
    return {night: float(explicit.get(night, guests)) for night in nights}


class ReservationService:
    """Validates and commits reservations, consuming and releasing usage."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
        billing: Optional[BillingCalculator] = None,
        selection_service: Optional[SelectionService] = None,
        window_service: Optional[WindowService] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock
        self._billing = billing
        self._rotation_service = RotationService(
            repository=self._repository, settings=self._settings, clock=clock
        )
        self._ledger = UsageLedger(repository=self._repository, settings=self._settings, clock=clock)
        self._selection = selection_service or SelectionService(
            repository=self._repository,
            settings=self._settings,
            clock=clock,
            rotation_service=self._rotation_service,
            ledger=self._ledger,
        )
        self._windows = window_service or WindowService(
            repository=self._repository,
            settings=self._settings,
            clock=clock,
            rotation_service=self._rotation_service,
        )

    def _total_cost(self, occupancy: Mapping[date, float], start: date, end: date) -> float:
        if self._billing is None:
            return 0.0
        return self._billing.from_daily_occupancy(occupancy, start=start, end=end).total

    def _locate_season(
        self,
        organization_id: str,
        family_group: str,
        start: date,
        end: date,
    ) -> int:
        """Season year whose windows contain the stay, whoever owns the window."""
        for year, windows in self._windows.seasons_covering(organization_id, start, end):
            if not self._windows.within_horizon(year):
                continue
            if find_window(windows, start, end):
                return year
        raise OutsideWindowError(family_group, start, end)

    def book(
        self,
        organization_id: str,
        family_group: str,
        start: date,
        end: date,
        *,
        guests: float = 0.0,
        daily_occupancy: Optional[Mapping[date, float]] = None,
        open_booking: bool = False,
    ) -> BookingResult:
        """Validate a stay, then consume usage and insert it in one transaction.

        Outside an open booking only the group holding the active turn may
        book. Once every round is finished any bookable window is open and
        no usage is consumed. No night may be held by two reservations of
        the organization; a checkout and a check-in may share a day.
        """
        if end <= start:
            raise InvalidStayError([f"Stay must be at least 1 night; {start} to {end} is not"])
        year = self._locate_season(organization_id, family_group, start, end)
        config = self._rotation_service.load_config(organization_id, year)

        selection_round: Optional[SelectionRound] = None
        if not open_booking:
            selection_round = self._selection.active_round(organization_id, year)
            if selection_round is None:
                if not self._selection.all_rounds_finished(organization_id, year):
                    raise SelectionStateError(f"selection for {year} has not started")
                open_booking = True
            elif not self._selection.machine(selection_round).is_current_turn(
                organization_id, year, family_group
            ):
                raise SelectionStateError(
                    f"it is not {family_group}'s turn in the {selection_round.value} round"
                )

        cap = config.cap_for(selection_round or SelectionRound.PRIMARY)
        remaining = (
            self._ledger.remaining(config, year, family_group, selection_round)
            if selection_round is not None
            else cap
        )
        window = validate_new_booking(
            start=start,
            end=end,
            family_group=family_group,
            windows=self._windows.sequence(organization_id, year),
            remaining=remaining,
            cap=cap,
            selection_round=selection_round or SelectionRound.PRIMARY,
            open_booking=open_booking,
        )
        self.check_conflicts(organization_id, start, end)

        occupancy = build_occupancy(start, end, guests, daily_occupancy)
        candidate = Reservation(
            organization_id=organization_id,
            family_group=family_group,
            start_date=start,
            end_date=end,
            daily_occupancy=occupancy,
            total_cost=self._total_cost(occupancy, start, end),
            allocated_start=window.start_date,
            allocated_end=window.end_date,
            period_number=window.period_index,
            selection_round=selection_round,
            rotation_year=year,
        )
        reservation = self._repository.create_reservation(
            candidate,
            usage_cap=cap,
            selected_at=self._clock(),
        )
        if reservation is None:
            logger.warning(
                "Booking lost capacity race | organization_id=%s group=%s round=%s",
                organization_id,
                family_group,
                selection_round.value if selection_round else "-",
            )
            raise CapExceededError(family_group, (selection_round or SelectionRound.PRIMARY).value, cap)

        logger.info(
            "Reservation booked | reservation_id=%s organization_id=%s group=%s start=%s end=%s round=%s period=%s",
            reservation.reservation_id,
            organization_id,
            family_group,
            start.isoformat(),
            end.isoformat(),
            selection_round.value if selection_round else "open",
            window.period_index,
        )

        events: tuple[EngineEvent, ...] = ()
        if selection_round is not None:
            if self._ledger.remaining(config, year, family_group, selection_round) == 0:
                transition = self._selection.machine(selection_round).advance(
                    organization_id,
                    year,
                    TurnEndReason.COMPLETED,
                    expected_group=family_group,
                )
                events = transition.events
        return BookingResult(reservation=reservation, events=events)

    def get(self, reservation_id: int) -> Reservation:
        reservation = self._repository.load_reservation(reservation_id)
        if reservation is None:
            raise NotFoundError(f"reservation {reservation_id} not found")
        return reservation

    def edit(
        self,
        reservation_id: int,
        new_start: date,
        new_end: date,
        *,
        daily_occupancy: Optional[Mapping[date, float]] = None,
    ) -> Reservation:
        """Shrink or shift a stay inside its original allocation."""
        reservation = self.get(reservation_id)
        validate_edit(reservation, new_start, new_end)
        if self._repository.list_cost_splits(reservation.organization_id, reservation_id):
            raise BookingRejectedError(
                ["Reservation has cost splits; delete them before changing its dates"]
            )
        self.check_conflicts(
            reservation.organization_id, new_start, new_end, exclude_id=reservation_id
        )

        carried = {
            day: guests
            for day, guests in reservation.daily_occupancy.items()
            if new_start <= day < new_end
        }
        carried.update(daily_occupancy or {})
        occupancy = build_occupancy(new_start, new_end, 0.0, carried)
        updated = replace(
            reservation,
            start_date=new_start,
            end_date=new_end,
            daily_occupancy=occupancy,
            total_cost=(
                self._total_cost(occupancy, new_start, new_end)
                if self._billing is not None
                else reservation.total_cost
            ),
        )
        self._repository.update_reservation(updated)
        logger.info(
            "Reservation edited | reservation_id=%s start=%s end=%s",
            reservation_id,
            new_start.isoformat(),
            new_end.isoformat(),
        )
        return updated

    def delete(self, reservation_id: int) -> Reservation:
        """Remove a reservation and release the usage period it consumed."""
        reservation = self.get(reservation_id)
        if not self._repository.delete_reservation(reservation):
            raise NotFoundError(f"reservation {reservation_id} not found")
        logger.info(
            "Reservation deleted | reservation_id=%s group=%s released_round=%s",
            reservation_id,
            reservation.family_group,
            reservation.selection_round.value if reservation.selection_round else "-",
        )
        return reservation

    def check_conflicts(
        self,
        organization_id: str,
        start: date,
        end: date,
        *,
        exclude_id: Optional[int] = None,
    ) -> None:
        """Raise ReservationConflictError if any stay of the organization holds a night in [start, end)."""
        conflicts = self._repository.load_reservations_for_window(
            organization_id, None, start, end, exclude_id=exclude_id
        )
        if conflicts:
            raise ReservationConflictError(
                [(existing.family_group, existing.start_date, existing.end_date) for existing in conflicts]
            )

