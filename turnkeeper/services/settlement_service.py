"""Guest-night cost settlement across several payers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Mapping, Optional, Sequence, Union

from turnkeeper.domain.constraints import OCCUPANCY_EPSILON, within_epsilon
from turnkeeper.domain.errors import NotFoundError, SettlementValidationError
from turnkeeper.domain.events import SplitCreated
from turnkeeper.domain.models import CostSplit, Reservation, SplitShare
from turnkeeper.repository.data_repository import DataRepository
from turnkeeper.utils.clock import Clock, utc_now
from turnkeeper.utils.config import Settings, get_settings
from turnkeeper.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class DayMismatch:
    day: date
    expected: float
    actual: float

    @property
    def message(self) -> str:
        return (
            f"{self.day.isoformat()}: parties account for {self.actual:g} guests "
            f"but the reservation recorded {self.expected:g}"
        )


@dataclass(frozen=True)
class StructuralViolation:
    message: str
    party: Optional[str] = None


SettlementViolation = Union[DayMismatch, StructuralViolation]


@dataclass(frozen=True)
class PartyAllocation:
    party: str
    daily_guests: Mapping[date, float]


@dataclass(frozen=True)
class SettlementPlan:
    """A computed, not yet committed, partition of one reservation's cost."""

    reservation_id: Optional[int]
    total_amount: float
    per_diem_rate: float
    ground_truth: Mapping[date, float]
    source: SplitShare
    recipients: tuple[SplitShare, ...]
    violations: tuple[SettlementViolation, ...]

    @property
    def is_valid(self) -> bool:
        return not self.violations


def per_diem_rate(total_amount: float, ground_truth: Mapping[date, float]) -> float:
    guest_nights = float(sum(ground_truth.values()))
    if guest_nights <= 0:
        return 0.0
    return float(total_amount) / guest_nights


def party_amount(daily_guests: Mapping[date, float], rate: float) -> float:
    return float(sum(daily_guests.values())) * rate


def remaining_source_guests(
    ground_truth: Mapping[date, float],
    recipients: Sequence[PartyAllocation],
) -> dict[date, float]:
    """Guests left with the source party once recipients take their share."""
    return {
        day: float(guests) - sum(float(r.daily_guests.get(day, 0.0)) for r in recipients)
        for day, guests in ground_truth.items()
    }


def validate_split(
    ground_truth: Mapping[date, float],
    source: SplitShare,
    recipients: Sequence[SplitShare],
    epsilon: float = OCCUPANCY_EPSILON,
) -> list[SettlementViolation]:
    """Collect every violation instead of stopping at the first."""
    violations: list[SettlementViolation] = []
    if not recipients:
        violations.append(StructuralViolation("at least one recipient is required"))

    parties = [source, *recipients]
    for share in parties:
        unknown = sorted(day for day in share.daily_guests if day not in ground_truth)
        for day in unknown:
            violations.append(
                StructuralViolation(
                    f"{day.isoformat()} is not a night of the reservation",
                    party=share.party,
                )
            )
        for day, guests in sorted(share.daily_guests.items()):
            if guests < 0:
                violations.append(
                    StructuralViolation(
                        f"{day.isoformat()}: guest count cannot be negative ({guests:g})",
                        party=share.party,
                    )
                )

    for day in sorted(ground_truth):
        expected = float(ground_truth[day])
        actual = sum(float(share.daily_guests.get(day, 0.0)) for share in parties)
        if not within_epsilon(expected, actual, epsilon):
            violations.append(DayMismatch(day=day, expected=expected, actual=actual))

    for share in parties:
        if share.guest_nights > 0 and share.amount <= 0:
            violations.append(
                StructuralViolation(
                    "party with guests must owe a positive amount",
                    party=share.party,
                )
            )
    return violations


def build_plan(
    *,
    total_amount: float,
    ground_truth: Mapping[date, float],
    source_party: str,
    recipients: Sequence[PartyAllocation],
    source_guests: Optional[Mapping[date, float]] = None,
    reservation_id: Optional[int] = None,
    epsilon: float = OCCUPANCY_EPSILON,
) -> SettlementPlan:
    """Price each party at the reservation's per-diem rate and validate the partition.

    When ``source_guests`` is omitted the source keeps whatever the
    recipients do not take.
    """
    rate = per_diem_rate(total_amount, ground_truth)
    if source_guests is None:
        source_guests = remaining_source_guests(ground_truth, recipients)
    source = SplitShare(
        party=source_party,
        daily_guests=dict(source_guests),
        amount=party_amount(source_guests, rate),
    )
    recipient_shares = tuple(
        SplitShare(
            party=allocation.party,
            daily_guests=dict(allocation.daily_guests),
            amount=party_amount(allocation.daily_guests, rate),
        )
        for allocation in recipients
    )
    return SettlementPlan(
        reservation_id=reservation_id,
        total_amount=float(total_amount),
        per_diem_rate=rate,
        ground_truth=dict(ground_truth),
        source=source,
        recipients=recipient_shares,
        violations=tuple(validate_split(ground_truth, source, recipient_shares, epsilon)),
    )


ALREADY_SPLIT = "reservation already has a cost split"


def _overpayment(share: SplitShare, amount: float) -> StructuralViolation:
    return StructuralViolation(
        f"payment of {amount:.2f} exceeds balance due ({share.balance_due:.2f})",
        party=share.party,
    )


class SettlementEngine:
    """Previews, commits and tracks payments on reservation cost splits."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock

    def _load_reservation(self, reservation_id: int) -> Reservation:
        reservation = self._repository.load_reservation(reservation_id)
        if reservation is None:
            raise NotFoundError(f"reservation {reservation_id} not found")
        return reservation

    def preview(
        self,
        reservation_id: int,
        recipients: Sequence[PartyAllocation],
        *,
        source_party: Optional[str] = None,
        source_guests: Optional[Mapping[date, float]] = None,
        total_amount: Optional[float] = None,
    ) -> SettlementPlan:
        reservation = self._load_reservation(reservation_id)
        return build_plan(
            total_amount=reservation.total_cost if total_amount is None else total_amount,
            ground_truth=reservation.daily_occupancy,
            source_party=source_party or reservation.family_group,
            recipients=recipients,
            source_guests=source_guests,
            reservation_id=reservation_id,
            epsilon=self._settings.settlement_epsilon,
        )

    def commit(
        self,
        reservation_id: int,
        recipients: Sequence[PartyAllocation],
        *,
        source_party: Optional[str] = None,
        source_guests: Optional[Mapping[date, float]] = None,
        total_amount: Optional[float] = None,
    ) -> tuple[CostSplit, SplitCreated]:
        """Persist the split as one unit, or raise with every violation and write nothing."""
        plan = self.preview(
            reservation_id,
            recipients,
            source_party=source_party,
            source_guests=source_guests,
            total_amount=total_amount,
        )
        reservation = self._load_reservation(reservation_id)
        violations = list(plan.violations)
        if self._repository.list_cost_splits(reservation.organization_id, reservation_id):
            violations.insert(0, StructuralViolation(ALREADY_SPLIT))
        if violations:
            logger.warning(
                "Cost split rejected | reservation_id=%s violations=%s",
                reservation_id,
                len(violations),
            )
            raise SettlementValidationError(violations)

        split = self._repository.save_cost_split(
            CostSplit(
                organization_id=reservation.organization_id,
                reservation_id=reservation_id,
                total_amount=plan.total_amount,
                per_diem_rate=plan.per_diem_rate,
                source=plan.source,
                recipients=plan.recipients,
                created_at=self._clock(),
            )
        )
        if split is None:
            logger.warning("Cost split lost commit race | reservation_id=%s", reservation_id)
            raise SettlementValidationError([StructuralViolation(ALREADY_SPLIT)])
        event = SplitCreated(
            organization_id=split.organization_id,
            split_id=int(split.split_id),
            reservation_id=reservation_id,
            source_party=split.source.party,
            recipient_parties=tuple(share.party for share in split.recipients),
            recipient_amounts=tuple(share.amount for share in split.recipients),
        )
        logger.info(
            "Cost split committed | split_id=%s reservation_id=%s rate=%.4f recipients=%s",
            split.split_id,
            reservation_id,
            split.per_diem_rate,
            len(split.recipients),
        )
        return split, event

    def get_split(self, split_id: int) -> CostSplit:
        split = self._repository.load_cost_split(split_id)
        if split is None:
            raise NotFoundError(f"cost split {split_id} not found")
        return split

    def list_splits(self, organization_id: str, reservation_id: Optional[int] = None) -> list[CostSplit]:
        return self._repository.list_cost_splits(organization_id, reservation_id)

    def record_payment(self, split_id: int, share_id: int, amount: float) -> SplitShare:
        split = self.get_split(split_id)
        share = next((r for r in split.recipients if r.share_id == share_id), None)
        if share is None:
            raise NotFoundError(f"recipient share {share_id} not found on split {split_id}")
        if amount <= 0:
            raise SettlementValidationError(
                [StructuralViolation("payment amount must be greater than 0", party=share.party)]
            )
        tolerance = self._settings.settlement_epsilon
        if amount > share.balance_due + tolerance:
            raise SettlementValidationError([_overpayment(share, amount)])
        amount_paid = self._repository.record_split_payment(share_id, amount, tolerance=tolerance)
        if amount_paid is None:
            # Another payment landed between the read and the write.
            current = self.get_split(split_id)
            latest = next(r for r in current.recipients if r.share_id == share_id)
            raise SettlementValidationError([_overpayment(latest, amount)])
        updated = SplitShare(
            party=share.party,
            daily_guests=share.daily_guests,
            amount=share.amount,
            amount_paid=amount_paid,
            share_id=share_id,
        )
        logger.info(
            "Split payment recorded | split_id=%s share_id=%s amount=%.2f status=%s",
            split_id,
            share_id,
            amount,
            updated.payment_status,
        )
        return updated

    def delete_split(self, split_id: int) -> None:
        self.get_split(split_id)
        if not self._repository.delete_cost_split(split_id):
            raise SettlementValidationError(
                [StructuralViolation("split has recorded payments and cannot be deleted")]
            )
        logger.info("Cost split deleted | split_id=%s", split_id)
