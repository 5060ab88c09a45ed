from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timezone

import pytest

from turnkeeper.domain.constraints import OCCUPANCY_EPSILON
from turnkeeper.domain.errors import NotFoundError, SettlementValidationError
from turnkeeper.domain.models import Reservation
from turnkeeper.repository.data_repository import DataRepository
from turnkeeper.services.settlement_service import (
    DayMismatch,
    PartyAllocation,
    SettlementEngine,
    StructuralViolation,
    build_plan,
    per_diem_rate,
)
from turnkeeper.utils.config import get_settings


D1 = date(2025, 6, 1)
D2 = date(2025, 6, 2)
D3 = date(2025, 6, 3)


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    return replace(get_settings(), database_path=tmp_path / filename)


def _fixed_clock() -> datetime:
    return datetime(2025, 6, 3, 12, 0, tzinfo=timezone.utc)


def _build_engine(tmp_path, filename: str) -> tuple[SettlementEngine, int, DataRepository]:
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    reservation = repository.create_reservation(
        Reservation(
            organization_id="org",
            family_group="A",
            start_date=D1,
            end_date=date(2025, 6, 3),
            daily_occupancy={D1: 4.0, D2: 2.0},
            total_cost=300.0,
        )
    )
    engine = SettlementEngine(repository=repository, settings=settings, clock=_fixed_clock)
    return engine, int(reservation.reservation_id), repository


def test_two_party_split_prices_at_per_diem() -> None:
    plan = build_plan(
        total_amount=300.0,
        ground_truth={D1: 4, D2: 2},
        source_party="A",
        recipients=[PartyAllocation("B", {D1: 2, D2: 1})],
    )

    assert plan.is_valid
    assert plan.per_diem_rate == pytest.approx(50.0)
    assert dict(plan.source.daily_guests) == {D1: 2.0, D2: 1.0}
    assert plan.source.amount == pytest.approx(150.0)
    assert plan.recipients[0].amount == pytest.approx(150.0)
    assert plan.source.amount + sum(r.amount for r in plan.recipients) == pytest.approx(300.0)


def test_per_diem_is_zero_without_guests() -> None:
    assert per_diem_rate(300.0, {D1: 0, D2: 0}) == 0.0


def test_mismatched_days_are_all_reported() -> None:
    plan = build_plan(
        total_amount=300.0,
        ground_truth={D1: 4, D2: 2},
        source_party="A",
        source_guests={D1: 1, D2: 1},
        recipients=[PartyAllocation("B", {D1: 2, D2: 2})],
    )

    mismatches = [v for v in plan.violations if isinstance(v, DayMismatch)]
    assert [(m.day, m.expected, m.actual) for m in mismatches] == [
        (D1, 4.0, 3.0),
        (D2, 2.0, 3.0),
    ]
    assert "2025-06-01" in mismatches[0].message


def test_structural_problems_are_collected_together() -> None:
    plan = build_plan(
        total_amount=300.0,
        ground_truth={D1: 4, D2: 2},
        source_party="A",
        source_guests={D1: 4, D2: 2},
        recipients=[PartyAllocation("B", {date(2025, 6, 9): 1, D1: -1})],
    )

    structural = [v for v in plan.violations if isinstance(v, StructuralViolation)]
    assert {v.party for v in structural} == {"B"}
    assert any("not a night of the reservation" in v.message for v in structural)
    assert any("cannot be negative" in v.message for v in structural)
    assert any(isinstance(v, DayMismatch) for v in plan.violations)


def test_split_without_recipients_is_invalid() -> None:
    plan = build_plan(
        total_amount=300.0,
        ground_truth={D1: 4},
        source_party="A",
        recipients=[],
    )

    assert not plan.is_valid
    assert plan.violations[0].message == "at least one recipient is required"


def test_commit_persists_split_and_emits_event(tmp_path) -> None:
    engine, reservation_id, _ = _build_engine(tmp_path, "settlement_commit.db")

    split, event = engine.commit(reservation_id, [PartyAllocation("B", {D1: 2, D2: 1})])

    assert split.split_id is not None
    assert split.source.party == "A"
    assert split.recipients[0].share_id is not None
    assert split.created_at == _fixed_clock()
    assert event.split_id == split.split_id
    assert event.recipient_parties == ("B",)
    assert event.recipient_amounts == pytest.approx((150.0,))
    assert engine.list_splits("org", reservation_id) == [split]


def test_invalid_commit_writes_nothing(tmp_path) -> None:
    engine, reservation_id, _ = _build_engine(tmp_path, "settlement_invalid.db")

    with pytest.raises(SettlementValidationError) as excinfo:
        engine.commit(
            reservation_id,
            [PartyAllocation("B", {D1: 5, D2: 1})],
            source_guests={D1: 0, D2: 0},
        )

    assert len(excinfo.value.violations) == 2
    assert engine.list_splits("org") == []


def test_preview_for_missing_reservation_raises(tmp_path) -> None:
    engine, _, _ = _build_engine(tmp_path, "settlement_missing.db")

    with pytest.raises(NotFoundError):
        engine.preview(999, [PartyAllocation("B", {D1: 1})])


def test_payments_accumulate_and_block_deletion(tmp_path) -> None:
    engine, reservation_id, _ = _build_engine(tmp_path, "settlement_payments.db")
    split, _ = engine.commit(reservation_id, [PartyAllocation("B", {D1: 2, D2: 1})])
    share_id = int(split.recipients[0].share_id)

    first = engine.record_payment(int(split.split_id), share_id, 100.0)
    assert first.payment_status == "partial"
    assert first.balance_due == pytest.approx(50.0)

    second = engine.record_payment(int(split.split_id), share_id, 50.0)
    assert second.payment_status == "paid"
    assert engine.get_split(int(split.split_id)).amount_collected == pytest.approx(150.0)

    with pytest.raises(SettlementValidationError):
        engine.record_payment(int(split.split_id), share_id, 0.0)
    with pytest.raises(NotFoundError):
        engine.record_payment(int(split.split_id), int(split.source.share_id), 10.0)
    with pytest.raises(SettlementValidationError):
        engine.delete_split(int(split.split_id))


def test_unpaid_split_can_be_deleted(tmp_path) -> None:
    engine, reservation_id, _ = _build_engine(tmp_path, "settlement_delete.db")
    split, _ = engine.commit(reservation_id, [PartyAllocation("B", {D1: 1})])

    engine.delete_split(int(split.split_id))

    assert engine.list_splits("org") == []
    with pytest.raises(NotFoundError):
        engine.get_split(int(split.split_id))


def test_uneven_split_conserves_guests_and_total(tmp_path) -> None:
    settings = _build_test_settings(tmp_path, "settlement_conservation.db")
    repository = DataRepository(settings)
    repository.initialize_database()
    ground_truth = {D1: 3.0, D2: 2.0, D3: 2.0}
    reservation = repository.create_reservation(
        Reservation(
            organization_id="org",
            family_group="A",
            start_date=D1,
            end_date=date(2025, 6, 4),
            daily_occupancy=ground_truth,
            total_cost=100.0,
        )
    )
    engine = SettlementEngine(repository=repository, settings=settings, clock=_fixed_clock)

    split, _ = engine.commit(
        int(reservation.reservation_id),
        [
            PartyAllocation("B", {D1: 1, D3: 1}),
            PartyAllocation("C", {D1: 1, D2: 1}),
        ],
    )

    assert split.per_diem_rate == pytest.approx(100.0 / 7)
    shares = (split.source, *split.recipients)
    for day, expected in ground_truth.items():
        assert sum(share.daily_guests.get(day, 0.0) for share in shares) == pytest.approx(expected)
    assert dict(split.source.daily_guests) == {D1: 1.0, D2: 1.0, D3: 1.0}
    assert abs(sum(share.amount for share in shares) - 100.0) <= OCCUPANCY_EPSILON
    assert [share.amount for share in split.recipients] == pytest.approx([200.0 / 7, 200.0 / 7])


def test_reservation_can_only_be_split_once(tmp_path) -> None:
    engine, reservation_id, repository = _build_engine(tmp_path, "settlement_twice.db")
    engine.commit(reservation_id, [PartyAllocation("B", {D1: 2, D2: 1})])

    with pytest.raises(SettlementValidationError) as excinfo:
        engine.commit(reservation_id, [PartyAllocation("B", {D1: 2, D2: 1})])

    assert excinfo.value.violations[0].message == "reservation already has a cost split"
    assert len(repository.list_cost_splits("org", reservation_id)) == 1


def test_repository_refuses_second_split_for_reservation(tmp_path) -> None:
    engine, reservation_id, repository = _build_engine(tmp_path, "settlement_twice_repo.db")
    split, _ = engine.commit(reservation_id, [PartyAllocation("B", {D1: 1})])

    assert repository.save_cost_split(replace(split, split_id=None)) is None
    assert [stored.split_id for stored in repository.list_cost_splits("org")] == [split.split_id]


def test_split_can_be_redone_after_unpaid_delete(tmp_path) -> None:
    engine, reservation_id, _ = _build_engine(tmp_path, "settlement_redo.db")
    first, _ = engine.commit(reservation_id, [PartyAllocation("B", {D1: 1})])
    engine.delete_split(int(first.split_id))

    second, _ = engine.commit(reservation_id, [PartyAllocation("C", {D2: 1})])

    assert [split.split_id for split in engine.list_splits("org", reservation_id)] == [second.split_id]


def test_overpayment_is_rejected(tmp_path) -> None:
    engine, reservation_id, _ = _build_engine(tmp_path, "settlement_overpay.db")
    split, _ = engine.commit(reservation_id, [PartyAllocation("B", {D1: 2, D2: 1})])
    share_id = int(split.recipients[0].share_id)
    engine.record_payment(int(split.split_id), share_id, 120.0)

    with pytest.raises(SettlementValidationError) as excinfo:
        engine.record_payment(int(split.split_id), share_id, 40.0)

    assert "exceeds balance due (30.00)" in excinfo.value.violations[0].message
    stored = engine.get_split(int(split.split_id)).recipients[0]
    assert stored.amount_paid == pytest.approx(120.0)
    assert engine.record_payment(int(split.split_id), share_id, 30.0).payment_status == "paid"
