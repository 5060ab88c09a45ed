from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from turnkeeper.domain.errors import SelectionStateError
from turnkeeper.domain.events import RoundCompleted, TurnEnded, TurnStarted
from turnkeeper.domain.models import (
    Complete,
    InProgress,
    NotStarted,
    RotationConfig,
    SelectionRound,
    TurnEndReason,
)
from turnkeeper.repository.data_repository import DataRepository
from turnkeeper.services.selection_service import SelectionService, is_current_turn
from turnkeeper.services.usage_ledger import UsageLedger
from turnkeeper.utils.config import get_settings


START = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    return replace(get_settings(), database_path=tmp_path / filename, reminder_lead_days=2)


def _build_services(tmp_path, filename: str, **overrides):
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    values = {
        "organization_id": "org",
        "rotation_year": 2025,
        "base_order": ("A", "B", "C"),
        "max_slots": 2,
        "selection_days": 14,
    }
    values.update(overrides)
    config = RotationConfig(**values)
    repository.save_rotation_config(config)
    clock = _Clock(START)
    ledger = UsageLedger(repository=repository, settings=settings, clock=clock)
    selection = SelectionService(repository=repository, settings=settings, clock=clock, ledger=ledger)
    return selection, ledger, clock, config, repository


def test_start_opens_first_turn(tmp_path) -> None:
    selection, _, _, _, _ = _build_services(tmp_path, "selection_start.db")

    transition = selection.primary.start("org", 2025)

    phase = transition.status.phase
    assert isinstance(phase, InProgress)
    assert phase.current_group == "A"
    assert transition.events == (
        TurnStarted(
            organization_id="org",
            rotation_year=2025,
            selection_round=SelectionRound.PRIMARY,
            family_group="A",
            turn_started_at=START,
            deadline=START + timedelta(days=14),
        ),
    )
    assert is_current_turn(transition.status, "A")
    assert not is_current_turn(transition.status, "B")
    assert selection.active_round("org", 2025) is SelectionRound.PRIMARY


def test_start_twice_is_rejected(tmp_path) -> None:
    selection, _, _, _, _ = _build_services(tmp_path, "selection_start_twice.db")
    selection.primary.start("org", 2025)

    with pytest.raises(SelectionStateError):
        selection.primary.start("org", 2025)


def test_advance_without_a_pick_passes_the_group(tmp_path) -> None:
    selection, _, _, _, _ = _build_services(tmp_path, "selection_pass.db")
    selection.primary.start("org", 2025)

    transition = selection.primary.advance("org", 2025, TurnEndReason.DECLINED)

    assert transition.status.phase.current_group == "B"
    assert transition.status.passed_groups == ("A",)
    ended, started = transition.events
    assert isinstance(ended, TurnEnded)
    assert ended.family_group == "A"
    assert ended.reason is TurnEndReason.DECLINED
    assert isinstance(started, TurnStarted)
    assert started.family_group == "B"


def test_advance_for_stale_group_is_a_no_op(tmp_path) -> None:
    selection, _, _, _, _ = _build_services(tmp_path, "selection_noop.db")
    selection.primary.start("org", 2025)

    transition = selection.primary.advance("org", 2025, expected_group="B")

    assert transition.events == ()
    assert transition.status.phase.current_group == "A"


def test_advance_before_start_is_a_no_op(tmp_path) -> None:
    selection, _, _, _, _ = _build_services(tmp_path, "selection_noop_idle.db")

    transition = selection.primary.advance("org", 2025)

    assert transition.events == ()
    assert isinstance(transition.status.phase, NotStarted)


def test_turns_cycle_until_every_group_is_done(tmp_path) -> None:
    selection, ledger, _, config, _ = _build_services(tmp_path, "selection_cycle.db")
    primary = selection.primary
    primary.start("org", 2025)

    ledger.increment(config, 2025, "A", SelectionRound.PRIMARY)
    status = primary.advance("org", 2025).status
    assert status.phase.current_group == "B"
    assert status.passed_groups == ()

    status = primary.advance("org", 2025, TurnEndReason.DECLINED).status
    assert status.phase.current_group == "C"
    status = primary.advance("org", 2025, TurnEndReason.DECLINED).status

    # A still has a period left and picked last time, so the turn wraps back.
    assert status.phase.current_group == "A"
    assert status.passed_groups == ("B", "C")

    ledger.increment(config, 2025, "A", SelectionRound.PRIMARY)
    transition = primary.advance("org", 2025)

    assert isinstance(transition.status.phase, Complete)
    assert isinstance(transition.events[-1], RoundCompleted)
    assert selection.all_rounds_finished("org", 2025)
    assert selection.active_round("org", 2025) is None


def test_expired_turn_advances_lazily_on_read(tmp_path) -> None:
    selection, _, clock, _, _ = _build_services(tmp_path, "selection_expire.db")
    selection.primary.start("org", 2025)

    clock.advance(days=14)
    assert selection.primary.refresh("org", 2025).events == ()

    clock.advance(minutes=1)
    transition = selection.primary.refresh("org", 2025)

    assert transition.events[0].reason is TurnEndReason.EXPIRED
    assert transition.status.phase.current_group == "B"
    assert transition.status.passed_groups == ("A",)
    assert transition.status.phase.turn_started_at == clock.now


def test_extension_pushes_deadline_and_is_cleared_on_advance(tmp_path) -> None:
    selection, _, clock, _, repository = _build_services(tmp_path, "selection_extend.db")
    primary = selection.primary
    primary.start("org", 2025)

    extension = primary.extend_turn("org", 2025, "A", START + timedelta(days=20), reason="travel")
    assert extension.original_end == START + timedelta(days=14)

    clock.advance(days=15)
    assert primary.is_current_turn("org", 2025, "A")

    clock.advance(days=6)
    status = primary.current_status("org", 2025)
    assert status.phase.current_group == "B"
    assert repository.load_selection_extension("org", 2025, SelectionRound.PRIMARY, "A") is None


def test_extension_must_outlast_base_deadline(tmp_path) -> None:
    selection, _, _, _, _ = _build_services(tmp_path, "selection_extend_short.db")
    selection.primary.start("org", 2025)

    with pytest.raises(SelectionStateError):
        selection.primary.extend_turn("org", 2025, "A", START + timedelta(days=10))
    with pytest.raises(SelectionStateError):
        selection.primary.extend_turn("org", 2025, "B", START + timedelta(days=30))


def test_reminder_only_within_lead_days(tmp_path) -> None:
    selection, _, clock, _, _ = _build_services(tmp_path, "selection_reminder.db")
    selection.primary.start("org", 2025)

    assert selection.primary.pending_reminder("org", 2025) is None

    clock.advance(days=13)
    reminder = selection.primary.pending_reminder("org", 2025)

    assert reminder is not None
    assert reminder.family_group == "A"
    assert reminder.days_remaining == 1
    assert reminder.deadline == START + timedelta(days=14)


def test_status_board_reports_progress(tmp_path) -> None:
    selection, _, clock, _, _ = _build_services(tmp_path, "selection_board.db")
    selection.primary.start("org", 2025)
    clock.advance(days=3)

    board = selection.primary.status_board("org", 2025)

    assert [(row.family_group, row.state) for row in board] == [
        ("A", "active"),
        ("B", "waiting"),
        ("C", "waiting"),
    ]
    assert board[0].progress_text == "Day 4 of 14"
    assert board[0].days_remaining == 11
    assert board[1].remaining == 2


def test_schedule_chains_full_windows(tmp_path) -> None:
    selection, _, _, _, _ = _build_services(tmp_path, "selection_schedule.db")
    selection.primary.start("org", 2025)

    schedule = selection.primary.schedule("org", 2025)

    assert [turn.family_group for turn in schedule] == ["A", "B", "C"]
    assert schedule[1].starts_at == START + timedelta(days=14)
    assert schedule[2].ends_at == START + timedelta(days=42)


def test_stale_status_write_loses_compare_and_swap(tmp_path) -> None:
    selection, _, _, _, repository = _build_services(tmp_path, "selection_cas.db")
    selection.primary.start("org", 2025)
    stale = repository.load_selection_status("org", 2025, SelectionRound.PRIMARY)

    selection.primary.advance("org", 2025)

    assert repository.save_selection_status(replace(stale, passed_groups=("X",))) is None
    current = repository.load_selection_status("org", 2025, SelectionRound.PRIMARY)
    assert current.version == stale.version + 1
    assert current.phase.current_group == "B"


def test_secondary_round_requires_enabled_flag(tmp_path) -> None:
    selection, _, _, _, _ = _build_services(tmp_path, "secondary_disabled.db")

    with pytest.raises(SelectionStateError):
        selection.secondary.start("org", 2025)


def test_secondary_round_waits_for_primary(tmp_path) -> None:
    selection, _, _, _, _ = _build_services(
        tmp_path, "secondary_wait.db", secondary_enabled=True
    )
    selection.primary.start("org", 2025)

    with pytest.raises(SelectionStateError):
        selection.secondary.start("org", 2025)


def test_secondary_round_runs_in_reverse_order(tmp_path) -> None:
    selection, _, _, _, _ = _build_services(
        tmp_path, "secondary_reverse.db", secondary_enabled=True, secondary_selection_days=7
    )
    selection.primary.start("org", 2025)
    for _ in range(3):
        selection.primary.advance("org", 2025, TurnEndReason.DECLINED)
    assert not selection.all_rounds_finished("org", 2025)

    transition = selection.secondary.start("org", 2025)

    assert transition.status.phase.current_group == "C"
    assert transition.events[0].deadline == START + timedelta(days=7)
    assert selection.secondary.order_for_year("org", 2025) == ("C", "B", "A")
    assert selection.active_round("org", 2025) is SelectionRound.SECONDARY
