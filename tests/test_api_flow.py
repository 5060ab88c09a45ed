from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from app import create_app
from turnkeeper.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    base = get_settings()
    return replace(base, database_path=tmp_path / filename, billing_amount=0.0)


def _fixed_clock() -> datetime:
    return datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


def _build_client(tmp_path, filename: str) -> TestClient:
    app = create_app(
        settings=_build_test_settings(tmp_path, filename),
        clock=_fixed_clock,
        seed_demo=False,
    )
    return TestClient(app)


def _configure(client: TestClient) -> None:
    response = client.put(
        "/organizations/org/rotation/2025",
        json={"base_order": ["A", "B", "C"], "max_slots": 2, "max_nights": 7},
    )
    assert response.status_code == 200
    assert response.json()["order"] == ["A", "B", "C"]


def test_rotation_and_window_endpoints(tmp_path):
    with _build_client(tmp_path, "api_windows.db") as client:
        _configure(client)

        order = client.get("/organizations/org/rotation/2026")
        assert order.status_code == 200
        assert order.json()["reference_year"] == 2025

        windows = client.get("/organizations/org/windows/2025")
        assert windows.status_code == 200
        payload = windows.json()
        assert len(payload) == 6
        assert payload[0]["family_group"] == "A"
        assert payload[0]["start_date"] == "2025-01-03"
        assert payload[0]["nights"] == 7

        february = client.get("/organizations/org/windows/2025", params={"month": 2})
        assert [w["family_group"] for w in february.json()] == ["B", "C"]

        missing = client.get("/organizations/nobody/rotation/2025")
        assert missing.status_code == 422

        duplicate = client.put(
            "/organizations/org/rotation/2025",
            json={"base_order": ["A", "A"]},
        )
        assert duplicate.status_code == 422


def test_selection_booking_and_settlement_flow(tmp_path):
    with _build_client(tmp_path, "api_flow.db") as client:
        _configure(client)

        started = client.post("/organizations/org/selection/2025/primary/start")
        assert started.status_code == 200
        body = started.json()
        assert body["phase"] == "in_progress"
        assert body["current_group"] == "A"
        assert body["events"][0]["type"] == "TurnStarted"
        assert body["board"][0]["state"] == "active"

        locked = client.put(
            "/organizations/org/rotation/2025",
            json={"base_order": ["C", "B", "A"]},
        )
        assert locked.status_code == 422

        booked = client.post(
            "/organizations/org/reservations",
            json={
                "family_group": "A",
                "start_date": "2025-01-04",
                "end_date": "2025-01-08",
                "guests": 4,
            },
        )
        assert booked.status_code == 201
        reservation = booked.json()
        assert reservation["period_number"] == 1
        assert reservation["selection_round"] == "primary"
        reservation_id = reservation["reservation_id"]

        usage = {row["family_group"]: row for row in client.get("/organizations/org/usage/2025").json()}
        assert usage["A"]["primary_used"] == 1
        assert usage["A"]["primary_remaining"] == 1

        wrong_turn = client.post(
            "/organizations/org/reservations",
            json={"family_group": "B", "start_date": "2025-01-11", "end_date": "2025-01-13"},
        )
        assert wrong_turn.status_code == 409

        backwards = client.post(
            "/organizations/org/reservations",
            json={"family_group": "A", "start_date": "2025-01-08", "end_date": "2025-01-04"},
        )
        assert backwards.status_code == 422

        stacked = client.post(
            "/organizations/org/reservations",
            json={"family_group": "A", "start_date": "2025-01-05", "end_date": "2025-01-09"},
        )
        assert stacked.status_code == 400
        assert stacked.json()["detail"]["error"] == "ReservationConflictError"
        assert stacked.json()["detail"]["reasons"] == ["overlaps A's stay 2025-01-04 to 2025-01-08"]

        split_request = {
            "recipients": [{"party": "B", "daily_guests": {"2025-01-04": 2}}],
            "total_amount": 400.0,
        }
        preview = client.post(f"/reservations/{reservation_id}/splits/preview", json=split_request)
        assert preview.status_code == 200
        assert preview.json()["is_valid"] is True
        assert preview.json()["per_diem_rate"] == 25.0
        assert preview.json()["recipients"][0]["amount"] == 50.0

        bad_split = client.post(
            f"/reservations/{reservation_id}/splits",
            json={
                "recipients": [{"party": "B", "daily_guests": {"2025-01-04": 2}}],
                "source_guests": {
                    "2025-01-04": 4,
                    "2025-01-05": 4,
                    "2025-01-06": 4,
                    "2025-01-07": 4,
                },
                "total_amount": 400.0,
            },
        )
        assert bad_split.status_code == 400
        assert bad_split.json()["detail"]["error"] == "SettlementValidationError"
        assert bad_split.json()["detail"]["violations"][0]["kind"] == "day_mismatch"

        committed = client.post(f"/reservations/{reservation_id}/splits", json=split_request)
        assert committed.status_code == 201
        split = committed.json()
        assert split["events"][0]["type"] == "SplitCreated"
        share_id = split["recipients"][0]["share_id"]

        paid = client.post(
            f"/splits/{split['split_id']}/shares/{share_id}/payments",
            json={"amount": 50.0},
        )
        assert paid.status_code == 200
        assert paid.json()["payment_status"] == "paid"

        blocked_edit = client.patch(
            f"/reservations/{reservation_id}",
            json={"start_date": "2025-01-05", "end_date": "2025-01-07"},
        )
        assert blocked_edit.status_code == 400
        assert blocked_edit.json()["detail"]["reasons"]

        blocked_delete = client.delete(f"/splits/{split['split_id']}")
        assert blocked_delete.status_code == 400

        summary = {
            row["family_group"]: row
            for row in client.get("/organizations/org/seasons/2025/summary").json()
        }
        assert summary["A"]["stays"] == 1
        assert summary["A"]["guest_nights"] == 16.0
        assert summary["A"]["split_out"] == 50.0
        assert summary["A"]["collected"] == 50.0
        assert summary["B"]["split_in"] == 50.0

        assert client.get("/reservations/999").status_code == 404


def test_selection_advance_and_reminder_endpoints(tmp_path):
    with _build_client(tmp_path, "api_advance.db") as client:
        _configure(client)
        client.post("/organizations/org/selection/2025/primary/start")

        stale = client.post(
            "/organizations/org/selection/2025/primary/advance",
            json={"family_group": "B"},
        )
        assert stale.json()["current_group"] == "A"
        assert stale.json()["events"] == []

        advanced = client.post(
            "/organizations/org/selection/2025/primary/advance",
            json={"family_group": "A", "reason": "declined"},
        )
        assert advanced.json()["current_group"] == "B"
        assert advanced.json()["passed_groups"] == ["A"]

        schedule = client.get("/organizations/org/selection/2025/primary/schedule")
        assert [turn["family_group"] for turn in schedule.json()] == ["B", "C"]

        reminder = client.get("/organizations/org/selection/2025/primary/reminder")
        assert reminder.json() == {"reminder": None}

        secondary = client.post("/organizations/org/selection/2025/secondary/start")
        assert secondary.status_code == 409
