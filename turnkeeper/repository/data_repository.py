"""Repository layer responsible for all database access."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Iterator, Mapping, Optional

from turnkeeper.domain.errors import ReservationConflictError
from turnkeeper.domain.models import (
    Complete,
    CostSplit,
    FamilyGroup,
    GroupMember,
    InProgress,
    NotStarted,
    PartialBlockPolicy,
    Reservation,
    RotationConfig,
    RotationDirection,
    RotationMode,
    SelectionExtension,
    SelectionRound,
    SelectionStatus,
    SplitShare,
    UsageRecord,
    WindowTermination,
)
from turnkeeper.utils.config import Settings, get_settings
from turnkeeper.utils.logger import get_logger


logger = get_logger(__name__)

_USAGE_COLUMNS = {
    SelectionRound.PRIMARY: "primary_used",
    SelectionRound.SECONDARY: "secondary_used",
}


def _dump_daily(values: Mapping[date, float]) -> str:
    return json.dumps({day.isoformat(): values[day] for day in sorted(values)})


def _load_daily(raw: str | None) -> dict[date, float]:
    if not raw:
        return {}
    return {date.fromisoformat(key): value for key, value in json.loads(raw).items()}


def _parse_datetime(raw: str | None) -> Optional[datetime]:
    if raw is None:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_date(raw: str | None) -> Optional[date]:
    return date.fromisoformat(raw) if raw else None


class DataRepository:
    """Encapsulates SQLite access so engine logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path, timeout=10.0)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize writers with an immediate lock; commit or roll back as a unit."""
        connection = self._connect()
        try:
            connection.execute("BEGIN IMMEDIATE;")
            yield connection
            connection.commit()
        except BaseException:
            connection.rollback()
            raise
        finally:
            connection.close()

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS FamilyGroups (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        organization_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        lead_name TEXT,
                        lead_email TEXT,
                        lead_phone TEXT,
                        members TEXT NOT NULL DEFAULT '[]',
                        UNIQUE (organization_id, name)
                    );

                    CREATE TABLE IF NOT EXISTS RotationConfigs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        organization_id TEXT NOT NULL,
                        rotation_year INTEGER NOT NULL,
                        base_order TEXT NOT NULL,
                        mode TEXT NOT NULL,
                        direction TEXT NOT NULL,
                        max_slots INTEGER NOT NULL CHECK (max_slots > 0),
                        max_nights INTEGER NOT NULL CHECK (max_nights > 0),
                        start_weekday TEXT NOT NULL,
                        start_time TEXT NOT NULL,
                        start_month TEXT NOT NULL,
                        selection_days INTEGER NOT NULL,
                        secondary_enabled INTEGER NOT NULL DEFAULT 0,
                        secondary_max_slots INTEGER NOT NULL DEFAULT 1,
                        secondary_selection_days INTEGER NOT NULL DEFAULT 7,
                        termination TEXT NOT NULL DEFAULT 'all_slots',
                        partial_blocks TEXT NOT NULL DEFAULT 'none',
                        season_months INTEGER NOT NULL DEFAULT 12,
                        UNIQUE (organization_id, rotation_year)
                    );

                    CREATE TABLE IF NOT EXISTS TimePeriodUsage (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        organization_id TEXT NOT NULL,
                        rotation_year INTEGER NOT NULL,
                        family_group TEXT NOT NULL,
                        primary_used INTEGER NOT NULL DEFAULT 0 CHECK (primary_used >= 0),
                        secondary_used INTEGER NOT NULL DEFAULT 0 CHECK (secondary_used >= 0),
                        selection_round TEXT NOT NULL DEFAULT 'primary',
                        last_selection_at TEXT,
                        UNIQUE (organization_id, rotation_year, family_group)
                    );

                    CREATE TABLE IF NOT EXISTS SelectionStatus (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        organization_id TEXT NOT NULL,
                        rotation_year INTEGER NOT NULL,
                        selection_round TEXT NOT NULL,
                        phase TEXT NOT NULL,
                        current_group TEXT,
                        current_index INTEGER,
                        turn_started_at TEXT,
                        used_at_turn_start INTEGER NOT NULL DEFAULT 0,
                        completed_at TEXT,
                        passed_groups TEXT NOT NULL DEFAULT '[]',
                        version INTEGER NOT NULL DEFAULT 1,
                        UNIQUE (organization_id, rotation_year, selection_round)
                    );

                    CREATE TABLE IF NOT EXISTS SelectionExtensions (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        organization_id TEXT NOT NULL,
                        rotation_year INTEGER NOT NULL,
                        selection_round TEXT NOT NULL,
                        family_group TEXT NOT NULL,
                        original_end TEXT NOT NULL,
                        extended_until TEXT NOT NULL,
                        reason TEXT,
                        UNIQUE (organization_id, rotation_year, selection_round, family_group)
                    );

                    CREATE TABLE IF NOT EXISTS Reservations (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        organization_id TEXT NOT NULL,
                        family_group TEXT NOT NULL,
                        start_date TEXT NOT NULL,
                        end_date TEXT NOT NULL,
                        daily_occupancy TEXT NOT NULL DEFAULT '{}',
                        total_cost REAL NOT NULL DEFAULT 0,
                        allocated_start TEXT,
                        allocated_end TEXT,
                        period_number INTEGER,
                        selection_round TEXT,
                        rotation_year INTEGER,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        CHECK (start_date < end_date)
                    );

                    CREATE TABLE IF NOT EXISTS CostSplits (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        organization_id TEXT NOT NULL,
                        reservation_id INTEGER NOT NULL,
                        total_amount REAL NOT NULL,
                        per_diem_rate REAL NOT NULL,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (reservation_id) REFERENCES Reservations(id) ON DELETE CASCADE
                    );

                    CREATE TABLE IF NOT EXISTS SplitShares (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        split_id INTEGER NOT NULL,
                        role TEXT NOT NULL CHECK (role IN ('source', 'recipient')),
                        party TEXT NOT NULL,
                        daily_guests TEXT NOT NULL,
                        amount REAL NOT NULL,
                        amount_paid REAL NOT NULL DEFAULT 0,
                        FOREIGN KEY (split_id) REFERENCES CostSplits(id) ON DELETE CASCADE
                    );

                    CREATE INDEX IF NOT EXISTS idx_reservations_org_group_dates
                    ON Reservations(organization_id, family_group, start_date, end_date);

                    CREATE INDEX IF NOT EXISTS idx_split_shares_split
                    ON SplitShares(split_id);

                    CREATE UNIQUE INDEX IF NOT EXISTS idx_cost_splits_reservation
                    ON CostSplits(reservation_id);
                    """
                )
                conn.commit()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def seed_demo_organization(self, organization_id: str, rotation_year: int) -> None:
        """Seed a small demo organization only when it has no rotation config."""
        if self.load_rotation_config(organization_id, rotation_year) is not None:
            logger.info("Demo organization already present; skipping seed")
            return

        groups = [
            FamilyGroup(organization_id, "Anderson", lead_name="Ruth Anderson"),
            FamilyGroup(organization_id, "Baker", lead_name="Tom Baker"),
            FamilyGroup(organization_id, "Carlson", lead_name="Ida Carlson"),
            FamilyGroup(organization_id, "Dawson", lead_name="Lee Dawson"),
        ]
        for group in groups:
            self.save_family_group(group)
        self.save_rotation_config(
            RotationConfig(
                organization_id=organization_id,
                rotation_year=rotation_year,
                base_order=tuple(group.name for group in groups),
                mode=RotationMode.ROTATES,
                secondary_enabled=True,
            )
        )
        self.initialize_usage(organization_id, rotation_year, [group.name for group in groups])
        logger.info("Demo organization seeded | organization_id=%s", organization_id)

    # Family groups

    def save_family_group(self, group: FamilyGroup) -> None:
        members = json.dumps(
            [{"name": m.name, "email": m.email, "phone": m.phone} for m in group.members]
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO FamilyGroups (
                    organization_id, name, lead_name, lead_email, lead_phone, members
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (organization_id, name) DO UPDATE SET
                    lead_name = excluded.lead_name,
                    lead_email = excluded.lead_email,
                    lead_phone = excluded.lead_phone,
                    members = excluded.members;
                """,
                (
                    group.organization_id,
                    group.name,
                    group.lead_name,
                    group.lead_email,
                    group.lead_phone,
                    members,
                ),
            )
            conn.commit()

    def list_family_groups(self, organization_id: str) -> list[FamilyGroup]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT organization_id, name, lead_name, lead_email, lead_phone, members
                FROM FamilyGroups
                WHERE organization_id = ?
                ORDER BY name ASC;
                """,
                (organization_id,),
            )
            return [
                FamilyGroup(
                    organization_id=str(row["organization_id"]),
                    name=str(row["name"]),
                    lead_name=row["lead_name"],
                    lead_email=row["lead_email"],
                    lead_phone=row["lead_phone"],
                    members=tuple(
                        GroupMember(**member) for member in json.loads(row["members"])
                    ),
                )
                for row in cursor.fetchall()
            ]

    # Rotation configuration

    def save_rotation_config(self, config: RotationConfig) -> None:
        """Insert or replace the config for (organization, rotation_year)."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO RotationConfigs (
                    organization_id, rotation_year, base_order, mode, direction,
                    max_slots, max_nights, start_weekday, start_time, start_month,
                    selection_days, secondary_enabled, secondary_max_slots,
                    secondary_selection_days, termination, partial_blocks, season_months
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    config.organization_id,
                    config.rotation_year,
                    json.dumps(list(config.base_order)),
                    config.mode.value,
                    config.direction.value,
                    config.max_slots,
                    config.max_nights,
                    config.start_weekday,
                    config.start_time.strftime("%H:%M"),
                    config.start_month,
                    config.selection_days,
                    int(config.secondary_enabled),
                    config.secondary_max_slots,
                    config.secondary_selection_days,
                    config.termination.value,
                    config.partial_blocks.value,
                    config.season_months,
                ),
            )
            conn.commit()

    def load_rotation_config(
        self,
        organization_id: str,
        rotation_year: int,
    ) -> Optional[RotationConfig]:
        """Return the year's config, else the latest earlier one (its reference year kept)."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT *
                FROM RotationConfigs
                WHERE organization_id = ? AND rotation_year <= ?
                ORDER BY rotation_year DESC
                LIMIT 1;
                """,
                (organization_id, rotation_year),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return RotationConfig(
                organization_id=str(row["organization_id"]),
                rotation_year=int(row["rotation_year"]),
                base_order=tuple(str(name) for name in json.loads(row["base_order"])),
                mode=RotationMode(row["mode"]),
                direction=RotationDirection(row["direction"]),
                max_slots=int(row["max_slots"]),
                max_nights=int(row["max_nights"]),
                start_weekday=str(row["start_weekday"]),
                start_time=time.fromisoformat(row["start_time"]),
                start_month=str(row["start_month"]),
                selection_days=int(row["selection_days"]),
                secondary_enabled=bool(row["secondary_enabled"]),
                secondary_max_slots=int(row["secondary_max_slots"]),
                secondary_selection_days=int(row["secondary_selection_days"]),
                termination=WindowTermination(row["termination"]),
                partial_blocks=PartialBlockPolicy(row["partial_blocks"]),
                season_months=int(row["season_months"]),
            )

    # Usage ledger

    def initialize_usage(
        self,
        organization_id: str,
        rotation_year: int,
        family_groups: list[str],
    ) -> None:
        """Create zeroed usage rows for groups that have none yet."""
        if not family_groups:
            return
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT OR IGNORE INTO TimePeriodUsage (organization_id, rotation_year, family_group)
                VALUES (?, ?, ?);
                """,
                [(organization_id, rotation_year, group) for group in family_groups],
            )
            conn.commit()

    @staticmethod
    def _row_to_usage(row: sqlite3.Row) -> UsageRecord:
        return UsageRecord(
            organization_id=str(row["organization_id"]),
            rotation_year=int(row["rotation_year"]),
            family_group=str(row["family_group"]),
            primary_used=int(row["primary_used"]),
            secondary_used=int(row["secondary_used"]),
            selection_round=SelectionRound(row["selection_round"]),
            last_selection_at=_parse_datetime(row["last_selection_at"]),
        )

    def load_usage(
        self,
        organization_id: str,
        rotation_year: int,
        family_group: str,
    ) -> UsageRecord:
        """Return the usage row, or a zeroed record when none exists."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT *
                FROM TimePeriodUsage
                WHERE organization_id = ? AND rotation_year = ? AND family_group = ?;
                """,
                (organization_id, rotation_year, family_group),
            )
            row = cursor.fetchone()
            if row is None:
                return UsageRecord(organization_id, rotation_year, family_group)
            return self._row_to_usage(row)

    def list_usage(self, organization_id: str, rotation_year: int) -> list[UsageRecord]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT *
                FROM TimePeriodUsage
                WHERE organization_id = ? AND rotation_year = ?
                ORDER BY family_group ASC;
                """,
                (organization_id, rotation_year),
            )
            return [self._row_to_usage(row) for row in cursor.fetchall()]

    @staticmethod
    def _increment_usage_row(
        conn: sqlite3.Connection,
        organization_id: str,
        rotation_year: int,
        family_group: str,
        selection_round: SelectionRound,
        cap: int,
        selected_at: datetime,
    ) -> bool:
        column = _USAGE_COLUMNS[selection_round]
        conn.execute(
            """
            INSERT OR IGNORE INTO TimePeriodUsage (organization_id, rotation_year, family_group)
            VALUES (?, ?, ?);
            """,
            (organization_id, rotation_year, family_group),
        )
        cursor = conn.execute(
            f"""
            UPDATE TimePeriodUsage
            SET {column} = {column} + 1,
                selection_round = ?,
                last_selection_at = ?
            WHERE organization_id = ?
              AND rotation_year = ?
              AND family_group = ?
              AND {column} < ?;
            """,
            (
                selection_round.value,
                selected_at.isoformat(),
                organization_id,
                rotation_year,
                family_group,
                cap,
            ),
        )
        return cursor.rowcount == 1

    def increment_usage(
        self,
        organization_id: str,
        rotation_year: int,
        family_group: str,
        selection_round: SelectionRound,
        cap: int,
        selected_at: datetime,
    ) -> bool:
        """Conditionally add one period; returns False when the cap is already reached."""
        with self._transaction() as conn:
            return self._increment_usage_row(
                conn,
                organization_id,
                rotation_year,
                family_group,
                selection_round,
                cap,
                selected_at,
            )

    @staticmethod
    def _release_usage_row(
        conn: sqlite3.Connection,
        organization_id: str,
        rotation_year: int,
        family_group: str,
        selection_round: SelectionRound,
    ) -> bool:
        column = _USAGE_COLUMNS[selection_round]
        cursor = conn.execute(
            f"""
            UPDATE TimePeriodUsage
            SET {column} = {column} - 1
            WHERE organization_id = ?
              AND rotation_year = ?
              AND family_group = ?
              AND {column} > 0;
            """,
            (organization_id, rotation_year, family_group),
        )
        return cursor.rowcount == 1

    def release_usage(
        self,
        organization_id: str,
        rotation_year: int,
        family_group: str,
        selection_round: SelectionRound,
    ) -> bool:
        with self._transaction() as conn:
            return self._release_usage_row(
                conn, organization_id, rotation_year, family_group, selection_round
            )

    # Selection status

    def load_selection_status(
        self,
        organization_id: str,
        rotation_year: int,
        selection_round: SelectionRound,
    ) -> SelectionStatus:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT *
                FROM SelectionStatus
                WHERE organization_id = ? AND rotation_year = ? AND selection_round = ?;
                """,
                (organization_id, rotation_year, selection_round.value),
            )
            row = cursor.fetchone()
        if row is None:
            return SelectionStatus(organization_id, rotation_year, selection_round)

        phase_name = str(row["phase"])
        if phase_name == "in_progress":
            phase = InProgress(
                current_group=str(row["current_group"]),
                current_index=int(row["current_index"]),
                turn_started_at=_parse_datetime(row["turn_started_at"]),
                used_at_turn_start=int(row["used_at_turn_start"]),
            )
        elif phase_name == "complete":
            phase = Complete(completed_at=_parse_datetime(row["completed_at"]))
        else:
            phase = NotStarted()
        return SelectionStatus(
            organization_id=organization_id,
            rotation_year=rotation_year,
            selection_round=selection_round,
            phase=phase,
            passed_groups=tuple(json.loads(row["passed_groups"])),
            version=int(row["version"]),
        )

    def save_selection_status(self, status: SelectionStatus) -> Optional[SelectionStatus]:
        """Compare-and-swap write keyed on ``status.version``.

        Returns the stored status with its new version, or None when another
        writer got there first.
        """
        phase = status.phase
        current_group = current_index = turn_started_at = completed_at = None
        used_at_turn_start = 0
        if isinstance(phase, InProgress):
            phase_name = "in_progress"
            current_group = phase.current_group
            current_index = phase.current_index
            turn_started_at = phase.turn_started_at.isoformat()
            used_at_turn_start = phase.used_at_turn_start
        elif isinstance(phase, Complete):
            phase_name = "complete"
            completed_at = phase.completed_at.isoformat()
        else:
            phase_name = "not_started"

        values = (
            phase_name,
            current_group,
            current_index,
            turn_started_at,
            used_at_turn_start,
            completed_at,
            json.dumps(list(status.passed_groups)),
        )
        new_version = status.version + 1
        with self._transaction() as conn:
            if status.version == 0:
                try:
                    conn.execute(
                        """
                        INSERT INTO SelectionStatus (
                            phase, current_group, current_index, turn_started_at,
                            used_at_turn_start, completed_at, passed_groups,
                            version, organization_id, rotation_year, selection_round
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                        """,
                        values
                        + (
                            new_version,
                            status.organization_id,
                            status.rotation_year,
                            status.selection_round.value,
                        ),
                    )
                except sqlite3.IntegrityError:
                    return None
            else:
                cursor = conn.execute(
                    """
                    UPDATE SelectionStatus
                    SET phase = ?, current_group = ?, current_index = ?, turn_started_at = ?,
                        used_at_turn_start = ?, completed_at = ?, passed_groups = ?,
                        version = ?
                    WHERE organization_id = ?
                      AND rotation_year = ?
                      AND selection_round = ?
                      AND version = ?;
                    """,
                    values
                    + (
                        new_version,
                        status.organization_id,
                        status.rotation_year,
                        status.selection_round.value,
                        status.version,
                    ),
                )
                if cursor.rowcount != 1:
                    return None
        return SelectionStatus(
            organization_id=status.organization_id,
            rotation_year=status.rotation_year,
            selection_round=status.selection_round,
            phase=status.phase,
            passed_groups=status.passed_groups,
            version=new_version,
        )

    def mark_usage_round(
        self,
        organization_id: str,
        rotation_year: int,
        selection_round: SelectionRound,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE TimePeriodUsage
                SET selection_round = ?
                WHERE organization_id = ? AND rotation_year = ?;
                """,
                (selection_round.value, organization_id, rotation_year),
            )
            conn.commit()

    # Selection extensions

    def save_selection_extension(self, extension: SelectionExtension) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO SelectionExtensions (
                    organization_id, rotation_year, selection_round, family_group,
                    original_end, extended_until, reason
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (organization_id, rotation_year, selection_round, family_group)
                DO UPDATE SET
                    extended_until = excluded.extended_until,
                    reason = excluded.reason;
                """,
                (
                    extension.organization_id,
                    extension.rotation_year,
                    extension.selection_round.value,
                    extension.family_group,
                    extension.original_end.isoformat(),
                    extension.extended_until.isoformat(),
                    extension.reason,
                ),
            )
            conn.commit()

    def load_selection_extension(
        self,
        organization_id: str,
        rotation_year: int,
        selection_round: SelectionRound,
        family_group: str,
    ) -> Optional[SelectionExtension]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT *
                FROM SelectionExtensions
                WHERE organization_id = ? AND rotation_year = ?
                  AND selection_round = ? AND family_group = ?;
                """,
                (organization_id, rotation_year, selection_round.value, family_group),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return SelectionExtension(
                organization_id=organization_id,
                rotation_year=rotation_year,
                selection_round=selection_round,
                family_group=family_group,
                original_end=_parse_datetime(row["original_end"]),
                extended_until=_parse_datetime(row["extended_until"]),
                reason=row["reason"],
            )

    def delete_selection_extension(
        self,
        organization_id: str,
        rotation_year: int,
        selection_round: SelectionRound,
        family_group: str,
    ) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                DELETE FROM SelectionExtensions
                WHERE organization_id = ? AND rotation_year = ?
                  AND selection_round = ? AND family_group = ?;
                """,
                (organization_id, rotation_year, selection_round.value, family_group),
            )
            conn.commit()
            return cursor.rowcount > 0

    # Reservations

    @staticmethod
    def _row_to_reservation(row: sqlite3.Row) -> Reservation:
        return Reservation(
            reservation_id=int(row["id"]),
            organization_id=str(row["organization_id"]),
            family_group=str(row["family_group"]),
            start_date=date.fromisoformat(row["start_date"]),
            end_date=date.fromisoformat(row["end_date"]),
            daily_occupancy=_load_daily(row["daily_occupancy"]),
            total_cost=float(row["total_cost"]),
            allocated_start=_parse_date(row["allocated_start"]),
            allocated_end=_parse_date(row["allocated_end"]),
            period_number=row["period_number"],
            selection_round=(
                SelectionRound(row["selection_round"]) if row["selection_round"] else None
            ),
            rotation_year=row["rotation_year"],
        )

    def create_reservation(
        self,
        reservation: Reservation,
        *,
        usage_cap: Optional[int] = None,
        selected_at: Optional[datetime] = None,
    ) -> Optional[Reservation]:
        """Insert a reservation, consuming one usage period in the same transaction.

        Raises ReservationConflictError when another stay of the
        organization already holds any of the nights. When
        ``reservation.selection_round`` is set the usage row is
        conditionally incremented first; if that loses against the cap
        nothing is written and None is returned.
        """
        with self._transaction() as conn:
            self._raise_on_overlap(conn, reservation)
            if reservation.selection_round is not None:
                if reservation.rotation_year is None or usage_cap is None:
                    raise ValueError("rotation_year and usage_cap are required to consume usage")
                consumed = self._increment_usage_row(
                    conn,
                    reservation.organization_id,
                    reservation.rotation_year,
                    reservation.family_group,
                    reservation.selection_round,
                    usage_cap,
                    selected_at or datetime.now(timezone.utc),
                )
                if not consumed:
                    return None
            cursor = conn.execute(
                """
                INSERT INTO Reservations (
                    organization_id, family_group, start_date, end_date, daily_occupancy,
                    total_cost, allocated_start, allocated_end, period_number, selection_round,
                    rotation_year
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    reservation.organization_id,
                    reservation.family_group,
                    reservation.start_date.isoformat(),
                    reservation.end_date.isoformat(),
                    _dump_daily(reservation.daily_occupancy),
                    reservation.total_cost,
                    reservation.allocated_start.isoformat() if reservation.allocated_start else None,
                    reservation.allocated_end.isoformat() if reservation.allocated_end else None,
                    reservation.period_number,
                    reservation.selection_round.value if reservation.selection_round else None,
                    reservation.rotation_year,
                ),
            )
            reservation_id = int(cursor.lastrowid)
        return self.load_reservation(reservation_id)

    def load_reservation(self, reservation_id: int) -> Optional[Reservation]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM Reservations WHERE id = ?;", (reservation_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_reservation(row)

    def update_reservation(self, reservation: Reservation) -> None:
        """Persist new dates, occupancy and cost; allocation bounds are never rewritten."""
        with self._transaction() as conn:
            self._raise_on_overlap(conn, reservation)
            conn.execute(
                """
                UPDATE Reservations
                SET start_date = ?, end_date = ?, daily_occupancy = ?, total_cost = ?
                WHERE id = ?;
                """,
                (
                    reservation.start_date.isoformat(),
                    reservation.end_date.isoformat(),
                    _dump_daily(reservation.daily_occupancy),
                    reservation.total_cost,
                    reservation.reservation_id,
                ),
            )

    def delete_reservation(self, reservation: Reservation) -> bool:
        """Delete a reservation and hand back the usage period it consumed."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM Reservations WHERE id = ?;",
                (reservation.reservation_id,),
            )
            if cursor.rowcount != 1:
                return False
            if reservation.selection_round is not None and reservation.rotation_year is not None:
                self._release_usage_row(
                    conn,
                    reservation.organization_id,
                    reservation.rotation_year,
                    reservation.family_group,
                    reservation.selection_round,
                )
            return True

    @classmethod
    def _overlapping(
        cls,
        conn: sqlite3.Connection,
        organization_id: str,
        start: date,
        end: date,
        family_group: Optional[str] = None,
        exclude_id: Optional[int] = None,
    ) -> list[Reservation]:
        # Half-open ranges: a checkout on the day another stay checks in does not overlap.
        clauses = ["organization_id = ?", "start_date < ?", "end_date > ?"]
        params: list[object] = [organization_id, end.isoformat(), start.isoformat()]
        if family_group is not None:
            clauses.append("family_group = ?")
            params.append(family_group)
        if exclude_id is not None:
            clauses.append("id != ?")
            params.append(exclude_id)
        cursor = conn.execute(
            f"""
            SELECT *
            FROM Reservations
            WHERE {' AND '.join(clauses)}
            ORDER BY start_date ASC, id ASC;
            """,
            tuple(params),
        )
        return [cls._row_to_reservation(row) for row in cursor.fetchall()]

    def _raise_on_overlap(self, conn: sqlite3.Connection, reservation: Reservation) -> None:
        conflicts = self._overlapping(
            conn,
            reservation.organization_id,
            reservation.start_date,
            reservation.end_date,
            exclude_id=reservation.reservation_id,
        )
        if conflicts:
            logger.warning(
                "Reservation overlaps existing stays | organization_id=%s group=%s start=%s end=%s conflicts=%s",
                reservation.organization_id,
                reservation.family_group,
                reservation.start_date.isoformat(),
                reservation.end_date.isoformat(),
                [existing.reservation_id for existing in conflicts],
            )
            raise ReservationConflictError(
                [(existing.family_group, existing.start_date, existing.end_date) for existing in conflicts]
            )

    def load_reservations_for_window(
        self,
        organization_id: str,
        family_group: Optional[str],
        start: date,
        end: date,
        *,
        exclude_id: Optional[int] = None,
    ) -> list[Reservation]:
        """Return reservations overlapping [start, end), the whole organization's when no group is given."""
        with self._connect() as conn:
            return self._overlapping(conn, organization_id, start, end, family_group, exclude_id)

    def list_reservations(
        self,
        organization_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[Reservation]:
        """Return reservations starting in [start, end), all of them when unbounded."""
        clauses = ["organization_id = ?"]
        params: list[str] = [organization_id]
        if start is not None:
            clauses.append("start_date >= ?")
            params.append(start.isoformat())
        if end is not None:
            clauses.append("start_date < ?")
            params.append(end.isoformat())
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT *
                FROM Reservations
                WHERE {' AND '.join(clauses)}
                ORDER BY start_date ASC, id ASC;
                """,
                tuple(params),
            )
            return [self._row_to_reservation(row) for row in cursor.fetchall()]

    # Cost splits

    def save_cost_split(self, split: CostSplit) -> Optional[CostSplit]:
        """Write the split header, source share and every recipient share atomically.

        A reservation carries at most one split; None is returned and
        nothing is written when one already exists.
        """
        created_at = split.created_at or datetime.now(timezone.utc)
        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT id FROM CostSplits WHERE reservation_id = ?;",
                (split.reservation_id,),
            ).fetchone()
            if existing is not None:
                return None
            cursor = conn.execute(
                """
                INSERT INTO CostSplits (
                    organization_id, reservation_id, total_amount, per_diem_rate, created_at
                )
                VALUES (?, ?, ?, ?, ?);
                """,
                (
                    split.organization_id,
                    split.reservation_id,
                    split.total_amount,
                    split.per_diem_rate,
                    created_at.isoformat(),
                ),
            )
            split_id = int(cursor.lastrowid)
            conn.executemany(
                """
                INSERT INTO SplitShares (split_id, role, party, daily_guests, amount, amount_paid)
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                [
                    (
                        split_id,
                        role,
                        share.party,
                        _dump_daily(share.daily_guests),
                        share.amount,
                        share.amount_paid,
                    )
                    for role, share in [("source", split.source)]
                    + [("recipient", share) for share in split.recipients]
                ],
            )
        logger.debug("Cost split rows written | split_id=%s", split_id)
        stored = self.load_cost_split(split_id)
        if stored is None:
            raise RuntimeError(f"Cost split {split_id} vanished after commit")
        return stored

    def load_cost_split(self, split_id: int) -> Optional[CostSplit]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM CostSplits WHERE id = ?;", (split_id,))
            header = cursor.fetchone()
            if header is None:
                return None
            cursor.execute(
                "SELECT * FROM SplitShares WHERE split_id = ? ORDER BY id ASC;",
                (split_id,),
            )
            share_rows = cursor.fetchall()

        source: Optional[SplitShare] = None
        recipients: list[SplitShare] = []
        for row in share_rows:
            share = SplitShare(
                party=str(row["party"]),
                daily_guests=_load_daily(row["daily_guests"]),
                amount=float(row["amount"]),
                amount_paid=float(row["amount_paid"]),
                share_id=int(row["id"]),
            )
            if row["role"] == "source":
                source = share
            else:
                recipients.append(share)
        if source is None:
            raise RuntimeError(f"Cost split {split_id} has no source share")
        return CostSplit(
            organization_id=str(header["organization_id"]),
            reservation_id=int(header["reservation_id"]),
            total_amount=float(header["total_amount"]),
            per_diem_rate=float(header["per_diem_rate"]),
            source=source,
            recipients=tuple(recipients),
            created_at=_parse_datetime(header["created_at"]),
            split_id=int(header["id"]),
        )

    def list_cost_splits(
        self,
        organization_id: str,
        reservation_id: Optional[int] = None,
    ) -> list[CostSplit]:
        with self._connect() as conn:
            cursor = conn.cursor()
            if reservation_id is None:
                cursor.execute(
                    "SELECT id FROM CostSplits WHERE organization_id = ? ORDER BY id ASC;",
                    (organization_id,),
                )
            else:
                cursor.execute(
                    """
                    SELECT id FROM CostSplits
                    WHERE organization_id = ? AND reservation_id = ?
                    ORDER BY id ASC;
                    """,
                    (organization_id, reservation_id),
                )
            split_ids = [int(row["id"]) for row in cursor.fetchall()]
        return [split for split in map(self.load_cost_split, split_ids) if split is not None]

    def record_split_payment(
        self,
        share_id: int,
        amount: float,
        *,
        tolerance: float = 0.0,
    ) -> Optional[float]:
        """Add a payment to a recipient share; returns the new amount paid.

        Nothing is written and None is returned when the share is not a
        recipient share or the payment would exceed what is owed.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE SplitShares
                SET amount_paid = amount_paid + ?
                WHERE id = ? AND role = 'recipient'
                  AND amount_paid + ? <= amount + ?;
                """,
                (amount, share_id, amount, tolerance),
            )
            if cursor.rowcount != 1:
                return None
            row = conn.execute(
                "SELECT amount_paid FROM SplitShares WHERE id = ?;",
                (share_id,),
            ).fetchone()
            return float(row["amount_paid"])

    def delete_cost_split(self, split_id: int) -> bool:
        """Delete a split unless any recipient has already paid against it."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM CostSplits
                WHERE id = ?
                  AND NOT EXISTS (
                      SELECT 1 FROM SplitShares
                      WHERE split_id = ? AND amount_paid > 0
                  );
                """,
                (split_id, split_id),
            )
            return cursor.rowcount == 1
