"""Per-family season totals for stays and cost splits."""

from __future__ import annotations

from typing import Optional

import pandas as pd

from turnkeeper.repository.data_repository import DataRepository
from turnkeeper.utils.config import Settings, get_settings
from turnkeeper.utils.logger import get_logger


logger = get_logger(__name__)

SUMMARY_COLUMNS = [
    "family_group",
    "stays",
    "nights",
    "guest_nights",
    "charged",
    "split_out",
    "split_in",
    "collected",
    "net_cost",
]


class SeasonSummaryService:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    def build_frame(self, organization_id: str, rotation_year: int) -> pd.DataFrame:
        """One row per family group with stay and settlement totals for the season.

        ``split_out`` is cost moved to other parties on the group's own
        stays, ``split_in`` is cost the group took over from others and
        ``collected`` is what recipients have paid back so far.
        """
        reservations = [
            reservation
            for reservation in self._repository.list_reservations(organization_id)
            if (
                reservation.rotation_year == rotation_year
                if reservation.rotation_year is not None
                else reservation.start_date.year == rotation_year
            )
        ]
        stays = pd.DataFrame(
            [
                {
                    "reservation_id": reservation.reservation_id,
                    "family_group": reservation.family_group,
                    "stays": 1,
                    "nights": reservation.nights,
                    "guest_nights": float(sum(reservation.daily_occupancy.values())),
                    "charged": reservation.total_cost,
                }
                for reservation in reservations
            ],
            columns=["reservation_id", "family_group", "stays", "nights", "guest_nights", "charged"],
        )

        reservation_ids = set(stays["reservation_id"])
        movements = []
        for split in self._repository.list_cost_splits(organization_id):
            if split.reservation_id not in reservation_ids:
                continue
            movements.append(
                {
                    "family_group": split.source.party,
                    "split_out": sum(share.amount for share in split.recipients),
                    "split_in": 0.0,
                    "collected": split.amount_collected,
                }
            )
            movements.extend(
                {
                    "family_group": share.party,
                    "split_out": 0.0,
                    "split_in": share.amount,
                    "collected": 0.0,
                }
                for share in split.recipients
            )
        splits = pd.DataFrame(
            movements,
            columns=["family_group", "split_out", "split_in", "collected"],
        )

        stay_totals = stays.drop(columns=["reservation_id"]).groupby("family_group").sum()
        split_totals = splits.groupby("family_group").sum()
        summary = stay_totals.join(split_totals, how="outer").fillna(0.0)
        if summary.empty:
            return pd.DataFrame(columns=SUMMARY_COLUMNS)

        summary = summary.astype(
            {column: float for column in SUMMARY_COLUMNS[1:-1]}
        ).astype({"stays": int, "nights": int})
        summary["net_cost"] = summary["charged"] - summary["split_out"] + summary["split_in"]
        summary = summary.reset_index().sort_values("family_group")
        return summary[SUMMARY_COLUMNS].round(2).reset_index(drop=True)

    def summarize(self, organization_id: str, rotation_year: int) -> list[dict[str, object]]:
        frame = self.build_frame(organization_id, rotation_year)
        logger.info(
            "Season summary built | organization_id=%s year=%s groups=%s",
            organization_id,
            rotation_year,
            len(frame),
        )
        return [
            {
                "family_group": str(row.family_group),
                "stays": int(row.stays),
                "nights": int(row.nights),
                "guest_nights": float(row.guest_nights),
                "charged": float(row.charged),
                "split_out": float(row.split_out),
                "split_in": float(row.split_in),
                "collected": float(row.collected),
                "net_cost": float(row.net_cost),
            }
            for row in frame.itertuples(index=False)
        ]
