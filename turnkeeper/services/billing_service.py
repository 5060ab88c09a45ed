"""Stay billing from daily occupancy."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Mapping, Optional

from turnkeeper.domain.errors import ConfigError
from turnkeeper.utils.config import Settings
from turnkeeper.utils.logger import get_logger


logger = get_logger(__name__)


class BillingMethod(str, Enum):
    PER_PERSON_PER_NIGHT = "per_person_per_night"
    PER_PERSON_PER_WEEK = "per_person_per_week"
    FLAT_RATE_PER_NIGHT = "flat_rate_per_night"
    FLAT_RATE_PER_WEEK = "flat_rate_per_week"

    @classmethod
    def parse(cls, raw: str) -> "BillingMethod":
        """Accept snake or kebab case and ``day`` as a synonym for ``night``."""
        normalized = raw.strip().lower().replace("-", "_").replace("per_day", "per_night")
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ConfigError(f"Unknown billing method: {raw}") from exc


@dataclass(frozen=True)
class BillingConfig:
    method: BillingMethod
    amount: float
    tax_rate: float = 0.0
    cleaning_fee: float = 0.0
    pet_fee: float = 0.0
    damage_deposit: float = 0.0


@dataclass(frozen=True)
class DayCharge:
    day: date
    guests: float
    cost: float


@dataclass(frozen=True)
class BillingBreakdown:
    base_amount: float
    cleaning_fee: float
    pet_fee: float
    damage_deposit: float
    subtotal: float
    tax: float
    total: float
    details: str
    days: tuple[DayCharge, ...] = field(default_factory=tuple)


def validate_billing_config(config: BillingConfig) -> list[str]:
    errors: list[str] = []
    if config.amount <= 0:
        errors.append("Billing amount must be greater than 0")
    if not 0.0 <= config.tax_rate <= 100.0:
        errors.append("Tax rate must be between 0 and 100")
    for label, value in (
        ("Cleaning fee", config.cleaning_fee),
        ("Pet fee", config.pet_fee),
        ("Damage deposit", config.damage_deposit),
    ):
        if value < 0:
            errors.append(f"{label} cannot be negative")
    return errors


class BillingCalculator:
    def __init__(self, config: BillingConfig) -> None:
        errors = validate_billing_config(config)
        if errors:
            raise ConfigError("; ".join(errors))
        self._config = config

    @property
    def config(self) -> BillingConfig:
        return self._config

    def _day_cost(self, guests: float) -> float:
        method = self._config.method
        amount = self._config.amount
        if method is BillingMethod.PER_PERSON_PER_NIGHT:
            return guests * amount
        if method is BillingMethod.PER_PERSON_PER_WEEK:
            return guests * amount / 7
        # Flat rates only accrue on nights someone is present.
        if guests <= 0:
            return 0.0
        if method is BillingMethod.FLAT_RATE_PER_NIGHT:
            return amount
        return amount / 7

    def _with_fees(self, base_amount: float, details: str, days: tuple[DayCharge, ...]) -> BillingBreakdown:
        config = self._config
        subtotal = base_amount + config.cleaning_fee + config.pet_fee
        tax = subtotal * config.tax_rate / 100 if config.tax_rate else 0.0
        return BillingBreakdown(
            base_amount=base_amount,
            cleaning_fee=config.cleaning_fee,
            pet_fee=config.pet_fee,
            damage_deposit=config.damage_deposit,
            subtotal=subtotal,
            tax=tax,
            total=subtotal + tax + config.damage_deposit,
            details=details,
            days=days,
        )

    def for_stay(self, *, guests: int, nights: int, weeks: Optional[int] = None) -> BillingBreakdown:
        """Bill a stay with a constant head count."""
        config = self._config
        weeks = weeks or math.ceil(nights / 7)
        if config.method is BillingMethod.PER_PERSON_PER_NIGHT:
            base = guests * nights * config.amount
            details = f"{guests} guests x {nights} nights x ${config.amount:g}/person/night"
        elif config.method is BillingMethod.PER_PERSON_PER_WEEK:
            base = guests * weeks * config.amount
            details = f"{guests} guests x {weeks} weeks x ${config.amount:g}/person/week"
        elif config.method is BillingMethod.FLAT_RATE_PER_NIGHT:
            base = nights * config.amount
            details = f"{nights} nights x ${config.amount:g}/night"
        else:
            base = weeks * config.amount
            details = f"{weeks} weeks x ${config.amount:g}/week"
        return self._with_fees(float(base), f"{details} = ${base:,.2f}", ())

    def from_daily_occupancy(
        self,
        daily_occupancy: Mapping[date, float],
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> BillingBreakdown:
        """Bill day by day from recorded guest counts.

        Without occupancy data the stay is billed by nights with zero guests,
        which leaves only flat-rate and fee components.
        """
        if not daily_occupancy:
            nights = (end - start).days if start and end else 0
            return self.for_stay(guests=0, nights=nights)

        days = tuple(
            DayCharge(day=day, guests=float(guests), cost=self._day_cost(float(guests)))
            for day, guests in sorted(daily_occupancy.items())
        )
        base = sum(charge.cost for charge in days)
        logger.debug("Billed %s occupancy days | base=%.2f", len(days), base)
        return self._with_fees(base, f"Calculated from {len(days)} days of actual occupancy", days)


def billing_from_settings(settings: Settings) -> Optional[BillingCalculator]:
    """Calculator for the configured rate, or None when billing is switched off."""
    if settings.billing_amount <= 0:
        return None
    return BillingCalculator(
        BillingConfig(
            method=BillingMethod.parse(settings.billing_method),
            amount=settings.billing_amount,
            tax_rate=settings.billing_tax_rate,
            cleaning_fee=settings.billing_cleaning_fee,
        )
    )
