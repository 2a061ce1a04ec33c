# backend/lib/utility_bill_core/tariffs.py
"""
Tariff pricing rules.

A tariff carries exactly one pricing mode:

    FlatRate(unit_rate)                       electricity, single rate
    DayNightRate(day_rate, night_rate)        electricity, Economy 7
    TieredRate(threshold, tier1, tier2)       electricity, stepped
    GasRate(unit_rate, calorific_value, ...)  gas, priced per converted kWh

Rates and standing charges are stored in pence; every cost_for() returns
pounds, rounded half-up to 2dp once at the pence -> pounds boundary.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional, Union

from .errors import ValidationError
from .models import ConsumptionResult, MeterType
from .money import pence_to_pounds
from .validation import (require_field, require_non_negative, require_positive,
                         validate_vat_rate)

logger = logging.getLogger(__name__)

DEFAULT_VAT_RATE = Decimal("0.05")  # UK reduced rate for domestic fuel
DEFAULT_CALORIFIC_VALUE = Decimal("39.4")  # MJ/m3
DEFAULT_CORRECTION_FACTOR = Decimal("1.02264")
IMPERIAL_TO_METRIC = Decimal("2.83")  # 100 ft3 -> m3
KWH_DIVISOR = Decimal("3.6")  # MJ per kWh

# Only used when a day/night tariff is priced from a single total
FALLBACK_DAY_SHARE = Decimal("0.6")


def _rate(value, name: str) -> Decimal:
    require_field(value, name)
    return require_non_negative(value, name)


@dataclass(frozen=True)
class FlatRate:
    unit_rate: Decimal

    def __post_init__(self):
        object.__setattr__(self, "unit_rate", _rate(self.unit_rate, "unit_rate"))

    meter_type = MeterType.ELECTRICITY

    @property
    def display_rate(self) -> Decimal:
        return self.unit_rate

    def cost_for(self, units: Decimal) -> Decimal:
        return pence_to_pounds(units * self.unit_rate)

    def describe(self) -> str:
        return f"Flat rate: {self.unit_rate}p per kWh"


@dataclass(frozen=True)
class DayNightRate:
    day_rate: Decimal
    night_rate: Decimal

    def __post_init__(self):
        object.__setattr__(self, "day_rate", _rate(self.day_rate, "day_rate"))
        object.__setattr__(self, "night_rate", _rate(self.night_rate, "night_rate"))

    meter_type = MeterType.ELECTRICITY

    @property
    def display_rate(self) -> Decimal:
        return self.day_rate

    def register_pence(self, day_units: Decimal, night_units: Decimal) -> Decimal:
        return day_units * self.day_rate + night_units * self.night_rate

    def cost_for_registers(self, day_units: Decimal, night_units: Decimal) -> Decimal:
        """Each register priced separately; summed in pence before converting."""
        day_units = require_non_negative(day_units, "day_units")
        night_units = require_non_negative(night_units, "night_units")
        return pence_to_pounds(self.register_pence(day_units, night_units))

    def cost_for(self, units: Decimal) -> Decimal:
        # No register split available: estimate 60% day / 40% night.
        logger.warning("Pricing %s kWh on a day/night tariff with the 60/40 fallback split", units)
        day_units = units * FALLBACK_DAY_SHARE
        return self.cost_for_registers(day_units, units - day_units)

    def describe(self) -> str:
        return f"Day: {self.day_rate}p per kWh, Night: {self.night_rate}p per kWh"


@dataclass(frozen=True)
class TieredRate:
    threshold: Decimal
    tier1_rate: Decimal
    tier2_rate: Decimal

    def __post_init__(self):
        object.__setattr__(self, "threshold", _rate(self.threshold, "threshold"))
        object.__setattr__(self, "tier1_rate", _rate(self.tier1_rate, "tier1_rate"))
        object.__setattr__(self, "tier2_rate", _rate(self.tier2_rate, "tier2_rate"))

    meter_type = MeterType.ELECTRICITY

    @property
    def display_rate(self) -> Decimal:
        return self.tier1_rate

    def cost_for(self, units: Decimal) -> Decimal:
        # threshold is inclusive: units == threshold bills entirely at tier 1
        if units <= self.threshold:
            pence = units * self.tier1_rate
        else:
            pence = self.threshold * self.tier1_rate + (units - self.threshold) * self.tier2_rate
        return pence_to_pounds(pence)

    def describe(self) -> str:
        return (f"First {self.threshold} kWh at {self.tier1_rate}p per kWh, "
                f"then {self.tier2_rate}p per kWh")


@dataclass(frozen=True)
class GasRate:
    """Gas is priced per kWh; units passed in are already converted."""
    unit_rate: Decimal
    calorific_value: Decimal = DEFAULT_CALORIFIC_VALUE
    correction_factor: Decimal = DEFAULT_CORRECTION_FACTOR

    def __post_init__(self):
        object.__setattr__(self, "unit_rate", _rate(self.unit_rate, "unit_rate"))
        object.__setattr__(self, "calorific_value",
                           require_positive(self.calorific_value, "calorific_value"))
        object.__setattr__(self, "correction_factor",
                           require_positive(self.correction_factor, "correction_factor"))

    meter_type = MeterType.GAS

    @property
    def display_rate(self) -> Decimal:
        return self.unit_rate

    def cost_for(self, units: Decimal) -> Decimal:
        return pence_to_pounds(units * self.unit_rate)

    def describe(self) -> str:
        return f"{self.unit_rate}p per kWh (CV: {self.calorific_value})"


Pricing = Union[FlatRate, DayNightRate, TieredRate, GasRate]
PRICING_MODES = (FlatRate, DayNightRate, TieredRate, GasRate)


@dataclass
class Tariff:
    name: str
    standing_charge: Decimal  # pence per day
    pricing: Pricing
    vat_rate: Decimal = DEFAULT_VAT_RATE
    tariff_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    description: Optional[str] = None
    active: bool = True
    start_date: date = field(default_factory=date.today)
    end_date: Optional[date] = None

    def __post_init__(self):
        require_field(self.name, "name")
        self.standing_charge = require_non_negative(
            require_field(self.standing_charge, "standing_charge"), "standing_charge")
        self.vat_rate = validate_vat_rate(self.vat_rate)
        if not isinstance(self.pricing, PRICING_MODES):
            raise ValidationError("pricing", f"Unknown pricing mode: {self.pricing!r}")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValidationError("end_date", "Tariff end date cannot be before its start date")

    # ---- construction helpers -------------------------------------------

    @classmethod
    def flat(cls, name: str, standing_charge, unit_rate, **kwargs) -> "Tariff":
        return cls(name, standing_charge, FlatRate(unit_rate), **kwargs)

    @classmethod
    def day_night(cls, name: str, standing_charge, day_rate, night_rate, **kwargs) -> "Tariff":
        return cls(name, standing_charge,
                   DayNightRate(day_rate, night_rate), **kwargs)

    @classmethod
    def tiered(cls, name: str, standing_charge, threshold, tier1_rate, tier2_rate, **kwargs) -> "Tariff":
        return cls(name, standing_charge,
                   TieredRate(threshold, tier1_rate, tier2_rate), **kwargs)

    @classmethod
    def gas(cls, name: str, standing_charge, unit_rate,
            calorific_value=DEFAULT_CALORIFIC_VALUE,
            correction_factor=DEFAULT_CORRECTION_FACTOR, **kwargs) -> "Tariff":
        return cls(name, standing_charge,
                   GasRate(unit_rate, calorific_value, correction_factor), **kwargs)

    # ---- pricing --------------------------------------------------------

    @property
    def meter_type(self) -> MeterType:
        return self.pricing.meter_type

    @property
    def unit_rate(self) -> Decimal:
        return self.pricing.display_rate

    def calculate_unit_cost(self, units) -> Decimal:
        """Cost in pounds of `units` kWh. Pure: depends only on units and pricing."""
        return self.pricing.cost_for(require_non_negative(units, "units"))

    def price_consumption(self, consumption: ConsumptionResult) -> Decimal:
        if consumption.meter_type is not self.meter_type:
            raise ValidationError(
                "meter_type",
                f"{consumption.meter_type.value} consumption cannot be priced on a "
                f"{self.meter_type.value} tariff",
            )
        if isinstance(self.pricing, DayNightRate) and consumption.has_day_night:
            return self.pricing.cost_for_registers(consumption.day_units, consumption.night_units)
        return self.calculate_unit_cost(consumption.units)

    def standing_charge_for(self, billing_days: int) -> Decimal:
        if billing_days < 0:
            raise ValidationError("billing_days", "billing_days cannot be negative")
        return pence_to_pounds(self.standing_charge * billing_days)

    def pricing_description(self) -> str:
        return self.pricing.describe()

    # ---- lifecycle ------------------------------------------------------

    def is_valid_on(self, day: date) -> bool:
        if not self.active:
            return False
        if day < self.start_date:
            return False
        if self.end_date is not None and day > self.end_date:
            return False
        return True

    def deactivate(self) -> None:
        """Tariffs referenced by invoices are never deleted, only switched off."""
        self.active = False

    def set_standing_charge(self, standing_charge) -> None:
        self.standing_charge = require_non_negative(standing_charge, "standing_charge")

    def set_vat_rate(self, vat_rate) -> None:
        self.vat_rate = validate_vat_rate(vat_rate)

    def set_pricing(self, pricing: Pricing) -> None:
        if not isinstance(pricing, PRICING_MODES):
            raise ValidationError("pricing", f"Unknown pricing mode: {pricing!r}")
        if pricing.meter_type is not self.meter_type:
            raise ValidationError("pricing", "Pricing mode must keep the tariff's fuel type")
        self.pricing = pricing

    def __str__(self):
        return f"Tariff({self.name}, {self.meter_type.value}, standing={self.standing_charge}p/day)"
