# backend/lib/utility_bill_core/models.py
import uuid
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple

from .errors import ValidationError
from .money import ZERO, to_decimal
from .validation import require_non_negative, validate_reading, validate_reading_pair

DEFAULT_MAX_READING = Decimal("99999.99")


class MeterType(str, Enum):
    ELECTRICITY = "ELECTRICITY"
    GAS = "GAS"

    @property
    def unit(self) -> str:
        return "kWh"


class ReadingType(str, Enum):
    ACTUAL = "ACTUAL"
    ESTIMATED = "ESTIMATED"
    SMART = "SMART"
    OPENING = "OPENING"
    FINAL = "FINAL"


@dataclass
class Meter:
    meter_id: str
    meter_type: MeterType
    serial_number: Optional[str] = None
    current_reading: Decimal = ZERO
    max_reading: Decimal = DEFAULT_MAX_READING
    rolls_over: bool = False
    # electricity only
    day_night: bool = False
    current_day_reading: Decimal = ZERO
    current_night_reading: Decimal = ZERO
    # gas only: dial measures hundreds of cubic feet
    imperial: bool = False
    active: bool = True

    def __post_init__(self):
        self.meter_type = MeterType(self.meter_type)
        self.current_reading = to_decimal(self.current_reading, "current_reading")
        self.max_reading = to_decimal(self.max_reading, "max_reading")
        self.current_day_reading = to_decimal(self.current_day_reading, "current_day_reading")
        self.current_night_reading = to_decimal(self.current_night_reading, "current_night_reading")
        if self.day_night and self.meter_type is not MeterType.ELECTRICITY:
            raise ValidationError("day_night", "Only electricity meters have day/night registers")
        if self.imperial and self.meter_type is not MeterType.GAS:
            raise ValidationError("imperial", "Only gas meters can be imperial")

    def units_between(self, opening: Decimal, closing: Decimal) -> Tuple[Decimal, bool]:
        """
        Units advanced on one register from opening to closing.

        Returns (units, rolled_over). A closing value below the opening value
        is only accepted when the meter is known to wrap at max_reading.
        """
        validate_reading_pair(opening, closing, self.meter_id, rollover_allowed=self.rolls_over)
        if closing < opening:
            return (self.max_reading - opening) + closing, True
        return closing - opening, False

    def update_reading(self, new_reading) -> Decimal:
        """Advance current_reading and return the units consumed since the last one."""
        value = validate_reading(new_reading, self.meter_id, self.max_reading)
        units, _ = self.units_between(self.current_reading, value)
        self.current_reading = value
        return units

    def update_day_night_reading(self, day_reading, night_reading) -> Tuple[Decimal, Decimal]:
        if not self.day_night:
            raise ValidationError("day_night", f"Meter {self.meter_id} has no day/night registers")
        day = validate_reading(day_reading, self.meter_id, self.max_reading, "day_reading")
        night = validate_reading(night_reading, self.meter_id, self.max_reading, "night_reading")
        day_units = max(day - self.current_day_reading, ZERO)
        night_units = max(night - self.current_night_reading, ZERO)
        self.current_day_reading = day
        self.current_night_reading = night
        return day_units, night_units


@dataclass(frozen=True)
class MeterReading:
    """
    A reading pair as submitted for one billing period.

    Single-register meters use value/previous_value; day/night meters use
    the four day/night fields. Records are immutable, mark_billed() returns
    a copy.
    """
    meter_id: str
    value: Optional[Decimal] = None
    previous_value: Optional[Decimal] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    reading_type: ReadingType = ReadingType.ACTUAL
    day_value: Optional[Decimal] = None
    night_value: Optional[Decimal] = None
    previous_day_value: Optional[Decimal] = None
    previous_night_value: Optional[Decimal] = None
    customer_id: Optional[str] = None
    billed: bool = False
    notes: Optional[str] = None
    reading_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        for name in ("value", "previous_value", "day_value", "night_value",
                     "previous_day_value", "previous_night_value"):
            raw = getattr(self, name)
            if raw is not None:
                object.__setattr__(self, name, to_decimal(raw, name))
        object.__setattr__(self, "reading_type", ReadingType(self.reading_type))

    @property
    def has_day_night(self) -> bool:
        return self.day_value is not None and self.night_value is not None

    @property
    def consumption(self) -> Optional[Decimal]:
        """Raw dial difference, without rollover or conversion."""
        if self.has_day_night and self.previous_day_value is not None \
                and self.previous_night_value is not None:
            return (self.day_value - self.previous_day_value) + (self.night_value - self.previous_night_value)
        if self.value is None or self.previous_value is None:
            return None
        return self.value - self.previous_value

    @property
    def is_estimated(self) -> bool:
        return self.reading_type is ReadingType.ESTIMATED

    @property
    def is_smart(self) -> bool:
        return self.reading_type is ReadingType.SMART

    @property
    def is_opening(self) -> bool:
        return self.reading_type is ReadingType.OPENING

    def mark_billed(self) -> "MeterReading":
        return replace(self, billed=True)


@dataclass(frozen=True)
class GasConversion:
    """Every stage of the volume to energy conversion, kept for the invoice."""
    meter_units: Decimal
    cubic_meters: Decimal
    corrected_volume: Decimal
    kwh: Decimal
    imperial: bool
    calorific_value: Decimal
    correction_factor: Decimal


@dataclass(frozen=True)
class ConsumptionResult:
    meter_id: str
    meter_type: MeterType
    units: Decimal
    opening: Optional[Decimal] = None
    closing: Optional[Decimal] = None
    day_units: Optional[Decimal] = None
    night_units: Optional[Decimal] = None
    day_opening: Optional[Decimal] = None
    day_closing: Optional[Decimal] = None
    night_opening: Optional[Decimal] = None
    night_closing: Optional[Decimal] = None
    gas: Optional[GasConversion] = None
    rolled_over: bool = False
    reading_type: ReadingType = ReadingType.ACTUAL
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    reading_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "meter_type", MeterType(self.meter_type))
        object.__setattr__(self, "units", require_non_negative(self.units, "units"))
        for name in ("day_units", "night_units"):
            if getattr(self, name) is not None:
                object.__setattr__(self, name, require_non_negative(getattr(self, name), name))
        if self.has_day_night and self.units != self.day_units + self.night_units:
            raise ValidationError(
                "units", f"units {self.units} must equal day {self.day_units} + night {self.night_units}"
            )
        if self.gas is not None and self.units != self.gas.kwh:
            raise ValidationError("units", f"units {self.units} must equal converted gas {self.gas.kwh} kWh")

    @property
    def has_day_night(self) -> bool:
        return self.day_units is not None and self.night_units is not None
