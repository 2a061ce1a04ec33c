# backend/lib/utility_bill_core/consumption.py
import logging
from decimal import Decimal
from typing import Optional

from .errors import ValidationError
from .models import ConsumptionResult, GasConversion, Meter, MeterReading, MeterType
from .money import ZERO
from .tariffs import (DEFAULT_CALORIFIC_VALUE, DEFAULT_CORRECTION_FACTOR,
                      IMPERIAL_TO_METRIC, KWH_DIVISOR, GasRate, Tariff)
from .validation import require_field, require_positive, validate_reading

logger = logging.getLogger(__name__)


class ConsumptionCalculator:
    def __init__(self, calorific_value=DEFAULT_CALORIFIC_VALUE,
                 correction_factor=DEFAULT_CORRECTION_FACTOR):
        """
        calorific_value / correction_factor: used for gas meters only when
        no gas tariff is supplied to derive_consumption().
        """
        self.calorific_value = require_positive(calorific_value, "calorific_value")
        self.correction_factor = require_positive(correction_factor, "correction_factor")

    def derive_consumption(self, reading: MeterReading, meter: Meter,
                           tariff: Optional[Tariff] = None) -> ConsumptionResult:
        """
        Billable units for one reading pair on one meter.

        Electricity returns kWh straight off the dial (per register for
        day/night meters). Gas returns kWh after the imperial -> metric ->
        corrected volume -> energy pipeline, with every stage kept.
        """
        if reading.meter_id != meter.meter_id:
            raise ValidationError(
                "meter_id", f"Reading for meter {reading.meter_id} submitted against {meter.meter_id}"
            )
        if meter.meter_type is MeterType.GAS:
            return self._gas(reading, meter, tariff)
        if reading.has_day_night:
            return self._day_night(reading, meter)
        return self._single_register(reading, meter)

    def _register(self, reading: MeterReading, meter: Meter):
        closing = validate_reading(require_field(reading.value, "value"),
                                   meter.meter_id, meter.max_reading, "value")
        if reading.is_opening:
            # an opening reading only establishes the baseline
            return closing, closing, ZERO, False
        opening = validate_reading(require_field(reading.previous_value, "previous_value"),
                                   meter.meter_id, meter.max_reading, "previous_value")
        units, rolled_over = meter.units_between(opening, closing)
        if rolled_over:
            logger.info("Meter %s rolled over: %s -> %s (%s units)",
                        meter.meter_id, opening, closing, units)
        return opening, closing, units, rolled_over

    def _single_register(self, reading: MeterReading, meter: Meter) -> ConsumptionResult:
        opening, closing, units, rolled_over = self._register(reading, meter)
        return ConsumptionResult(
            meter_id=meter.meter_id,
            meter_type=meter.meter_type,
            units=units,
            opening=opening,
            closing=closing,
            rolled_over=rolled_over,
            reading_type=reading.reading_type,
            period_start=reading.period_start,
            period_end=reading.period_end,
            reading_id=reading.reading_id,
        )

    def _day_night(self, reading: MeterReading, meter: Meter) -> ConsumptionResult:
        if not meter.day_night:
            raise ValidationError("day_value", f"Meter {meter.meter_id} has no day/night registers")

        def register(name: str, value) -> Decimal:
            return validate_reading(require_field(value, name), meter.meter_id, meter.max_reading, name)

        day_closing = register("day_value", reading.day_value)
        night_closing = register("night_value", reading.night_value)
        if reading.is_opening:
            day_opening, night_opening = day_closing, night_closing
        else:
            day_opening = register("previous_day_value", reading.previous_day_value)
            night_opening = register("previous_night_value", reading.previous_night_value)

        # each register floors at zero independently
        day_units = max(day_closing - day_opening, ZERO)
        night_units = max(night_closing - night_opening, ZERO)
        return ConsumptionResult(
            meter_id=meter.meter_id,
            meter_type=meter.meter_type,
            units=day_units + night_units,
            day_units=day_units,
            night_units=night_units,
            day_opening=day_opening,
            day_closing=day_closing,
            night_opening=night_opening,
            night_closing=night_closing,
            reading_type=reading.reading_type,
            period_start=reading.period_start,
            period_end=reading.period_end,
            reading_id=reading.reading_id,
        )

    def _gas(self, reading: MeterReading, meter: Meter, tariff: Optional[Tariff]) -> ConsumptionResult:
        calorific_value, correction_factor = self.calorific_value, self.correction_factor
        if tariff is not None:
            if not isinstance(tariff.pricing, GasRate):
                raise ValidationError("tariff", f"Tariff {tariff.name} is not a gas tariff")
            calorific_value = tariff.pricing.calorific_value
            correction_factor = tariff.pricing.correction_factor

        opening, closing, meter_units, rolled_over = self._register(reading, meter)
        conversion = convert_gas(meter_units, meter.imperial, calorific_value, correction_factor)
        logger.debug("Gas %s: %s units -> %s m3 -> %s corrected -> %s kWh", meter.meter_id,
                     conversion.meter_units, conversion.cubic_meters,
                     conversion.corrected_volume, conversion.kwh)
        return ConsumptionResult(
            meter_id=meter.meter_id,
            meter_type=meter.meter_type,
            units=conversion.kwh,
            opening=opening,
            closing=closing,
            gas=conversion,
            rolled_over=rolled_over,
            reading_type=reading.reading_type,
            period_start=reading.period_start,
            period_end=reading.period_end,
            reading_id=reading.reading_id,
        )


def convert_gas(meter_units: Decimal, imperial: bool,
                calorific_value: Decimal, correction_factor: Decimal) -> GasConversion:
    """dial units -> m3 -> temperature/pressure corrected m3 -> kWh"""
    cubic_meters = meter_units * IMPERIAL_TO_METRIC if imperial else meter_units
    corrected_volume = cubic_meters * correction_factor
    kwh = corrected_volume * calorific_value / KWH_DIVISOR
    return GasConversion(
        meter_units=meter_units,
        cubic_meters=cubic_meters,
        corrected_volume=corrected_volume,
        kwh=kwh,
        imperial=imperial,
        calorific_value=calorific_value,
        correction_factor=correction_factor,
    )
