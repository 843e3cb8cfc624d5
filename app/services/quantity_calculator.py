"""Total dispense quantity from a parsed instruction and a days' supply.

    total = dose_amount × doses_per_day × days_supply

with three special cases, checked in this order:

    concentration   mass dose over a liquid strength → volume per dose
    inhaler         canisters = ceil(total / capacity) traced and logged
    as-needed       doses_per_day == 0 is counted as once daily (flagged)

Discrete units round half-up to integers, volumes to 2 decimals.
"""
from __future__ import annotations

import logging
import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from app.models.dispensing import (
    CalculationTrace,
    DosageForm,
    InstructionUnit,
    ParsedInstruction,
    QuantityFlag,
    QuantityResult,
)
from app.services.unit_converter import convert_mass

logger = logging.getLogger(__name__)

LONG_DAYS_SUPPLY_THRESHOLD = 365

_VOLUME_UNITS = {"ml", "l"}


class QuantityValidationError(ValueError):
    """Caller passed a value the calculator cannot work with."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field


def round_quantity(value: float, unit: str) -> float:
    """Integers for discrete units, two decimals for mL/L."""
    places = Decimal("0.01") if unit.lower() in _VOLUME_UNITS else Decimal("1")
    return float(Decimal(str(value)).quantize(places, rounding=ROUND_HALF_UP))


def _validate(parsed: ParsedInstruction, days_supply: int) -> None:
    if isinstance(days_supply, bool) or not isinstance(days_supply, int) or days_supply <= 0:
        raise QuantityValidationError("days_supply", "must be a positive integer")
    if parsed.dose_amount <= 0:
        raise QuantityValidationError("dose_amount", "must be positive")
    if parsed.doses_per_day < 0:
        raise QuantityValidationError("doses_per_day", "must be non-negative")


def _per_dose_volume(parsed: ParsedInstruction) -> Optional[float]:
    """Volume of one dose when the dose is a mass drawn from a concentration."""
    conc = parsed.concentration
    if conc is None or not parsed.dose_mass_unit:
        return None
    try:
        dose = convert_mass(parsed.dose_amount, parsed.dose_mass_unit, conc.amount_unit)
    except ValueError:
        logger.warning(
            "Cannot relate dose unit %s to concentration %s; ignoring concentration",
            parsed.dose_mass_unit, conc,
        )
        return None
    return dose / conc.amount * conc.volume


def calculate_quantity(parsed: ParsedInstruction, days_supply: int) -> QuantityResult:
    """
    Required total quantity for ``days_supply`` days.

    Raises
    ------
    QuantityValidationError
        ``days_supply`` is not a positive integer, or the instruction has a
        non-positive dose or negative frequency.  ``.field`` names the input.
    """
    _validate(parsed, days_supply)

    flags: list[QuantityFlag] = []
    doses_per_day = parsed.doses_per_day
    if parsed.is_as_needed:
        doses_per_day = 1
        flags.append(QuantityFlag.PRN_ASSUMED_ONCE_DAILY)
        logger.warning(
            "As-needed instruction: assuming one dose per day (dose=%s, days=%s)",
            parsed.dose_amount, days_supply,
        )

    unit = parsed.unit.value
    per_dose_volume = _per_dose_volume(parsed)
    if per_dose_volume is not None:
        unit = parsed.concentration.volume_unit
        total = per_dose_volume * doses_per_day * days_supply
    else:
        total = parsed.dose_amount * doses_per_day * days_supply
    total = round_quantity(total, unit)

    canisters = None
    if parsed.unit is InstructionUnit.ACTUATION and parsed.inhaler_capacity:
        canisters = math.ceil(total / parsed.inhaler_capacity)
        logger.info(
            "Inhaler: %s actuations over %s per canister → %s canister(s)",
            total, parsed.inhaler_capacity, canisters,
        )

    insulin_volume_ml = None
    if parsed.dosage_form is DosageForm.INSULIN and parsed.unit is InstructionUnit.UNIT:
        strength = parsed.insulin_strength or 100.0
        insulin_volume_ml = round_quantity(total / strength, "mL")

    if days_supply > LONG_DAYS_SUPPLY_THRESHOLD:
        flags.append(QuantityFlag.LONG_DAYS_SUPPLY)
        logger.warning("Very large days' supply: %s days (total=%s %s)", days_supply, total, unit)

    return QuantityResult(
        total=total,
        unit=unit,
        calculation=CalculationTrace(
            dose_amount=parsed.dose_amount,
            doses_per_day=doses_per_day,
            days_supply=days_supply,
            per_dose_volume=round_quantity(per_dose_volume, "mL") if per_dose_volume is not None else None,
            canisters=canisters,
            insulin_volume_ml=insulin_volume_ml,
        ),
        flags=flags,
    )
