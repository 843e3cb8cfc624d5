"""Unit categories, compatibility and conversion between dispensing units.

Package directories spell units freely ("TABLET", "TABLETS", "mL", "SPRAY,
METERED") while instructions resolve to a closed vocabulary.  Both sides go
through ``unit_category`` before they are compared.

Compatibility ladder
--------------------
    exact       same canonical unit                      no conversion
    volume      mL ↔ L                                   factor 1000
    category    same category (solid / count / actuation) no conversion
    otherwise   incompatible
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional


class UnitCategory(str, Enum):
    SOLID       = "solid"
    LIQUID      = "liquid"
    COUNT       = "count"
    ACTUATION   = "actuation"


_UNIT_CATEGORIES: dict[str, UnitCategory] = {
    # Solids
    "tablet":       UnitCategory.SOLID,
    "tablets":      UnitCategory.SOLID,
    "tab":          UnitCategory.SOLID,
    "tabs":         UnitCategory.SOLID,
    "capsule":      UnitCategory.SOLID,
    "capsules":     UnitCategory.SOLID,
    "cap":          UnitCategory.SOLID,
    "caps":         UnitCategory.SOLID,
    "pill":         UnitCategory.SOLID,
    "pills":        UnitCategory.SOLID,
    # Volumes
    "ml":           UnitCategory.LIQUID,
    "milliliter":   UnitCategory.LIQUID,
    "milliliters":  UnitCategory.LIQUID,
    "l":            UnitCategory.LIQUID,
    "liter":        UnitCategory.LIQUID,
    "liters":       UnitCategory.LIQUID,
    # Count units
    "unit":         UnitCategory.COUNT,
    "units":        UnitCategory.COUNT,
    "u":            UnitCategory.COUNT,
    "iu":           UnitCategory.COUNT,
    # Actuations
    "actuation":    UnitCategory.ACTUATION,
    "actuations":   UnitCategory.ACTUATION,
    "puff":         UnitCategory.ACTUATION,
    "puffs":        UnitCategory.ACTUATION,
    "spray":        UnitCategory.ACTUATION,
    "sprays":       UnitCategory.ACTUATION,
    "inhalation":   UnitCategory.ACTUATION,
    "inhalations":  UnitCategory.ACTUATION,
}

# Canonical volume spelling → millilitres per unit
_VOLUME_FACTORS_ML: dict[str, Decimal] = {
    "ml": Decimal("1"),
    "milliliter": Decimal("1"),
    "milliliters": Decimal("1"),
    "l": Decimal("1000"),
    "liter": Decimal("1000"),
    "liters": Decimal("1000"),
}

# Mass unit → milligrams per unit
_MASS_FACTORS_MG: dict[str, Decimal] = {
    "mcg": Decimal("0.001"),
    "mg": Decimal("1"),
    "g": Decimal("1000"),
}

_TWO_PLACES = Decimal("0.01")


def _unit_key(unit: str) -> str:
    return unit.strip().lower()


def unit_category(unit: Optional[str]) -> Optional[UnitCategory]:
    """
    Category of a unit spelling, or ``None`` when unknown.

    Multi-word package units ("SPRAY, METERED", "TABLET FILM COATED") are
    classified by their first word.
    """
    if not unit:
        return None
    key = _unit_key(unit)
    if key in _UNIT_CATEGORIES:
        return _UNIT_CATEGORIES[key]
    first_word = key.replace(",", " ").split()[0] if key.split() else ""
    return _UNIT_CATEGORIES.get(first_word)


@dataclass(frozen=True)
class UnitCompatibility:
    compatible: bool
    needs_conversion: bool = False


def check_unit_compatibility(package_unit: Optional[str], target_unit: Optional[str]) -> UnitCompatibility:
    if not package_unit or not target_unit:
        return UnitCompatibility(False)
    package_key, target_key = _unit_key(package_unit), _unit_key(target_unit)
    if package_key == target_key:
        return UnitCompatibility(True)

    package_cat = unit_category(package_unit)
    target_cat = unit_category(target_unit)
    if package_cat is None or package_cat is not target_cat:
        return UnitCompatibility(False)
    if package_cat is UnitCategory.LIQUID:
        same_scale = _VOLUME_FACTORS_ML.get(package_key) == _VOLUME_FACTORS_ML.get(target_key)
        return UnitCompatibility(True, needs_conversion=not same_scale)
    return UnitCompatibility(True)


def convert_volume(value: float, from_unit: str, to_unit: str) -> float:
    """mL ↔ L, rounded half-up to 2 decimals.  Raises ValueError otherwise."""
    try:
        from_factor = _VOLUME_FACTORS_ML[_unit_key(from_unit)]
        to_factor = _VOLUME_FACTORS_ML[_unit_key(to_unit)]
    except KeyError as exc:
        raise ValueError(f"Cannot convert volume from {from_unit!r} to {to_unit!r}") from exc
    converted = Decimal(str(value)) * from_factor / to_factor
    return float(converted.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP))


def convert_mass(value: float, from_unit: str, to_unit: str) -> float:
    try:
        from_factor = _MASS_FACTORS_MG[_unit_key(from_unit)]
        to_factor = _MASS_FACTORS_MG[_unit_key(to_unit)]
    except KeyError as exc:
        raise ValueError(f"Cannot convert mass from {from_unit!r} to {to_unit!r}") from exc
    return float(Decimal(str(value)) * from_factor / to_factor)


def convert_to_target(value: float, from_unit: str, to_unit: str) -> float:
    """Express ``value`` in ``to_unit`` once compatibility is established."""
    compatibility = check_unit_compatibility(from_unit, to_unit)
    if not compatibility.compatible:
        raise ValueError(f"Units {from_unit!r} and {to_unit!r} are not compatible")
    if compatibility.needs_conversion:
        return convert_volume(value, from_unit, to_unit)
    return value
