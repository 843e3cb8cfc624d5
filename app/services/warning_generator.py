"""Advisory warnings for a chosen package selection.

Emitted in a fixed order: inactive record → overfill (> 10 %) → underfill
(single-pack only) → dosage-form mismatch.
"""
from __future__ import annotations

import math
from typing import Optional

from app.models.dispensing import (
    DispenseWarning,
    InstructionUnit,
    PackageRecord,
    ParsedInstruction,
    Selection,
    WarningSeverity,
    WarningType,
)
from app.services.unit_converter import UnitCategory, unit_category

OVERFILL_WARNING_THRESHOLD = 0.10

# Instruction unit category → dosage-form label keywords that fit it
_FORM_KEYWORDS: dict[UnitCategory, tuple[str, ...]] = {
    UnitCategory.SOLID:     ("TABLET", "CAPSULE", "PILL"),
    UnitCategory.LIQUID:    ("SOLUTION", "SUSPENSION", "SYRUP", "LIQUID", "ELIXIR", "CONCENTRATE"),
    UnitCategory.COUNT:     ("INJECTION", "INJECTABLE", "VIAL", "PEN", "CARTRIDGE", "UNIT"),
    UnitCategory.ACTUATION: ("AEROSOL", "INHAL", "SPRAY", "POWDER"),
}


def _format_quantity(value: float) -> str:
    return f"{value:g}"


def _unit_name(unit: InstructionUnit | str) -> str:
    return unit.value if isinstance(unit, InstructionUnit) else unit


def _form_mismatch(unit: InstructionUnit | str, label: Optional[str]) -> bool:
    category = unit_category(_unit_name(unit))
    if category is None or not label:
        return False
    upper = label.upper()
    return not any(keyword in upper for keyword in _FORM_KEYWORDS[category])


def generate_warnings(
    selection: Selection,
    target_quantity: float,
    parsed: ParsedInstruction,
    record: Optional[PackageRecord] = None,
) -> list[DispenseWarning]:
    """
    Warnings for one selection.

    ``record`` is the source package record; when omitted the selection's own
    copied fields are used and the record is treated as active.
    """
    warnings: list[DispenseWarning] = []
    active = record.active if record is not None else True
    form_label = record.dosage_form if record is not None else selection.dosage_form

    if not active:
        warnings.append(DispenseWarning(
            type=WarningType.INACTIVE_RECORD,
            message=f"NDC {selection.ndc} is inactive and should not be dispensed",
            severity=WarningSeverity.ERROR,
        ))

    if target_quantity > 0 and selection.overfill / target_quantity > OVERFILL_WARNING_THRESHOLD:
        pct = selection.overfill / target_quantity * 100
        warnings.append(DispenseWarning(
            type=WarningType.OVERFILL,
            message=(
                f"Package overfills the required quantity by {_format_quantity(selection.overfill)} "
                f"{selection.unit} ({pct:.1f}%)"
            ),
            severity=WarningSeverity.WARNING,
        ))

    if selection.package_count == 1 and selection.underfill > 0:
        needed = math.ceil(target_quantity / selection.package_size) if selection.package_size > 0 else 2
        warnings.append(DispenseWarning(
            type=WarningType.UNDERFILL,
            message=(
                f"Package is {_format_quantity(selection.underfill)} {selection.unit} short of the "
                f"required quantity. Requires {needed} packages"
            ),
            severity=WarningSeverity.WARNING,
        ))

    if _form_mismatch(parsed.unit, form_label):
        warnings.append(DispenseWarning(
            type=WarningType.DOSAGE_FORM_MISMATCH,
            message=(
                f"Dosage form {form_label} does not match the prescribed unit "
                f"{_unit_name(parsed.unit)}"
            ),
            severity=WarningSeverity.WARNING,
        ))

    return warnings
