"""NDC package selection and ranking engine.

Public API
----------
    outcome = select_packages(records, target_quantity=60, target_unit="tablet",
                              preferred_ndc="0002-3227-30")
    outcome.selections        # ranked Selection list (top N)
    outcome.inactive_records  # records skipped because they are inactive

Stage summary
-------------
    S0  Inactive records are set aside (never candidates)
    S1  Package size: description cascade (record, carrier + nested, nested),
        then the literal pre-known size
    S2  Unit gate: incompatible units drop the record; mL ↔ L converted so
        every quantity below is in the target unit
    S3  Candidates: single-pack, plus multi-pack ceil(target / size) when
        that count is 2..MAX_PACKAGE_COUNT
    S4  Score 0–100, +20 preferred-NDC boost (uncapped), stable sort, top N

Scoring bands
-------------
    exact               100 single / 95 multi
    within 5 %          90–99 single / 85–94 multi (by closeness)
    overfill  > 5 %     89 → 70
    underfill > 5 %     79 → 60
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from app.core.config import DEFAULT_MAX_RESULTS, MAX_PACKAGE_COUNT
from app.models.dispensing import PackageRecord, ParsedPackage, Selection
from app.services.ndc_normalizer import ndc_match_key
from app.services.package_parser import parse_package_description
from app.services.unit_converter import (
    UnitCategory,
    check_unit_compatibility,
    convert_to_target,
    unit_category,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Scoring constants
# ---------------------------------------------------------------------------

SCORE_EXACT_SINGLE = 100
SCORE_EXACT_MULTI = 95
NEAR_MATCH_TOLERANCE = 0.05
SCORE_NEAR_SINGLE_BASE = 90
SCORE_NEAR_MULTI_BASE = 85
SCORE_OVERFILL_TOP = 89
SCORE_OVERFILL_FLOOR = 70
SCORE_UNDERFILL_TOP = 79
SCORE_UNDERFILL_FLOOR = 60
PREFERRED_NDC_BOOST = 20

# Dosage-form label keyword → unit of a literal package_size
_FORM_LABEL_UNITS: list[tuple[str, str]] = [
    ("TABLET", "TABLET"),
    ("PILL", "TABLET"),
    ("CAPSULE", "CAPSULE"),
    ("SOLUTION", "mL"),
    ("SUSPENSION", "mL"),
    ("SYRUP", "mL"),
    ("ELIXIR", "mL"),
    ("LIQUID", "mL"),
    ("AEROSOL", "ACTUATION"),
    ("INHAL", "ACTUATION"),
    ("SPRAY", "ACTUATION"),
]

# Labels that can hold insulin; only these are read as U-100 when no strength is printed
_INJECTABLE_LABEL_RE = re.compile(r"\b(?:INJECT\w*|VIAL|PEN|CARTRIDGE|INSULIN)\b", re.IGNORECASE)


@dataclass
class SelectionOutcome:
    selections: list[Selection] = field(default_factory=list)
    inactive_records: list[PackageRecord] = field(default_factory=list)


def _round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def score_candidate(total_quantity: float, target_quantity: float, package_count: int) -> float:
    """Pre-boost match score in [60, 100]."""
    multi = package_count > 1
    if math.isclose(total_quantity, target_quantity, rel_tol=1e-9, abs_tol=1e-9):
        return SCORE_EXACT_MULTI if multi else SCORE_EXACT_SINGLE

    diff_pct = abs(total_quantity - target_quantity) / target_quantity
    if diff_pct <= NEAR_MATCH_TOLERANCE:
        closeness = 1 - diff_pct / NEAR_MATCH_TOLERANCE
        base = SCORE_NEAR_MULTI_BASE if multi else SCORE_NEAR_SINGLE_BASE
        return base + _round_half_up(closeness * 9)

    band = SCORE_OVERFILL_TOP - SCORE_OVERFILL_FLOOR
    if total_quantity > target_quantity:
        return max(SCORE_OVERFILL_TOP - _round_half_up(min(diff_pct, 1) * band), SCORE_OVERFILL_FLOOR)
    return max(SCORE_UNDERFILL_TOP - _round_half_up(min(diff_pct, 1) * band), SCORE_UNDERFILL_FLOOR)


# ---------------------------------------------------------------------------
# S1: package size resolution
# ---------------------------------------------------------------------------

def _description_candidates(record: PackageRecord) -> list[str]:
    descriptions: list[str] = []
    if record.package_description:
        descriptions.append(record.package_description)
    for nested in record.packaging:
        if not nested.package_description:
            continue
        if record.package_description and "/" not in record.package_description:
            descriptions.append(f"{record.package_description} / {nested.package_description}")
        descriptions.append(nested.package_description)
    return descriptions


def _unit_from_form_label(label: str) -> Optional[str]:
    upper = (label or "").upper()
    for keyword, unit in _FORM_LABEL_UNITS:
        if keyword in upper:
            return unit
    return None


def resolve_package(record: PackageRecord, target_unit: str) -> Optional[ParsedPackage]:
    """
    Parsed package size of ``record`` in a unit compatible with ``target_unit``.

    Descriptions whose unit cannot be compared with the target are skipped in
    favour of later ones; the literal ``package_size`` is the last resort.
    """
    assume_insulin = (
        unit_category(target_unit) is UnitCategory.COUNT
        and bool(_INJECTABLE_LABEL_RE.search(record.dosage_form or ""))
    )
    for description in _description_candidates(record):
        parsed = parse_package_description(description, assume_insulin=assume_insulin)
        if parsed is not None and check_unit_compatibility(parsed.unit, target_unit).compatible:
            return parsed

    size = record.package_size
    if not size:
        size = next((p.package_size for p in record.packaging if p.package_size), None)
    if not size or size <= 0:
        return None
    unit = _unit_from_form_label(record.dosage_form)
    if unit is None:
        logger.debug("NDC %s: package size %s has no inferable unit", record.ndc, size)
        return None
    return ParsedPackage(quantity=size, unit=unit, total_quantity=size)


# ---------------------------------------------------------------------------
# S3: candidate generation
# ---------------------------------------------------------------------------

def _selection(
    record: PackageRecord,
    package_size: float,
    package_count: int,
    target_quantity: float,
    target_unit: str,
) -> Selection:
    total = round(package_size * package_count, 4)
    return Selection(
        ndc=record.ndc,
        package_size=package_size,
        package_count=package_count,
        total_quantity=total,
        overfill=round(max(0.0, total - target_quantity), 4),
        underfill=round(max(0.0, target_quantity - total), 4) if package_count == 1 else 0.0,
        match_score=score_candidate(total, target_quantity, package_count),
        unit=target_unit,
        package_description=record.package_description,
        manufacturer=record.manufacturer,
        dosage_form=record.dosage_form,
    )


def generate_candidates(record: PackageRecord, target_quantity: float, target_unit: str) -> list[Selection]:
    """Single-pack and (when sensible) multi-pack candidates for one active record."""
    parsed = resolve_package(record, target_unit)
    if parsed is None:
        logger.debug("NDC %s: no package size compatible with %s", record.ndc, target_unit)
        return []
    package_size = convert_to_target(parsed.total_quantity, parsed.unit, target_unit)
    if package_size <= 0:
        return []

    candidates = [_selection(record, package_size, 1, target_quantity, target_unit)]

    package_count = math.ceil(round(target_quantity / package_size, 9))
    if package_count > MAX_PACKAGE_COUNT:
        logger.debug(
            "NDC %s: %s packages of %s exceed the %s-package cap",
            record.ndc, package_count, package_size, MAX_PACKAGE_COUNT,
        )
    elif package_count > 1:
        candidates.append(_selection(record, package_size, package_count, target_quantity, target_unit))
    return candidates


# ---------------------------------------------------------------------------
# S4: public entry point
# ---------------------------------------------------------------------------

def _apply_preference(candidates: list[Selection], preferred_ndc: Optional[str]) -> list[Selection]:
    preferred_key = ndc_match_key(preferred_ndc) if preferred_ndc else None
    if not preferred_key:
        return candidates
    boosted: list[Selection] = []
    for candidate in candidates:
        if ndc_match_key(candidate.ndc) == preferred_key:
            logger.info(
                "Boosted preferred NDC %s: %s → %s",
                candidate.ndc, candidate.match_score, candidate.match_score + PREFERRED_NDC_BOOST,
            )
            candidate = candidate.model_copy(
                update={"match_score": candidate.match_score + PREFERRED_NDC_BOOST}
            )
        boosted.append(candidate)
    return boosted


def select_packages(
    records: list[PackageRecord],
    target_quantity: float,
    target_unit: str,
    max_results: int = DEFAULT_MAX_RESULTS,
    preferred_ndc: Optional[str] = None,
) -> SelectionOutcome:
    """
    Rank dispensing options for ``target_quantity`` ``target_unit``.

    An empty ``selections`` list is a normal outcome: no records, a
    non-positive target, or no record with a compatible unit.
    """
    outcome = SelectionOutcome()
    if not records:
        logger.warning("Package selection called without records")
        return outcome

    active: list[PackageRecord] = []
    for record in records:
        (active if record.active else outcome.inactive_records).append(record)
    if outcome.inactive_records:
        logger.debug("Filtered %s inactive NDC(s)", len(outcome.inactive_records))

    if target_quantity <= 0:
        logger.warning("Invalid target quantity for package selection: %s", target_quantity)
        return outcome

    candidates: list[Selection] = []
    for record in active:
        candidates.extend(generate_candidates(record, target_quantity, target_unit))
    if not candidates and active:
        logger.warning(
            "No candidates for %s %s across %s active NDC(s)", target_quantity, target_unit, len(active)
        )

    candidates = _apply_preference(candidates, preferred_ndc)
    # sorted() is stable: equal scores keep generation order
    ranked = sorted(candidates, key=lambda selection: selection.match_score, reverse=True)
    outcome.selections = ranked[:max_results]
    return outcome
