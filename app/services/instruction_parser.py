"""Deterministic prescription instruction parser.

Public API
----------
    parsed: ParsedInstruction | None = parse_instruction_text("Take 1 tab PO BID")

Pipeline
--------
    Step 0  Preprocessing (lowercase, collapse whitespace, drop non-decimal
            punctuation, split "250mg" → "250 mg")
    Step 1  Ordered rule walk over ``INSTRUCTION_RULES``; first rule whose
            pattern matches AND whose extraction passes acceptance wins
    Step 2  Best-effort annotations (dosage form, concentration, insulin
            strength, inhaler capacity); never affect confidence

A miss returns ``None``.  Nothing in this module raises on bad input.
"""
from __future__ import annotations

import logging
import math
import re
from typing import Optional

from app.models.dispensing import (
    Concentration,
    DosageForm,
    InstructionUnit,
    ParsedInstruction,
    ParseSource,
)
from app.services.instruction_patterns import (
    CONCENTRATION_RE,
    CONFIDENCE_ACCEPT_FLOOR,
    CONFIDENCE_EXACT,
    CONFIDENCE_WEAK,
    FREQUENCY_PHRASES,
    INHALER_CAPACITY_RE,
    INSTRUCTION_RULES,
    INSULIN_CUE_RE,
    INSULIN_STRENGTH_RE,
    PENALTY_MISSING_DOSE,
    PENALTY_MISSING_FREQUENCY,
    PENALTY_MISSING_UNIT,
    FrequencyKind,
    FrequencyRule,
    InstructionRule,
    UnitSource,
    canonical_unit,
    scan_unit,
)

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_PUNCTUATION_RE = re.compile(r"[,;:]")
# A period is kept only when it is a decimal point
_NON_DECIMAL_PERIOD_RE = re.compile(r"(?<!\d)\.|\.(?!\d)")
_DIGIT_LETTER_RE = re.compile(r"(?<=\d)(?=[a-z])")
_RANGE_RE = re.compile(r"(\d+(?:\.\d+)?)\s*-\s*(\d+(?:\.\d+)?)")
_FRACTION_RE = re.compile(r"(\d+)\s*/\s*(\d+)")
# A mass word in the unit slot ("500 mg tablet") never stands for a dispensing unit
_MASS_WORDS = {"mg", "mcg", "g"}


# ---------------------------------------------------------------------------
# Step 0: preprocessing
# ---------------------------------------------------------------------------

def preprocess_instruction(text: str) -> str:
    """
    Canonical form used for rule matching.

    Examples
    --------
    "Take 1 Tab. P.O. B.I.D."   → "take 1 tab po bid"
    "Take 2.5 mL, twice daily"  → "take 2.5 ml twice daily"
    "take 250mg/5ml"            → "take 250 mg/5 ml"
    """
    if not text or not isinstance(text, str):
        return ""
    cleaned = text.lower()
    cleaned = _PUNCTUATION_RE.sub(" ", cleaned)
    cleaned = _NON_DECIMAL_PERIOD_RE.sub("", cleaned)
    cleaned = _DIGIT_LETTER_RE.sub(" ", cleaned)
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


# ---------------------------------------------------------------------------
# Step 1: extraction helpers
# ---------------------------------------------------------------------------

def _parse_dose(raw: Optional[str]) -> Optional[float]:
    """Single value, fraction "1/2" or range; a range "a-b" resolves to its mean."""
    if not raw:
        return None
    raw = raw.strip()
    fraction_match = _FRACTION_RE.fullmatch(raw)
    if fraction_match:
        denominator = float(fraction_match.group(2))
        if denominator <= 0:
            return None
        value = float(fraction_match.group(1)) / denominator
        return value if value > 0 else None
    range_match = _RANGE_RE.fullmatch(raw)
    if range_match:
        low, high = float(range_match.group(1)), float(range_match.group(2))
        return (low + high) / 2
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def _resolve_unit(rule: InstructionRule, match: re.Match[str], text: str) -> Optional[InstructionUnit]:
    if rule.unit.source is UnitSource.FIXED:
        return rule.unit.unit
    word = match.group(rule.unit.group)
    if word in _MASS_WORDS:
        return None
    captured = canonical_unit(word)
    # "take 1 by mouth ..." style: the captured word is not a unit
    return captured or scan_unit(text)


def _divide_into(per_day: int, raw_interval: Optional[str]) -> Optional[float]:
    if not raw_interval:
        return None
    interval = int(raw_interval)
    if interval <= 0:
        return None
    return float(math.floor(per_day / interval))


def _count(raw: Optional[str]) -> Optional[float]:
    return float(int(raw)) if raw else None


def lookup_frequency_phrase(text: str) -> Optional[float]:
    """Doses per day named by the first matching entry of FREQUENCY_PHRASES."""
    for phrase in FREQUENCY_PHRASES:
        match = phrase.pattern.search(text)
        if not match:
            continue
        if phrase.kind is FrequencyKind.FIXED:
            return phrase.value
        raw = match.group(phrase.group)
        if phrase.kind is FrequencyKind.EVERY_N_HOURS:
            return _divide_into(24, raw)
        if phrase.kind is FrequencyKind.EVERY_N_MINUTES:
            return _divide_into(1440, raw)
        if phrase.kind is FrequencyKind.TIMES_DAILY:
            return _count(raw)
    return None


def _resolve_frequency(rule: FrequencyRule, match: re.Match[str], text: str) -> Optional[float]:
    if rule.kind is FrequencyKind.FIXED:
        return rule.value
    captured = match.group(rule.group) if rule.group else None
    if rule.kind is FrequencyKind.EVERY_N_HOURS:
        return _divide_into(24, captured)
    if rule.kind is FrequencyKind.EVERY_N_MINUTES:
        return _divide_into(1440, captured)
    if rule.kind is FrequencyKind.TIMES_DAILY:
        return _count(captured)
    # PHRASE: the captured tail first, then the whole instruction
    if captured:
        value = lookup_frequency_phrase(captured)
        if value is not None:
            return value
    return lookup_frequency_phrase(text)


def _confidence(dose: Optional[float], frequency: Optional[float], unit: Optional[InstructionUnit]) -> float:
    confidence = CONFIDENCE_EXACT
    if dose is None:
        confidence -= PENALTY_MISSING_DOSE
    if frequency is None:
        confidence -= PENALTY_MISSING_FREQUENCY
    if unit is None:
        confidence -= PENALTY_MISSING_UNIT
    confidence = max(confidence, CONFIDENCE_WEAK)
    return max(0.0, min(1.0, confidence))


# ---------------------------------------------------------------------------
# Step 2: best-effort annotations
# ---------------------------------------------------------------------------

def detect_dosage_form(unit: InstructionUnit, text: str) -> DosageForm:
    if unit in (InstructionUnit.ML, InstructionUnit.L):
        return DosageForm.LIQUID
    if unit is InstructionUnit.UNIT:
        return DosageForm.INSULIN if INSULIN_CUE_RE.search(text) else DosageForm.OTHER
    if unit is InstructionUnit.ACTUATION:
        return DosageForm.INHALER
    if unit is InstructionUnit.TABLET:
        return DosageForm.TABLET
    if unit is InstructionUnit.CAPSULE:
        return DosageForm.CAPSULE
    return DosageForm.OTHER


def extract_concentration(text: str) -> Optional[Concentration]:
    """Concentration such as "250 mg/5 ml"; a bare "mg/ml" means per 1 mL."""
    match = CONCENTRATION_RE.search(text)
    if not match:
        return None
    amount = float(match.group(1))
    volume = float(match.group(3)) if match.group(3) else 1.0
    if amount <= 0 or volume <= 0:
        return None
    return Concentration(
        amount=amount,
        amount_unit=match.group(2),
        volume=volume,
        volume_unit="mL" if match.group(4) == "ml" else "L",
    )


def extract_insulin_strength(text: str) -> Optional[float]:
    match = INSULIN_STRENGTH_RE.search(text)
    if not match:
        return None
    strength = float(match.group(1))
    return strength if strength > 0 else None


def extract_inhaler_capacity(text: str) -> Optional[int]:
    match = INHALER_CAPACITY_RE.search(text)
    if not match:
        return None
    capacity = int(match.group(1))
    return capacity if capacity > 0 else None


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------

def parse_instruction_text(text: str) -> Optional[ParsedInstruction]:
    """
    Parse a free-text instruction with the rule grammar.

    Rules are tried in priority order and the first accepted one wins; there
    is no scoring across several matching rules.  Acceptance requires
    dose > 0, frequency >= 0, a resolved unit and confidence >= 0.7.
    """
    normalized = preprocess_instruction(text)
    if not normalized:
        return None

    for rule in INSTRUCTION_RULES:
        match = rule.pattern.search(normalized)
        if not match:
            continue

        dose = _parse_dose(match.group(rule.dose_group))
        unit = _resolve_unit(rule, match, normalized)
        frequency = _resolve_frequency(rule.frequency, match, normalized)
        confidence = _confidence(dose, frequency, unit)

        if confidence < CONFIDENCE_ACCEPT_FLOOR:
            continue
        if dose is None or dose <= 0:
            continue
        if frequency is None or frequency < 0:
            continue
        if unit is None:
            continue

        concentration = extract_concentration(normalized)
        mass_unit = match.group(rule.mass_group) if rule.mass_group else None
        if mass_unit:
            # A mass dose is only dispensable through a known concentration
            if concentration is None:
                continue
            unit = InstructionUnit.ML if concentration.volume_unit == "mL" else InstructionUnit.L

        logger.debug("Instruction %r matched rule %s", normalized, rule.name)
        return ParsedInstruction(
            dose_amount=dose,
            doses_per_day=frequency,
            unit=unit,
            confidence=confidence,
            dosage_form=detect_dosage_form(unit, normalized),
            concentration=concentration,
            dose_mass_unit=mass_unit,
            insulin_strength=extract_insulin_strength(normalized),
            inhaler_capacity=extract_inhaler_capacity(normalized),
            source=ParseSource.DETERMINISTIC,
        )

    logger.debug("No instruction rule accepted %r", normalized)
    return None
