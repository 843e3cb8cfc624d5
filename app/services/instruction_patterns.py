"""Grammar tables for prescription instructions ("sigs").

Data only: the deterministic parser in ``instruction_parser`` walks these
tables in order.  Each rule is a tagged record (no subclasses, no
callbacks) so the full grammar can be read top to bottom here.

Rule anatomy
------------
    pattern     compiled regex run against the preprocessed text
    dose_group  capture group holding "1", "0.5" or a range "1-2"
    unit        UnitRule   FIXED (implied by the rule) | CAPTURED (group)
    frequency   FrequencyRule
                    FIXED           value implied by the rule ("twice" → 2)
                    EVERY_N_HOURS   floor(24 / N) from a captured N
                    TIMES_DAILY     N from a captured N
                    PHRASE          captured text looked up in FREQUENCY_PHRASES

``INSTRUCTION_RULES`` is sorted by priority, highest first; ties keep their
declaration order.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.models.dispensing import InstructionUnit

# ---------------------------------------------------------------------------
# Confidence scoring constants
# ---------------------------------------------------------------------------

CONFIDENCE_EXACT = 0.95
CONFIDENCE_WEAK = 0.75
CONFIDENCE_ACCEPT_FLOOR = 0.7

PENALTY_MISSING_DOSE = 0.2
PENALTY_MISSING_FREQUENCY = 0.15
PENALTY_MISSING_UNIT = 0.1


# ---------------------------------------------------------------------------
# Rule record types
# ---------------------------------------------------------------------------

class UnitSource(str, Enum):
    FIXED       = "fixed"
    CAPTURED    = "captured"


class FrequencyKind(str, Enum):
    FIXED           = "fixed"
    EVERY_N_HOURS   = "every_n_hours"
    EVERY_N_MINUTES = "every_n_minutes"
    TIMES_DAILY     = "times_daily"
    PHRASE          = "phrase"


@dataclass(frozen=True)
class UnitRule:
    source: UnitSource
    group: int = 0
    unit: Optional[InstructionUnit] = None


@dataclass(frozen=True)
class FrequencyRule:
    kind: FrequencyKind
    group: int = 0
    value: float = 0.0


@dataclass(frozen=True)
class InstructionRule:
    name: str
    priority: int
    pattern: re.Pattern[str]
    unit: UnitRule
    frequency: FrequencyRule
    dose_group: int = 1
    # Mass-dose rules ("take 250 mg ...") capture the mass unit here
    mass_group: int = 0


@dataclass(frozen=True)
class FrequencyPhrase:
    """Entry of the phrase table; ``kind`` is never PHRASE here."""
    pattern: re.Pattern[str]
    kind: FrequencyKind
    value: float = 0.0
    group: int = 1


# ---------------------------------------------------------------------------
# Unit synonyms: lower-case surface form → canonical unit
# ---------------------------------------------------------------------------

UNIT_SYNONYMS: dict[str, InstructionUnit] = {
    # Solids
    "tablet":       InstructionUnit.TABLET,
    "tablets":      InstructionUnit.TABLET,
    "tab":          InstructionUnit.TABLET,
    "tabs":         InstructionUnit.TABLET,
    "capsule":      InstructionUnit.CAPSULE,
    "capsules":     InstructionUnit.CAPSULE,
    "cap":          InstructionUnit.CAPSULE,
    "caps":         InstructionUnit.CAPSULE,
    "pill":         InstructionUnit.PILL,
    "pills":        InstructionUnit.PILL,
    # Volumes
    "ml":           InstructionUnit.ML,
    "milliliter":   InstructionUnit.ML,
    "milliliters":  InstructionUnit.ML,
    "l":            InstructionUnit.L,
    "liter":        InstructionUnit.L,
    "liters":       InstructionUnit.L,
    "litre":        InstructionUnit.L,
    "litres":       InstructionUnit.L,
    # Count units (insulin and other injectables)
    "unit":         InstructionUnit.UNIT,
    "units":        InstructionUnit.UNIT,
    "u":            InstructionUnit.UNIT,
    "iu":           InstructionUnit.UNIT,
    # Actuations (inhalers, nasal sprays)
    "actuation":    InstructionUnit.ACTUATION,
    "actuations":   InstructionUnit.ACTUATION,
    "puff":         InstructionUnit.ACTUATION,
    "puffs":        InstructionUnit.ACTUATION,
    "spray":        InstructionUnit.ACTUATION,
    "sprays":       InstructionUnit.ACTUATION,
    "inhalation":   InstructionUnit.ACTUATION,
    "inhalations":  InstructionUnit.ACTUATION,
}

# Longest-first so "tablets" wins over "tab" when scanning free text
_UNIT_SCAN_RE = re.compile(
    r"\b(" + "|".join(sorted(map(re.escape, UNIT_SYNONYMS), key=len, reverse=True)) + r")\b"
)


def canonical_unit(token: Optional[str]) -> Optional[InstructionUnit]:
    """Map a surface form ("Tabs", "mL", "puffs") to the closed vocabulary."""
    if not token:
        return None
    return UNIT_SYNONYMS.get(token.strip().lower())


def scan_unit(text: str) -> Optional[InstructionUnit]:
    """First unit word appearing anywhere in ``text``."""
    match = _UNIT_SCAN_RE.search(text.lower())
    return UNIT_SYNONYMS[match.group(1)] if match else None


# ---------------------------------------------------------------------------
# Frequency phrases (most specific first)
# ---------------------------------------------------------------------------

def _phrase(pattern: str, kind: FrequencyKind = FrequencyKind.FIXED, value: float = 0.0) -> FrequencyPhrase:
    return FrequencyPhrase(re.compile(pattern), kind, value)


FREQUENCY_PHRASES: list[FrequencyPhrase] = [
    _phrase(r"\bfour\s+times\s+(?:daily|a\s+day|per\s+day)\b", value=4),
    _phrase(r"\bqid\b", value=4),
    _phrase(r"\bthree\s+times\s+(?:daily|a\s+day|per\s+day)\b", value=3),
    _phrase(r"\btid\b", value=3),
    _phrase(r"\btwice\s+(?:daily|a\s+day|per\s+day)\b", value=2),
    _phrase(r"\bbid\b", value=2),
    _phrase(r"\bonce\s+(?:daily|a\s+day|per\s+day)\b", value=1),
    _phrase(r"\bqd\b", value=1),
    _phrase(r"\b(\d+)\s+times\s+(?:daily|a\s+day|per\s+day)\b", FrequencyKind.TIMES_DAILY),
    _phrase(r"\bevery\s+(\d+)\s+(?:hours?|hrs?)\b", FrequencyKind.EVERY_N_HOURS),
    _phrase(r"\bq\s*(\d+)\s*h(?:rs?|ours?)?\b", FrequencyKind.EVERY_N_HOURS),
    _phrase(r"\bevery\s+(\d+)\s+(?:minutes?|mins?)\b", FrequencyKind.EVERY_N_MINUTES),
    _phrase(r"\bdaily\b", value=1),
    _phrase(r"\bin\s+the\s+morning\s+and\s+(?:in\s+the\s+)?evening\b", value=2),
    _phrase(r"\b(?:every\s+)?(?:morning|am)\b", value=1),
    _phrase(r"\b(?:every\s+)?(?:evening|pm|bedtime|night)\b", value=1),
    _phrase(r"\b(?:as\s+needed|prn|as\s+directed)\b", value=0),
]


# ---------------------------------------------------------------------------
# Instruction rules
# ---------------------------------------------------------------------------

# A dose never starts inside a number, fraction or concentration ("1/2", "mg/5")
_DOSE = r"(?<![\d/.])(\d+\s*/\s*\d+|\d+(?:\.\d+)?(?:\s*-\s*\d+(?:\.\d+)?)?)"
_WORD = r"(\w+)"
_ROUTE = r"(?:by\s+mouth|orally|po)"
_DAY = r"(?:daily|a\s+day|per\s+day)"
# Verb-less rules may only follow one leading word ("chew", "dissolve")
_LEAD = r"^(?:[a-z]+\s+)?"

_CAPTURED_UNIT = UnitRule(UnitSource.CAPTURED, group=2)


def _fixed(value: float) -> FrequencyRule:
    return FrequencyRule(FrequencyKind.FIXED, value=value)


def _rule(
    name: str,
    priority: int,
    pattern: str,
    frequency: FrequencyRule,
    unit: UnitRule = _CAPTURED_UNIT,
    mass_group: int = 0,
) -> InstructionRule:
    return InstructionRule(name, priority, re.compile(pattern), unit, frequency, mass_group=mass_group)


_RULES_DECLARED: list[InstructionRule] = [
    _rule(
        "take_mass_dose_liquid", 11,
        rf"(?:take|give)\s+{_DOSE}\s+(mg|mcg|g)\s+(.+)$",
        FrequencyRule(FrequencyKind.PHRASE, group=3),
        unit=UnitRule(UnitSource.FIXED, unit=InstructionUnit.ML),
        mass_group=2,
    ),
    _rule(
        "take_unit_route_frequency_timing", 10,
        rf"take\s+{_DOSE}\s+{_WORD}\s+{_ROUTE}\s+(.+?)"
        r"(?:\s+with\s+food|\s+at\s+bedtime|\s+every\s+morning|\s+every\s+evening|$)",
        FrequencyRule(FrequencyKind.PHRASE, group=3),
    ),
    _rule(
        "take_unit_route_frequency", 9,
        rf"take\s+{_DOSE}\s+{_WORD}\s+{_ROUTE}\s+(.+?)(?:\s+with\s+food|$)",
        FrequencyRule(FrequencyKind.PHRASE, group=3),
    ),
    _rule(
        "take_unit_every_hours", 9,
        rf"take\s+{_DOSE}\s+{_WORD}\s+every\s+(\d+)\s+hours?",
        FrequencyRule(FrequencyKind.EVERY_N_HOURS, group=3),
    ),
    _rule(
        "unit_times_daily", 8,
        rf"{_LEAD}{_DOSE}\s+{_WORD}\s+(\d+)\s+times\s+{_DAY}",
        FrequencyRule(FrequencyKind.TIMES_DAILY, group=3),
    ),
    _rule("take_unit_twice_daily", 8, rf"take\s+{_DOSE}\s+{_WORD}\s+twice\s+{_DAY}", _fixed(2)),
    _rule("take_unit_once_daily", 8, rf"take\s+{_DOSE}\s+{_WORD}\s+once\s+{_DAY}", _fixed(1)),
    _rule("take_unit_three_times_daily", 8, rf"take\s+{_DOSE}\s+{_WORD}\s+three\s+times\s+{_DAY}", _fixed(3)),
    _rule("take_unit_four_times_daily", 8, rf"take\s+{_DOSE}\s+{_WORD}\s+four\s+times\s+{_DAY}", _fixed(4)),
    _rule(
        "take_unit_every_morning_evening", 7,
        rf"take\s+{_DOSE}\s+{_WORD}\s+every\s+(?:morning|evening|am|pm)",
        _fixed(1),
    ),
    _rule("take_unit_at_bedtime", 7, rf"take\s+{_DOSE}\s+{_WORD}\s+at\s+bedtime", _fixed(1)),
    _rule(
        "inhale_actuations_frequency", 7,
        rf"inhale\s+{_DOSE}\s+(?:puffs?|actuations?|inhalations?|sprays?)\s+(.+)$",
        FrequencyRule(FrequencyKind.PHRASE, group=2),
        unit=UnitRule(UnitSource.FIXED, unit=InstructionUnit.ACTUATION),
    ),
    _rule(
        "inject_units_frequency", 7,
        rf"inject\s+{_DOSE}\s+(?:units?|u|iu)\s+(.+)$",
        FrequencyRule(FrequencyKind.PHRASE, group=2),
        unit=UnitRule(UnitSource.FIXED, unit=InstructionUnit.UNIT),
    ),
    _rule(
        "unit_route_frequency", 6,
        rf"{_LEAD}{_DOSE}\s+{_WORD}\s+{_ROUTE}\s+(.+?)(?:\s+with\s+food|$)",
        FrequencyRule(FrequencyKind.PHRASE, group=3),
    ),
    _rule(
        "unit_every_hours", 6,
        rf"{_LEAD}{_DOSE}\s+{_WORD}\s+every\s+(\d+)\s+hours?",
        FrequencyRule(FrequencyKind.EVERY_N_HOURS, group=3),
    ),
    _rule("unit_twice_daily", 5, rf"{_LEAD}{_DOSE}\s+{_WORD}\s+twice\s+{_DAY}", _fixed(2)),
    _rule("unit_once_daily", 5, rf"{_LEAD}{_DOSE}\s+{_WORD}\s+once\s+{_DAY}", _fixed(1)),
    _rule("unit_daily", 4, rf"{_LEAD}{_DOSE}\s+{_WORD}\s+daily", _fixed(1)),
    _rule(
        "take_unit_morning_and_evening", 9,
        r"take\s+(\d+(?:\.\d+)?)\s+(\w+)\s+in\s+the\s+morning\s+and\s+\d+(?:\.\d+)?\s+\w+\s+in\s+the\s+evening",
        _fixed(2),
    ),
    _rule(
        "take_unit_prn", 6,
        rf"take\s+{_DOSE}\s+{_WORD}.*?(?:as\s+needed|prn|as\s+directed)",
        _fixed(0),
    ),
    # "take 10 ml of 250 mg/5 ml twice daily": frequency anywhere in the tail
    _rule(
        "take_unit_trailing_frequency", 6,
        rf"(?:take|give)\s+{_DOSE}\s+{_WORD}\s+(.+)$",
        FrequencyRule(FrequencyKind.PHRASE, group=3),
    ),
]

# sorted() is stable: equal priorities keep declaration order
INSTRUCTION_RULES: list[InstructionRule] = sorted(
    _RULES_DECLARED, key=lambda rule: rule.priority, reverse=True
)


# ---------------------------------------------------------------------------
# Best-effort annotation patterns
# ---------------------------------------------------------------------------

# "250 mg/5 ml", "10 mg per 5 ml", "5 mg/ml"
CONCENTRATION_RE = re.compile(
    r"(\d+(?:\.\d+)?)\s*(mg|mcg|g)\s*(?:/|per)\s*(\d+(?:\.\d+)?)?\s*(ml|l)\b"
)
# "u-100", "u100"
INSULIN_STRENGTH_RE = re.compile(r"\bu-?(\d+)\b")
# "200 actuations per inhaler"
INHALER_CAPACITY_RE = re.compile(
    r"(\d+)\s+(?:actuations?|puffs?|sprays?|inhalations?)\s+(?:per|in|/)\s*(?:1\s+)?(?:canister|inhaler|device)"
)
INSULIN_CUE_RE = re.compile(r"\b(?:insulin|subcutaneous(?:ly)?|subq|sc|sq)\b")
