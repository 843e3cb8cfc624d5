"""Package description parser for NDC directory entries.

Public API
----------
    parsed: ParsedPackage | None = parse_package_description(
        "2 BLISTER PACK in 1 CARTON / 10 TABLET in 1 BLISTER PACK"
    )
    # quantity=10, unit="TABLET", package_count=2, total_quantity=20

Extractor cascade (first success wins)
--------------------------------------
    1  Multi-pack       "<N> <CONTAINER> in 1 <OUTER> / <inner description>"
    2  Liquid volume    "<qty> mL|L in 1 <container>"
    3  Insulin          U-<N> / "<N> UNITS/mL" / INSULIN cue + volume, or
                        "<N> UNITS in 1 <container>"
    4  Inhaler          "<N> SPRAY|ACTUATION|PUFF|AEROSOL[, METERED] in 1 ..."
                        or "<N> ACTUATIONS per CANISTER|INHALER|DEVICE"
    5  Simple           "<N> x <qty> <UNIT>", then "<qty> <UNIT> in 1 ...",
                        "<qty> <UNIT>, <descriptor> in 1 ...", "<qty> <UNIT>"

Liquid before insulin
---------------------
A bare "10 mL in 1 VIAL" is read as a liquid.  It only becomes insulin
(volume × strength, default U-100) when the description carries an insulin
cue, or when the caller passes ``assume_insulin=True`` because it is
dispensing an injectable label in insulin units.

Units come back upper-cased except for the volume spellings ``mL`` and ``L``.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Optional

import polars as pl

from app.models.dispensing import DosageForm, PackageMetadata, ParsedPackage
from app.services.unit_converter import convert_volume

logger = logging.getLogger(__name__)

DEFAULT_INSULIN_STRENGTH = 100.0

_QTY = r"(\d+(?:\.\d+)?)"
_CONTAINER_TAIL = r"\s+in\s+1\s+[A-Z]"

# ---------------------------------------------------------------------------
# Compiled regex patterns
# ---------------------------------------------------------------------------

_MULTI_PACK_SPLIT_RE = re.compile(r"\s+/\s+")
_CONTAINER_COUNT_RE = re.compile(r"^(\d+)\s+[A-Z][A-Z ,]*?\s+in\s+1\b", re.IGNORECASE)

_VOLUME_IN_CONTAINER_RE = re.compile(rf"^{_QTY}\s*(mL|L)\b{_CONTAINER_TAIL}", re.IGNORECASE)

_INSULIN_U_MARKER_RE = re.compile(r"\bU-?(\d+)\b", re.IGNORECASE)
_INSULIN_PER_ML_RE = re.compile(r"(\d+)\s*(?:UNITS?|IU)\s*/\s*mL\b", re.IGNORECASE)
_INSULIN_WORD_RE = re.compile(r"\bINSULIN\b", re.IGNORECASE)
_UNITS_IN_CONTAINER_RE = re.compile(rf"^{_QTY}\s*(?:UNITS?|IU)\b{_CONTAINER_TAIL}", re.IGNORECASE)

_ACTUATIONS_IN_CONTAINER_RE = re.compile(
    rf"^{_QTY}\s+(?:SPRAY|ACTUATION|PUFF|INHALATION|AEROSOL)S?(?:\s*,\s*METERED)?{_CONTAINER_TAIL}",
    re.IGNORECASE,
)
_ACTUATIONS_PER_DEVICE_RE = re.compile(
    r"(\d+)\s+(?:ACTUATION|PUFF|SPRAY|INHALATION)S?\s+PER\s+(?:CANISTER|INHALER|DEVICE)\b",
    re.IGNORECASE,
)

_TRAILING_PAREN_RE = re.compile(r"\s*\([^()]*\)\s*$")
_MULTIPLIER_RE = re.compile(rf"^(\d+)\s*x\s*{_QTY}\s*([A-Z]+)", re.IGNORECASE)
# <qty> <UNIT words> [in <n> <container>]
_SIMPLE_IN_CONTAINER_RE = re.compile(
    rf"^{_QTY}\s+([A-Z]+(?:\s+[A-Z]+)*?)(?:\s+in\s+\d+\s+[A-Z]+(?:\s+[A-Z,]+)*)?$",
    re.IGNORECASE,
)
# <qty> <UNIT>, <descriptor> [in <n> <container>]
_SIMPLE_DESCRIPTOR_RE = re.compile(
    rf"^{_QTY}\s+([A-Z]+)\s*,\s*[A-Z\s,]+?(?:\s+in\s+\d+\s+[A-Z]+(?:\s+[A-Z,]+)*)?$",
    re.IGNORECASE,
)
_SIMPLE_LEADING_RE = re.compile(rf"^{_QTY}\s*([A-Z]+)", re.IGNORECASE)

_WHITESPACE_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def canonical_package_unit(raw: str) -> str:
    """``ml`` → ``mL``, ``l`` → ``L``, anything else upper-cased."""
    key = raw.strip()
    if key.lower() in ("ml", "milliliter", "milliliters"):
        return "mL"
    if key.lower() in ("l", "liter", "liters"):
        return "L"
    return key.upper()


def _clean(description: str) -> str:
    return _WHITESPACE_RE.sub(" ", description).strip()


def _strip_trailing_parentheticals(text: str) -> str:
    previous = None
    while previous != text:
        previous = text
        text = _TRAILING_PAREN_RE.sub("", text)
    return text.strip()


def _package(
    quantity: float,
    unit: str,
    package_count: Optional[int] = None,
    metadata: Optional[PackageMetadata] = None,
) -> Optional[ParsedPackage]:
    if quantity <= 0:
        return None
    total = quantity * package_count if package_count else quantity
    return ParsedPackage(
        quantity=quantity,
        unit=unit,
        package_count=package_count,
        total_quantity=total,
        metadata=metadata,
    )


def _insulin_strength(cue_text: str) -> Optional[float]:
    """Explicit strength, DEFAULT for a bare INSULIN cue, ``None`` without any cue."""
    for pattern in (_INSULIN_U_MARKER_RE, _INSULIN_PER_ML_RE):
        match = pattern.search(cue_text)
        if match and float(match.group(1)) > 0:
            return float(match.group(1))
    if _INSULIN_WORD_RE.search(cue_text):
        return DEFAULT_INSULIN_STRENGTH
    return None


# ---------------------------------------------------------------------------
# Extractors 2–5 (single packaging level)
# ---------------------------------------------------------------------------

def _parse_liquid(text: str, cue_text: str, assume_insulin: bool) -> Optional[ParsedPackage]:
    if assume_insulin or _insulin_strength(cue_text) is not None:
        return None
    match = _VOLUME_IN_CONTAINER_RE.match(text)
    if not match:
        return None
    volume = float(match.group(1))
    unit = canonical_package_unit(match.group(2))
    return _package(
        volume,
        unit,
        metadata=PackageMetadata(dosage_form=DosageForm.LIQUID, volume=volume, volume_unit=unit),
    )


def _parse_insulin(text: str, cue_text: str, assume_insulin: bool) -> Optional[ParsedPackage]:
    strength = _insulin_strength(cue_text)
    if strength is None and assume_insulin:
        strength = DEFAULT_INSULIN_STRENGTH

    volume_match = _VOLUME_IN_CONTAINER_RE.match(text)
    if volume_match and strength is not None:
        volume = float(volume_match.group(1))
        volume_unit = canonical_package_unit(volume_match.group(2))
        volume_ml = convert_volume(volume, volume_unit, "mL")
        return _package(
            volume_ml * strength,
            "UNIT",
            metadata=PackageMetadata(
                dosage_form=DosageForm.INSULIN,
                volume=volume,
                volume_unit=volume_unit,
                insulin_strength=strength,
            ),
        )

    units_match = _UNITS_IN_CONTAINER_RE.match(text)
    if units_match:
        metadata = None
        if strength is not None:
            metadata = PackageMetadata(dosage_form=DosageForm.INSULIN, insulin_strength=strength)
        return _package(float(units_match.group(1)), "UNIT", metadata=metadata)
    return None


def _parse_inhaler(text: str, cue_text: str, assume_insulin: bool) -> Optional[ParsedPackage]:
    match = _ACTUATIONS_IN_CONTAINER_RE.match(text) or _ACTUATIONS_PER_DEVICE_RE.search(text)
    if not match:
        return None
    return _package(
        float(match.group(1)),
        "ACTUATION",
        metadata=PackageMetadata(dosage_form=DosageForm.INHALER),
    )


def _parse_simple(text: str, cue_text: str, assume_insulin: bool) -> Optional[ParsedPackage]:
    cleaned = _strip_trailing_parentheticals(text)
    if not cleaned:
        return None

    multiplier = _MULTIPLIER_RE.match(cleaned)
    if multiplier:
        count = int(multiplier.group(1))
        return _package(
            float(multiplier.group(2)),
            canonical_package_unit(multiplier.group(3)),
            package_count=count if count > 0 else None,
        )

    for pattern in (_SIMPLE_IN_CONTAINER_RE, _SIMPLE_DESCRIPTOR_RE, _SIMPLE_LEADING_RE):
        match = pattern.match(cleaned)
        if match:
            return _package(float(match.group(1)), canonical_package_unit(match.group(2)))
    return None


_Extractor = Callable[[str, str, bool], Optional[ParsedPackage]]

_SINGLE_LEVEL_EXTRACTORS: list[tuple[str, _Extractor]] = [
    ("liquid", _parse_liquid),
    ("insulin", _parse_insulin),
    ("inhaler", _parse_inhaler),
    ("simple", _parse_simple),
]


def _parse_single_level(text: str, cue_text: str, assume_insulin: bool) -> Optional[ParsedPackage]:
    for name, extractor in _SINGLE_LEVEL_EXTRACTORS:
        parsed = extractor(text, cue_text, assume_insulin)
        if parsed is not None:
            logger.debug("Package %r parsed by %s extractor", text, name)
            return parsed
    return None


# ---------------------------------------------------------------------------
# Extractor 1: multi-pack container
# ---------------------------------------------------------------------------

def _parse_multi_pack(description: str, assume_insulin: bool) -> Optional[ParsedPackage]:
    segments = _MULTI_PACK_SPLIT_RE.split(description)
    if len(segments) < 2:
        return None

    inner = _parse_single_level(_strip_trailing_parentheticals(segments[-1]), description, assume_insulin)
    if inner is None:
        return None

    count = 1
    for outer in segments[:-1]:
        match = _CONTAINER_COUNT_RE.match(outer.strip())
        if match:
            count *= int(match.group(1))
    if count <= 1:
        return inner

    package_count = (inner.package_count or 1) * count
    return ParsedPackage(
        quantity=inner.quantity,
        unit=inner.unit,
        package_count=package_count,
        total_quantity=inner.quantity * package_count,
        metadata=inner.metadata,
    )


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------

def parse_package_description(description: Optional[str], assume_insulin: bool = False) -> Optional[ParsedPackage]:
    """
    Parse one directory package description.

    Returns ``None`` when no extractor matches; a miss is an expected
    outcome and never raises.
    """
    if not description or not isinstance(description, str):
        return None
    cleaned = _clean(description)
    if not cleaned:
        return None

    parsed = _parse_multi_pack(cleaned, assume_insulin)
    if parsed is None:
        parsed = _parse_single_level(cleaned, cleaned, assume_insulin)
    if parsed is None:
        logger.debug("Unparseable package description: %r", description)
    return parsed


_PARSED_STRUCT = pl.Struct(
    {
        "package_quantity": pl.Float64,
        "package_unit": pl.Utf8,
        "package_count": pl.Int64,
        "package_total": pl.Float64,
    }
)


def _as_row(description: str) -> Optional[dict]:
    parsed = parse_package_description(description)
    if parsed is None:
        return None
    return {
        "package_quantity": parsed.quantity,
        "package_unit": parsed.unit,
        "package_count": parsed.package_count,
        "package_total": parsed.total_quantity,
    }


def parse_description_series(series: pl.Series) -> pl.DataFrame:
    """
    Parse a Polars Series of descriptions into one row per input.

    Columns: ``package_quantity``, ``package_unit``, ``package_count``,
    ``package_total``; all null where the description did not parse.
    """
    filled = series.fill_null("")
    parsed = filled.map_elements(_as_row, return_dtype=_PARSED_STRUCT)
    return parsed.struct.unnest()


def add_parsed_package_columns(df: pl.DataFrame, col: str = "package_description") -> pl.DataFrame:
    """Return *df* with the four parsed package columns appended."""
    return df.with_columns(parse_description_series(df[col]).get_columns())
