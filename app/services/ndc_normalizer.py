"""NDC normalization to the 11-digit ``XXXXX-XXXX-XX`` (5-4-2) layout.

    normalize_ndc("0002-3227-30")  → "00002-3227-30"
    normalize_ndc("0002322730")    → "00002-3227-30"   (10-digit, 4-4-2)
    normalize_ndc("00002322730")   → "00002-3227-30"
    normalize_ndc("ABC")           → None
"""
from __future__ import annotations

import re
from typing import Optional

_INVALID_CHARS_RE = re.compile(r"[^\d\s-]")
_NON_DIGIT_DASH_RE = re.compile(r"[^\d-]")

_MIN_DIGITS = 7
_MAX_DIGITS = 11


def _split_dashed(parts: list[str]) -> Optional[tuple[str, str, str]]:
    if len(parts) == 3:
        return parts[0].zfill(5), parts[1].zfill(4), parts[2].zfill(2)
    if len(parts) != 2:
        return None
    head, tail = parts
    # labeler-productpackage
    if len(head) <= 5 and len(tail) >= 6:
        return head.zfill(5), tail[:4], tail[4:].zfill(2)
    # labelerproduct-package
    if len(head) == 9 and len(tail) <= 2:
        return head[:5], head[5:9], tail.zfill(2)
    return None


def _split_digits(digits: str) -> tuple[str, str, str]:
    if len(digits) == 10:
        return "0" + digits[:4], digits[4:8], digits[8:10]
    padded = digits.zfill(11)
    return padded[:5], padded[5:9], padded[9:11]


def normalize_ndc(ndc: Optional[str]) -> Optional[str]:
    """Canonical dashed 11-digit NDC, or ``None`` when the input cannot be one."""
    if not ndc or not isinstance(ndc, str):
        return None
    if _INVALID_CHARS_RE.search(ndc):
        return None

    cleaned = _NON_DIGIT_DASH_RE.sub("", ndc)
    digits = cleaned.replace("-", "")
    if not _MIN_DIGITS <= len(digits) <= _MAX_DIGITS:
        return None

    if "-" in cleaned:
        segments = _split_dashed([part for part in cleaned.split("-") if part])
    else:
        segments = _split_digits(digits)
    if segments is None:
        return None

    labeler, product, package = segments
    if (len(labeler), len(product), len(package)) != (5, 4, 2):
        return None
    return f"{labeler}-{product}-{package}"


def ndc_match_key(ndc: Optional[str]) -> Optional[str]:
    """
    Dash-free 11-digit key used to compare NDCs written in different layouts.

    Falls back to the zero-padded digit string when the layout cannot be
    resolved, so two identical malformed codes still compare equal.
    """
    normalized = normalize_ndc(ndc)
    if normalized:
        return normalized.replace("-", "")
    if not ndc:
        return None
    digits = re.sub(r"\D", "", ndc)
    return digits.zfill(11) if digits else None
