"""Fallback instruction parser backed by a text-completion collaborator.

Used when the rule grammar misses or is unsure.  The collaborator gets the
raw instruction inside a fixed prompt and must answer with a JSON object;
everything it says is re-validated here before it becomes a
``ParsedInstruction``.

Contract: ``parse`` never raises.  Transport errors, non-JSON replies and
out-of-range values all come back as ``None``.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional, Protocol

from pydantic import ValidationError

from app.models.dispensing import Concentration, DosageForm, ParsedInstruction, ParseSource
from app.services.instruction_patterns import canonical_unit

logger = logging.getLogger(__name__)

PARSE_PROMPT = """You are a pharmacy assistant that reads prescription dosing instructions.

Extract the dosing information from the instruction below and answer with a
single JSON object, no prose, using exactly these keys:

  "dose"        number   amount taken per administration (e.g. 1, 0.5, 2)
  "frequency"   number   administrations per day; 0 when taken as needed (PRN)
  "unit"        string   one of: tablet, capsule, pill, mL, L, unit, actuation
  "confidence"  number   your confidence between 0 and 1

Optional keys, only when the instruction states them:

  "dosage_form"       one of: tablet, capsule, liquid, insulin, inhaler, other
  "concentration"     {{"amount": number, "amount_unit": "mg"|"mcg"|"g",
                        "volume": number, "volume_unit": "mL"|"L"}}
  "dose_mass_unit"    "mg"|"mcg"|"g" when the dose is a mass of a liquid
  "insulin_strength"  units per mL (e.g. 100 for U-100)
  "inhaler_capacity"  actuations per canister

Instruction: {instruction}"""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

_MASS_UNITS = {"mg", "mcg", "g"}
_VOLUME_UNITS = {"ml": "mL", "l": "L"}
_FORM_ALIASES: dict[str, DosageForm] = {
    "insulin-injectable": DosageForm.INSULIN,
    "insulin_injectable": DosageForm.INSULIN,
    "injectable": DosageForm.INSULIN,
    "solution": DosageForm.LIQUID,
    "suspension": DosageForm.LIQUID,
}


class TextCompletionClient(Protocol):
    async def complete(self, prompt: str) -> str: ...


# ---------------------------------------------------------------------------
# Reply decoding and validation
# ---------------------------------------------------------------------------

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def decode_reply(reply: str) -> Optional[dict[str, Any]]:
    """JSON object from a reply, tolerating markdown code fences."""
    if not reply or not isinstance(reply, str):
        return None
    content = _FENCE_RE.sub("", reply.strip()).strip()
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        logger.warning("Fallback parser reply is not JSON: %r", reply[:200])
        return None
    return data if isinstance(data, dict) else None


def _optional_dosage_form(value: Any) -> Optional[DosageForm]:
    if not isinstance(value, str):
        return None
    key = value.strip().lower()
    try:
        return DosageForm(key)
    except ValueError:
        return _FORM_ALIASES.get(key)


def _optional_concentration(value: Any) -> Optional[Concentration]:
    if not isinstance(value, dict):
        return None
    amount = value.get("amount")
    volume = value.get("volume", 1)
    amount_unit = str(value.get("amount_unit", "mg")).strip().lower()
    volume_unit = _VOLUME_UNITS.get(str(value.get("volume_unit", "mL")).strip().lower())
    if not _is_number(amount) or not _is_number(volume) or amount <= 0 or volume <= 0:
        return None
    if amount_unit not in _MASS_UNITS or volume_unit is None:
        return None
    return Concentration(amount=amount, amount_unit=amount_unit, volume=volume, volume_unit=volume_unit)


def _optional_positive(value: Any) -> Optional[float]:
    return float(value) if _is_number(value) and value > 0 else None


def _optional_capacity(value: Any) -> Optional[int]:
    if _is_number(value) and value > 0 and float(value).is_integer():
        return int(value)
    return None


def _optional_mass_unit(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip().lower() in _MASS_UNITS:
        return value.strip().lower()
    return None


def validate_reply(payload: dict[str, Any]) -> Optional[ParsedInstruction]:
    """
    Turn a decoded reply into a ParsedInstruction, or ``None``.

    Required fields fail the whole reply; optional fields that are malformed
    are dropped one by one.
    """
    dose = payload.get("dose", payload.get("dosage"))
    frequency = payload.get("frequency")
    unit_raw = payload.get("unit")
    confidence = payload.get("confidence")

    if not (_is_number(dose) and _is_number(frequency) and _is_number(confidence)):
        return None
    if not isinstance(unit_raw, str):
        return None
    if dose <= 0 or frequency < 0 or not 0 <= confidence <= 1:
        return None
    unit = canonical_unit(unit_raw)
    if unit is None:
        return None

    concentration = _optional_concentration(payload.get("concentration"))
    mass_unit = _optional_mass_unit(payload.get("dose_mass_unit"))
    try:
        return ParsedInstruction(
            dose_amount=float(dose),
            doses_per_day=float(frequency),
            unit=unit,
            confidence=float(confidence),
            dosage_form=_optional_dosage_form(payload.get("dosage_form")),
            concentration=concentration,
            dose_mass_unit=mass_unit if concentration is not None else None,
            insulin_strength=_optional_positive(payload.get("insulin_strength")),
            inhaler_capacity=_optional_capacity(payload.get("inhaler_capacity")),
            source=ParseSource.FALLBACK,
        )
    except ValidationError as exc:
        logger.warning("Fallback reply failed model validation: %s", exc)
        return None


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class FallbackInstructionParser:
    """Delegates instruction parsing to a ``TextCompletionClient``."""

    def __init__(self, client: TextCompletionClient):
        self._client = client

    async def parse(self, text: str) -> Optional[ParsedInstruction]:
        if not text or not isinstance(text, str) or not text.strip():
            return None
        try:
            reply = await self._client.complete(PARSE_PROMPT.format(instruction=text.strip()))
        except Exception as exc:
            logger.warning("Text-completion collaborator failed for %r: %s", text, exc)
            return None

        payload = decode_reply(reply)
        if payload is None:
            return None
        parsed = validate_reply(payload)
        if parsed is None:
            logger.info("Fallback reply rejected for %r: %s", text, payload)
        return parsed
