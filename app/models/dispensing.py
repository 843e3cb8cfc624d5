"""Shared value types of the dispensing pipeline.

Every model is frozen: parsers produce them, downstream stages read them, and
the only "mutation" in the whole pipeline (the preferred-NDC score boost)
goes through ``model_copy``.

    instruction text ──► ParsedInstruction ──► QuantityResult
    package records  ──► ParsedPackage ──► Selection ──► DispenseWarning
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class InstructionUnit(str, Enum):
    """Closed vocabulary of dispensing units an instruction can resolve to."""
    TABLET      = "tablet"
    CAPSULE     = "capsule"
    PILL        = "pill"
    ML          = "mL"
    L           = "L"
    UNIT        = "unit"
    ACTUATION   = "actuation"


class DosageForm(str, Enum):
    TABLET      = "tablet"
    CAPSULE     = "capsule"
    LIQUID      = "liquid"
    INSULIN     = "insulin"
    INHALER     = "inhaler"
    OTHER       = "other"


class ParseSource(str, Enum):
    """Which stage of the instruction pipeline produced a result."""
    DETERMINISTIC   = "deterministic"
    FALLBACK        = "fallback"


class QuantityFlag(str, Enum):
    PRN_ASSUMED_ONCE_DAILY  = "prn_assumed_once_daily"
    LONG_DAYS_SUPPLY        = "long_days_supply"


class WarningType(str, Enum):
    INACTIVE_RECORD         = "inactive_record"
    OVERFILL                = "overfill"
    UNDERFILL               = "underfill"
    DOSAGE_FORM_MISMATCH    = "dosage_form_mismatch"


class WarningSeverity(str, Enum):
    ERROR   = "error"
    WARNING = "warning"
    INFO    = "info"


# ---------------------------------------------------------------------------
# Instruction side
# ---------------------------------------------------------------------------

class Concentration(BaseModel):
    """Mass-per-volume strength of a liquid, e.g. 250 mg / 5 mL."""

    amount: float = Field(gt=0)
    amount_unit: str = "mg"
    volume: float = Field(default=1.0, gt=0)
    volume_unit: str = "mL"

    model_config = {"frozen": True}

    def __str__(self) -> str:
        return f"{self.amount:g} {self.amount_unit}/{self.volume:g} {self.volume_unit}"


class ParsedInstruction(BaseModel):
    """
    Structured reading of a prescription instruction ("sig").

    ``doses_per_day == 0`` is the as-needed (PRN) encoding; it is never a
    parse failure.  The optional annotations are best-effort and absent when
    the text did not mention them.
    """

    dose_amount: float = Field(gt=0)
    doses_per_day: float = Field(ge=0)
    unit: InstructionUnit
    confidence: float = Field(ge=0.0, le=1.0)
    dosage_form: Optional[DosageForm] = None
    concentration: Optional[Concentration] = None
    # Set when the dose is a mass ("250 mg") measured out of a liquid
    dose_mass_unit: Optional[str] = None
    insulin_strength: Optional[float] = Field(default=None, gt=0)
    inhaler_capacity: Optional[int] = Field(default=None, gt=0)
    source: ParseSource = ParseSource.DETERMINISTIC

    model_config = {"frozen": True}

    @property
    def is_as_needed(self) -> bool:
        return self.doses_per_day == 0


class CalculationTrace(BaseModel):
    """Inputs actually used by the calculator, kept for display and audit."""

    dose_amount: float
    doses_per_day: float
    days_supply: int
    per_dose_volume: Optional[float] = None
    canisters: Optional[int] = None
    insulin_volume_ml: Optional[float] = None

    model_config = {"frozen": True}


class QuantityResult(BaseModel):
    total: float
    unit: str
    calculation: CalculationTrace
    flags: list[QuantityFlag] = Field(default_factory=list)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Package side
# ---------------------------------------------------------------------------

class PackageMetadata(BaseModel):
    """Set only when a special-form extractor (liquid/insulin/inhaler) matched."""

    dosage_form: Optional[DosageForm] = None
    volume: Optional[float] = None
    volume_unit: Optional[str] = None
    insulin_strength: Optional[float] = None

    model_config = {"frozen": True}


class ParsedPackage(BaseModel):
    quantity: float = Field(gt=0)
    unit: str
    package_count: Optional[int] = Field(default=None, ge=1)
    total_quantity: float
    metadata: Optional[PackageMetadata] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _total_covers_quantity(self) -> "ParsedPackage":
        if self.total_quantity < self.quantity:
            raise ValueError("total_quantity must be >= quantity")
        return self


class NestedPackaging(BaseModel):
    """Inner packaging entry listed under a multi-pack carrier record."""

    package_description: Optional[str] = None
    package_size: Optional[float] = None

    model_config = {"frozen": True}


class PackageRecord(BaseModel):
    """One package as returned by the package directory (read-only input)."""

    ndc: str
    package_description: Optional[str] = None
    package_size: Optional[float] = None
    active: bool = True
    manufacturer: str = ""
    dosage_form: str = ""
    packaging: list[NestedPackaging] = Field(default_factory=list)

    model_config = {"frozen": True}


class Selection(BaseModel):
    """
    One scored dispensing option.

    All quantities are expressed in ``unit`` (the caller's target unit), after
    any volume conversion.  ``match_score`` may exceed 100 once the preferred
    NDC boost is applied.
    """

    ndc: str
    package_size: float
    package_count: int = Field(ge=1)
    total_quantity: float
    overfill: float = Field(ge=0)
    underfill: float = Field(ge=0)
    match_score: float
    unit: str
    package_description: Optional[str] = None
    manufacturer: str = ""
    dosage_form: str = ""

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _multi_pack_never_underfills(self) -> "Selection":
        if self.package_count > 1 and self.underfill > 0:
            raise ValueError("multi-pack selections cannot underfill")
        return self


class DispenseWarning(BaseModel):
    type: WarningType
    message: str
    severity: WarningSeverity

    model_config = {"frozen": True}
