"""End-to-end dispense calculation.

    instruction text ─► orchestrator ─► calculate_quantity
    package records  ─────────────────► select_packages ─► generate_warnings

Usage
-----
    orchestrator = build_default_orchestrator()
    result = await calculate_dispense(
        orchestrator, "Take 1 tablet by mouth twice daily", 30, records,
    )
    result.recommended.ndc, result.quantity.total, result.warnings
"""
from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel, Field

from app.core.config import DEFAULT_MAX_RESULTS
from app.models.dispensing import (
    DispenseWarning,
    PackageRecord,
    ParsedInstruction,
    QuantityResult,
    Selection,
    WarningSeverity,
    WarningType,
)
from app.services.instruction_orchestrator import InstructionParseOrchestrator
from app.services.ndc_normalizer import ndc_match_key
from app.services.package_selector import select_packages
from app.services.quantity_calculator import calculate_quantity
from app.services.warning_generator import generate_warnings

logger = logging.getLogger(__name__)


class InstructionNotParsedError(ValueError):
    """No parser stage could read the instruction."""

    def __init__(self, instruction: str):
        super().__init__(f"Could not parse instruction: {instruction!r}")
        self.instruction = instruction


class InactiveRecordSummary(BaseModel):
    ndc: str
    reason: str = "inactive"

    model_config = {"frozen": True}


class DispenseResult(BaseModel):
    parsed_instruction: ParsedInstruction
    quantity: QuantityResult
    recommended: Optional[Selection] = None
    alternatives: list[Selection] = Field(default_factory=list)
    warnings: list[DispenseWarning] = Field(default_factory=list)
    inactive_records: list[InactiveRecordSummary] = Field(default_factory=list)

    model_config = {"frozen": True}


async def calculate_dispense(
    orchestrator: InstructionParseOrchestrator,
    instruction: str,
    days_supply: int,
    records: list[PackageRecord],
    preferred_ndc: Optional[str] = None,
    max_results: int = DEFAULT_MAX_RESULTS,
) -> DispenseResult:
    """
    Parse, quantify, rank and flag in one call.

    Raises
    ------
    InstructionNotParsedError
        Every parser stage missed.
    QuantityValidationError
        ``days_supply`` is not a positive integer.
    """
    parsed = await orchestrator.parse(instruction)
    if parsed is None:
        raise InstructionNotParsedError(instruction)

    quantity = calculate_quantity(parsed, days_supply)
    outcome = select_packages(
        records,
        quantity.total,
        quantity.unit,
        max_results=max_results,
        preferred_ndc=preferred_ndc,
    )

    inactive = [InactiveRecordSummary(ndc=record.ndc) for record in outcome.inactive_records]
    if not outcome.selections:
        logger.info("No dispensable package for %s %s", quantity.total, quantity.unit)
        return DispenseResult(
            parsed_instruction=parsed,
            quantity=quantity,
            inactive_records=inactive,
        )

    recommended, *alternatives = outcome.selections
    recommended_key = ndc_match_key(recommended.ndc)
    source = next(
        (record for record in records if record.active and ndc_match_key(record.ndc) == recommended_key),
        None,
    )
    warnings = generate_warnings(recommended, quantity.total, parsed, source)
    if inactive:
        warnings.append(DispenseWarning(
            type=WarningType.INACTIVE_RECORD,
            message=f"{len(inactive)} inactive NDC(s) were excluded from the recommendation",
            severity=WarningSeverity.INFO,
        ))

    return DispenseResult(
        parsed_instruction=parsed,
        quantity=quantity,
        recommended=recommended,
        alternatives=alternatives,
        warnings=warnings,
        inactive_records=inactive,
    )
