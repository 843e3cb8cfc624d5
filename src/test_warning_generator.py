"""Tests for advisory warnings on a chosen selection."""
import unittest

from app.models.dispensing import (
    InstructionUnit,
    PackageRecord,
    ParsedInstruction,
    Selection,
    WarningSeverity,
    WarningType,
)
from app.services.warning_generator import generate_warnings

_TABLETS = ParsedInstruction(dose_amount=1, doses_per_day=1, unit=InstructionUnit.TABLET, confidence=0.95)


def _selection(size, target, package_count=1, **overrides):
    total = size * package_count
    values = dict(
        ndc="00002-3227-30",
        package_size=size,
        package_count=package_count,
        total_quantity=total,
        overfill=max(0, total - target),
        underfill=max(0, target - total) if package_count == 1 else 0,
        match_score=100,
        unit="tablet",
        dosage_form="TABLET",
    )
    values.update(overrides)
    return Selection(**values)


def _record(**overrides):
    values = dict(ndc="00002-3227-30", dosage_form="TABLET")
    values.update(overrides)
    return PackageRecord(**values)


class GenerateWarningsTests(unittest.TestCase):
    def test_perfect_match_has_no_warnings(self):
        self.assertEqual(generate_warnings(_selection(30, 30), 30, _TABLETS, _record()), [])

    def test_inactive_record(self):
        warnings = generate_warnings(_selection(30, 30), 30, _TABLETS, _record(active=False))
        self.assertEqual([w.type for w in warnings], [WarningType.INACTIVE_RECORD])
        self.assertEqual(warnings[0].severity, WarningSeverity.ERROR)
        self.assertIn("00002-3227-30", warnings[0].message)

    def test_overfill_above_ten_percent(self):
        warnings = generate_warnings(_selection(60, 30), 30, _TABLETS, _record())
        self.assertEqual([w.type for w in warnings], [WarningType.OVERFILL])
        self.assertIn("100.0%", warnings[0].message)

    def test_overfill_at_ten_percent_is_quiet(self):
        self.assertEqual(generate_warnings(_selection(33, 30), 30, _TABLETS, _record()), [])

    def test_single_pack_underfill(self):
        warnings = generate_warnings(_selection(20, 30), 30, _TABLETS, _record())
        self.assertEqual([w.type for w in warnings], [WarningType.UNDERFILL])
        self.assertIn("Requires 2 packages", warnings[0].message)

    def test_dosage_form_mismatch(self):
        liquid = ParsedInstruction(dose_amount=5, doses_per_day=2, unit=InstructionUnit.ML, confidence=0.95)
        selection = _selection(30, 30, unit="mL")
        warnings = generate_warnings(selection, 30, liquid, _record())
        self.assertEqual([w.type for w in warnings], [WarningType.DOSAGE_FORM_MISMATCH])

    def test_missing_form_label_is_not_a_mismatch(self):
        selection = _selection(30, 30, dosage_form="")
        self.assertEqual(generate_warnings(selection, 30, _TABLETS), [])

    def test_warning_order(self):
        liquid = ParsedInstruction(dose_amount=5, doses_per_day=2, unit=InstructionUnit.ML, confidence=0.95)
        selection = _selection(60, 30, unit="mL")
        warnings = generate_warnings(selection, 30, liquid, _record(active=False))
        self.assertEqual(
            [w.type for w in warnings],
            [WarningType.INACTIVE_RECORD, WarningType.OVERFILL, WarningType.DOSAGE_FORM_MISMATCH],
        )

    def test_selection_fields_used_without_record(self):
        warnings = generate_warnings(_selection(30, 30, dosage_form="SOLUTION"), 30, _TABLETS)
        self.assertEqual([w.type for w in warnings], [WarningType.DOSAGE_FORM_MISMATCH])


if __name__ == "__main__":
    unittest.main()
