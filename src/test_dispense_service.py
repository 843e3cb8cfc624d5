"""End-to-end tests: instruction text and package records to a recommendation."""
import unittest

from app.models.dispensing import PackageRecord, WarningSeverity, WarningType
from app.services.cache import InMemoryCache
from app.services.dispense_service import InstructionNotParsedError, calculate_dispense
from app.services.instruction_orchestrator import InstructionParseOrchestrator
from app.services.quantity_calculator import QuantityValidationError


def _tablets(ndc, size, **overrides):
    values = dict(ndc=ndc, package_description=f"{size} TABLET in 1 BOTTLE", dosage_form="TABLET")
    values.update(overrides)
    return PackageRecord(**values)


class CalculateDispenseTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.orchestrator = InstructionParseOrchestrator(cache=InMemoryCache())

    async def test_twice_daily_for_thirty_days(self):
        records = [_tablets("00002-3227-30", 30), _tablets("00002-3227-60", 60)]
        result = await calculate_dispense(self.orchestrator, "Take 1 tablet twice daily", 30, records)

        self.assertEqual(result.quantity.total, 60)
        self.assertEqual(result.quantity.unit, "tablet")
        self.assertEqual(result.recommended.ndc, "00002-3227-60")
        self.assertEqual(result.recommended.match_score, 100)
        self.assertEqual(result.warnings, [])
        self.assertEqual(
            [(s.ndc, s.package_count, s.match_score) for s in result.alternatives],
            [("00002-3227-30", 2, 95), ("00002-3227-30", 1, 69)],
        )

    async def test_inactive_records_reported(self):
        records = [_tablets("00002-3227-60", 60, active=False), _tablets("00002-3227-90", 90)]
        result = await calculate_dispense(self.orchestrator, "Take 1 tablet twice daily", 30, records)

        self.assertEqual(result.recommended.ndc, "00002-3227-90")
        self.assertEqual([r.ndc for r in result.inactive_records], ["00002-3227-60"])
        self.assertEqual(
            [(w.type, w.severity) for w in result.warnings],
            [(WarningType.OVERFILL, WarningSeverity.WARNING), (WarningType.INACTIVE_RECORD, WarningSeverity.INFO)],
        )

    async def test_inactive_duplicate_does_not_flag_active_recommendation(self):
        records = [_tablets("00002-3227-60", 60, active=False), _tablets("0002-3227-60", 60)]
        result = await calculate_dispense(self.orchestrator, "Take 1 tablet twice daily", 30, records)

        self.assertEqual(result.recommended.ndc, "0002-3227-60")
        self.assertEqual(
            [(w.type, w.severity) for w in result.warnings],
            [(WarningType.INACTIVE_RECORD, WarningSeverity.INFO)],
        )

    async def test_no_compatible_package(self):
        result = await calculate_dispense(
            self.orchestrator, "Take 5 mL by mouth twice daily", 10, [_tablets("00002-3227-30", 30)],
        )
        self.assertEqual(result.quantity.total, 100)
        self.assertIsNone(result.recommended)
        self.assertEqual(result.alternatives, [])

    async def test_unparseable_instruction(self):
        with self.assertRaises(InstructionNotParsedError):
            await calculate_dispense(self.orchestrator, "use as directed by physician", 30, [])

    async def test_invalid_days_supply(self):
        with self.assertRaises(QuantityValidationError):
            await calculate_dispense(self.orchestrator, "Take 1 tablet twice daily", 0, [])


if __name__ == "__main__":
    unittest.main()
