"""Tests for the text-completion fallback parser.

The completion collaborator is replaced by ``AsyncMock``; no network calls.
"""
import json
import unittest
from unittest.mock import AsyncMock

from app.models.dispensing import DosageForm, InstructionUnit, ParseSource
from app.services.fallback_parser import FallbackInstructionParser, decode_reply, validate_reply


def _client(reply=None, side_effect=None):
    client = AsyncMock()
    client.complete = AsyncMock(return_value=reply, side_effect=side_effect)
    return client


class DecodeReplyTests(unittest.TestCase):
    def test_plain_json(self):
        self.assertEqual(decode_reply('{"dose": 1}'), {"dose": 1})

    def test_markdown_fence(self):
        self.assertEqual(decode_reply('```json\n{"dose": 1}\n```'), {"dose": 1})

    def test_not_json(self):
        self.assertIsNone(decode_reply("I think it is one tablet"))

    def test_json_array_is_rejected(self):
        self.assertIsNone(decode_reply("[1, 2]"))


class ValidateReplyTests(unittest.TestCase):
    def _payload(self, **overrides):
        payload = {"dose": 1, "frequency": 2, "unit": "tablet", "confidence": 0.9}
        payload.update(overrides)
        return payload

    def test_valid_required_fields(self):
        parsed = validate_reply(self._payload())
        self.assertEqual(parsed.dose_amount, 1)
        self.assertEqual(parsed.doses_per_day, 2)
        self.assertEqual(parsed.unit, InstructionUnit.TABLET)
        self.assertEqual(parsed.source, ParseSource.FALLBACK)

    def test_unit_matched_case_insensitively(self):
        self.assertEqual(validate_reply(self._payload(unit="ML")).unit, InstructionUnit.ML)

    def test_missing_required_field(self):
        payload = self._payload()
        del payload["confidence"]
        self.assertIsNone(validate_reply(payload))

    def test_wrong_types_rejected(self):
        self.assertIsNone(validate_reply(self._payload(dose="1")))
        self.assertIsNone(validate_reply(self._payload(frequency=True)))
        self.assertIsNone(validate_reply(self._payload(unit=3)))

    def test_out_of_range_values_rejected(self):
        self.assertIsNone(validate_reply(self._payload(dose=0)))
        self.assertIsNone(validate_reply(self._payload(frequency=-1)))
        self.assertIsNone(validate_reply(self._payload(confidence=1.5)))
        self.assertIsNone(validate_reply(self._payload(unit="mg")))

    def test_prn_frequency_zero_accepted(self):
        self.assertEqual(validate_reply(self._payload(frequency=0)).doses_per_day, 0)

    def test_malformed_optional_fields_dropped(self):
        parsed = validate_reply(self._payload(
            dosage_form="gummy",
            concentration={"amount": -5, "volume": 5},
            insulin_strength="U-100",
            inhaler_capacity=12.5,
        ))
        self.assertIsNotNone(parsed)
        self.assertIsNone(parsed.dosage_form)
        self.assertIsNone(parsed.concentration)
        self.assertIsNone(parsed.insulin_strength)
        self.assertIsNone(parsed.inhaler_capacity)

    def test_valid_optional_fields_kept(self):
        parsed = validate_reply(self._payload(
            unit="mL",
            dosage_form="liquid",
            concentration={"amount": 250, "amount_unit": "mg", "volume": 5, "volume_unit": "mL"},
            dose_mass_unit="mg",
        ))
        self.assertEqual(parsed.dosage_form, DosageForm.LIQUID)
        self.assertEqual(parsed.concentration.amount, 250)
        self.assertEqual(parsed.dose_mass_unit, "mg")


class FallbackInstructionParserTests(unittest.IsolatedAsyncioTestCase):
    async def test_parses_valid_reply(self):
        reply = json.dumps({"dose": 2, "frequency": 1, "unit": "capsules", "confidence": 0.85})
        client = _client(reply)
        parsed = await FallbackInstructionParser(client).parse("two caps every morning w/ breakfast")
        self.assertEqual(parsed.dose_amount, 2)
        self.assertEqual(parsed.unit, InstructionUnit.CAPSULE)
        prompt = client.complete.await_args.args[0]
        self.assertIn("two caps every morning w/ breakfast", prompt)

    async def test_transport_error_returns_none(self):
        client = _client(side_effect=TimeoutError("slow"))
        self.assertIsNone(await FallbackInstructionParser(client).parse("take one"))

    async def test_malformed_reply_returns_none(self):
        client = _client("not json at all")
        self.assertIsNone(await FallbackInstructionParser(client).parse("take one"))

    async def test_invalid_values_return_none(self):
        reply = json.dumps({"dose": -1, "frequency": 1, "unit": "tablet", "confidence": 0.9})
        self.assertIsNone(await FallbackInstructionParser(_client(reply)).parse("take one"))

    async def test_blank_input_skips_collaborator(self):
        client = _client("{}")
        self.assertIsNone(await FallbackInstructionParser(client).parse("   "))
        client.complete.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
