"""Tests for the instruction parse orchestrator state machine.

Collaborators (fallback parser, rewriter, cache) are ``AsyncMock`` objects or
the in-memory cache; nothing leaves the process.
"""
import unittest
from unittest.mock import AsyncMock

from app.models.dispensing import InstructionUnit, ParsedInstruction, ParseSource
from app.services.cache import InMemoryCache, sig_parse_key
from app.services.instruction_orchestrator import InstructionParseOrchestrator


def _fallback_result(**overrides):
    values = dict(
        dose_amount=1,
        doses_per_day=2,
        unit=InstructionUnit.TABLET,
        confidence=0.85,
        source=ParseSource.FALLBACK,
    )
    values.update(overrides)
    return ParsedInstruction(**values)


def _fallback(result=None, side_effect=None):
    fallback = AsyncMock()
    fallback.parse = AsyncMock(return_value=result, side_effect=side_effect)
    return fallback


def _rewriter(result=None, side_effect=None):
    rewriter = AsyncMock()
    rewriter.rewrite = AsyncMock(return_value=result, side_effect=side_effect)
    return rewriter


def _broken_cache():
    cache = AsyncMock()
    cache.get = AsyncMock(side_effect=ConnectionError("cache down"))
    cache.set = AsyncMock(side_effect=ConnectionError("cache down"))
    cache.delete = AsyncMock(side_effect=ConnectionError("cache down"))
    return cache


class InstructionParseOrchestratorTests(unittest.IsolatedAsyncioTestCase):
    # ------------------------------------------------------------------
    # Deterministic path and caching
    # ------------------------------------------------------------------
    async def test_deterministic_hit_is_cached_and_skips_fallback(self):
        cache = InMemoryCache()
        fallback = _fallback()
        orchestrator = InstructionParseOrchestrator(cache=cache, fallback=fallback)

        parsed = await orchestrator.parse("Take 1 tablet twice daily")

        self.assertEqual(parsed.doses_per_day, 2)
        fallback.parse.assert_not_awaited()
        cached = await cache.get(sig_parse_key("take 1 TABLET   twice daily "))
        self.assertEqual(cached["doses_per_day"], 2)

    async def test_cached_result_is_returned_without_parsing(self):
        cache = InMemoryCache()
        await cache.set(sig_parse_key("mystery sig"), _fallback_result().model_dump(mode="json"))
        fallback = _fallback()
        orchestrator = InstructionParseOrchestrator(cache=cache, fallback=fallback)

        parsed = await orchestrator.parse("Mystery   SIG")

        self.assertEqual(parsed.dose_amount, 1)
        fallback.parse.assert_not_awaited()

    async def test_invalid_cache_entry_is_evicted(self):
        cache = InMemoryCache()
        key = sig_parse_key("Take 1 tablet twice daily")
        await cache.set(key, {"dose_amount": -3})
        orchestrator = InstructionParseOrchestrator(cache=cache)

        parsed = await orchestrator.parse("Take 1 tablet twice daily")

        self.assertEqual(parsed.dose_amount, 1)
        self.assertEqual((await cache.get(key))["dose_amount"], 1)

    # ------------------------------------------------------------------
    # Fallback and rewrite
    # ------------------------------------------------------------------
    async def test_fallback_used_when_rules_miss(self):
        fallback = _fallback(_fallback_result())
        orchestrator = InstructionParseOrchestrator(cache=InMemoryCache(), fallback=fallback)

        parsed = await orchestrator.parse("one pill after each meal")

        self.assertEqual(parsed.source, ParseSource.FALLBACK)
        fallback.parse.assert_awaited_once_with("one pill after each meal")

    async def test_rewrite_retry_cached_under_original_key(self):
        cache = InMemoryCache()
        rewriter = _rewriter("Take 1 tablet by mouth twice daily")
        orchestrator = InstructionParseOrchestrator(cache=cache, fallback=_fallback(), rewriter=rewriter)

        parsed = await orchestrator.parse("1 tabby bd")

        self.assertEqual(parsed.doses_per_day, 2)
        self.assertIsNotNone(await cache.get(sig_parse_key("1 tabby bd")))
        self.assertIsNone(await cache.get(sig_parse_key("Take 1 tablet by mouth twice daily")))

    async def test_rewrite_happens_at_most_once(self):
        rewriter = _rewriter("still gibberish")
        fallback = _fallback()
        orchestrator = InstructionParseOrchestrator(cache=InMemoryCache(), fallback=fallback, rewriter=rewriter)

        self.assertIsNone(await orchestrator.parse("gibberish"))
        rewriter.rewrite.assert_awaited_once()
        self.assertEqual(fallback.parse.await_count, 2)

    async def test_rewrite_without_change_is_a_non_answer(self):
        rewriter = _rewriter("  GIBBERISH. ")
        fallback = _fallback()
        orchestrator = InstructionParseOrchestrator(fallback=fallback, rewriter=rewriter)

        self.assertIsNone(await orchestrator.parse("gibberish"))
        fallback.parse.assert_awaited_once()

    async def test_depth_one_disables_rewrite(self):
        rewriter = _rewriter("Take 1 tablet twice daily")
        orchestrator = InstructionParseOrchestrator(rewriter=rewriter)

        self.assertIsNone(await orchestrator.parse("gibberish", depth=1))
        rewriter.rewrite.assert_not_awaited()

    # ------------------------------------------------------------------
    # Failure tolerance
    # ------------------------------------------------------------------
    async def test_never_raises_when_every_collaborator_fails(self):
        orchestrator = InstructionParseOrchestrator(
            cache=_broken_cache(),
            fallback=_fallback(side_effect=RuntimeError("boom")),
            rewriter=_rewriter(side_effect=RuntimeError("boom")),
        )
        self.assertIsNone(await orchestrator.parse("gibberish"))

    async def test_broken_cache_does_not_change_results(self):
        orchestrator = InstructionParseOrchestrator(cache=_broken_cache())
        parsed = await orchestrator.parse("Take 2 tablets by mouth every 8 hours")
        self.assertEqual(parsed.dose_amount, 2)
        self.assertEqual(parsed.doses_per_day, 3)

    async def test_blank_input(self):
        self.assertIsNone(await InstructionParseOrchestrator().parse("   "))


if __name__ == "__main__":
    unittest.main()
