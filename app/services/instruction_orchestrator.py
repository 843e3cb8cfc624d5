"""Instruction parse orchestrator.

State machine over one instruction string:

    CACHE        valid cached result → return; invalid → evict, continue
    RULES        deterministic grammar; confidence ≥ 0.8 → cache, return
    FALLBACK     text-completion parser; valid → cache, return
    REWRITE      depth 0 only: rewrite collaborator, and when the rewrite
                 differs (after normalization) run this machine once more
                 at depth 1; success is cached under the ORIGINAL key
    FAIL         None

Collaborator failures (cache, completion, rewrite) are logged and treated as
a failed stage.  ``parse`` itself never raises; a broken cache only makes
things slower.
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from pydantic import ValidationError

from app.core.config import GOOGLE_API_KEY, SIG_PARSE_CACHE_TTL
from app.models.dispensing import ParsedInstruction
from app.services.cache import CacheStore, build_cache_store, sig_parse_key
from app.services.fallback_parser import FallbackInstructionParser
from app.services.instruction_parser import parse_instruction_text, preprocess_instruction
from app.services.llm_client import GeminiCompletionClient, GeminiInstructionRewriter

logger = logging.getLogger(__name__)

DETERMINISTIC_ACCEPT_CONFIDENCE = 0.8
MAX_REWRITE_DEPTH = 1


class InstructionRewriter(Protocol):
    async def rewrite(self, text: str) -> Optional[str]: ...


class InstructionParseOrchestrator:
    def __init__(
        self,
        cache: Optional[CacheStore] = None,
        fallback: Optional[FallbackInstructionParser] = None,
        rewriter: Optional[InstructionRewriter] = None,
        cache_ttl_seconds: int = SIG_PARSE_CACHE_TTL,
    ):
        self._cache = cache
        self._fallback = fallback
        self._rewriter = rewriter
        self._cache_ttl_seconds = cache_ttl_seconds

    async def parse(self, text: str, depth: int = 0) -> Optional[ParsedInstruction]:
        """Parsed instruction for ``text`` or ``None``; never raises."""
        try:
            return await self._run(text, depth)
        except Exception:
            logger.exception("Instruction parse failed unexpectedly for %r", text)
            return None

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    async def _run(self, text: str, depth: int) -> Optional[ParsedInstruction]:
        if not text or not isinstance(text, str) or not text.strip():
            return None
        key = sig_parse_key(text)

        cached = await self._cache_lookup(key)
        if cached is not None:
            logger.debug("Instruction cache hit: %s", key)
            return cached

        deterministic = self._deterministic(text)
        if deterministic is not None and deterministic.confidence >= DETERMINISTIC_ACCEPT_CONFIDENCE:
            await self._cache_store(key, deterministic, depth)
            return deterministic

        fallback = await self._fallback_parse(text)
        if fallback is not None:
            await self._cache_store(key, fallback, depth)
            return fallback

        if depth >= MAX_REWRITE_DEPTH:
            return None

        rewritten = await self._rewrite(text)
        if rewritten is None:
            return None
        if preprocess_instruction(rewritten) == preprocess_instruction(text):
            logger.debug("Rewrite of %r made no change", text)
            return None

        logger.info("Retrying instruction with rewrite: %r → %r", text, rewritten)
        result = await self._run(rewritten, depth + 1)
        if result is not None:
            await self._cache_store(key, result, depth)
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def _deterministic(self, text: str) -> Optional[ParsedInstruction]:
        try:
            return parse_instruction_text(text)
        except Exception:
            logger.exception("Deterministic parser raised for %r", text)
            return None

    async def _fallback_parse(self, text: str) -> Optional[ParsedInstruction]:
        if self._fallback is None:
            return None
        try:
            return await self._fallback.parse(text)
        except Exception:
            logger.exception("Fallback parser raised for %r", text)
            return None

    async def _rewrite(self, text: str) -> Optional[str]:
        if self._rewriter is None:
            return None
        try:
            rewritten = await self._rewriter.rewrite(text)
        except Exception as exc:
            logger.warning("Rewrite collaborator failed for %r: %s", text, exc)
            return None
        if not isinstance(rewritten, str) or not rewritten.strip():
            return None
        return rewritten

    # ------------------------------------------------------------------
    # Cache access
    # ------------------------------------------------------------------
    async def _cache_lookup(self, key: str) -> Optional[ParsedInstruction]:
        if self._cache is None:
            return None
        try:
            raw: Any = await self._cache.get(key)
        except Exception as exc:
            logger.warning("Cache get failed for %s: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            if isinstance(raw, ParsedInstruction):
                return raw
            return ParsedInstruction.model_validate(raw)
        except ValidationError:
            logger.warning("Evicting invalid cache entry %s", key)
            await self._cache_delete(key)
            return None

    async def _cache_store(self, key: str, parsed: ParsedInstruction, depth: int) -> None:
        # Results found at depth > 0 belong to the original key, stored by the caller
        if self._cache is None or depth > 0:
            return
        try:
            await self._cache.set(key, parsed.model_dump(mode="json"), self._cache_ttl_seconds)
        except Exception as exc:
            logger.warning("Cache set failed for %s: %s", key, exc)

    async def _cache_delete(self, key: str) -> None:
        try:
            await self._cache.delete(key)
        except Exception as exc:
            logger.warning("Cache delete failed for %s: %s", key, exc)


def build_default_orchestrator() -> InstructionParseOrchestrator:
    """Orchestrator wired to the configured cache and, when a key is set, Gemini."""
    cache = build_cache_store()
    if not GOOGLE_API_KEY:
        logger.info("GOOGLE_API_KEY not set: instruction parsing is rules-only")
        return InstructionParseOrchestrator(cache=cache)
    client = GeminiCompletionClient()
    return InstructionParseOrchestrator(
        cache=cache,
        fallback=FallbackInstructionParser(client),
        rewriter=GeminiInstructionRewriter(client),
    )
