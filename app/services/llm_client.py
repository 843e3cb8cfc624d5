"""Gemini adapters for the text-completion and rewrite collaborators.

Both classes are thin: they build a prompt, call
``GenerativeModel.generate_content_async`` at temperature 0 and hand back
plain text.  Validation of what comes back lives with the callers
(``fallback_parser`` and ``instruction_orchestrator``).
"""
from __future__ import annotations

import logging
from typing import Optional

import google.generativeai as genai

from app.core.config import GEMINI_MODEL, GOOGLE_API_KEY, LLM_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

NO_CHANGE_SIGNAL = "NO_CHANGE"

REWRITE_PROMPT = """You normalize prescription dosing instructions (sigs).

Rewrite the instruction below into the canonical phrasing
"Take <number> <unit> by mouth <frequency>" (or "Inject <number> units ..." /
"Inhale <number> puffs ..." when that is the route), expanding abbreviations
(BID, TID, QID, QHS, PRN, tab, cap, gtt) and fixing obvious typos.
Never invent a dose, unit or frequency that is not implied by the text.
If the instruction is already canonical or cannot be understood, reply
exactly {no_change}.
Reply with the rewritten instruction only.

Instruction: {instruction}"""


class LLMConfigurationError(RuntimeError):
    """The Gemini collaborator cannot be used (missing API key)."""


class GeminiCompletionClient:
    """``TextCompletionClient`` backed by a Gemini model."""

    def __init__(
        self,
        api_key: str = GOOGLE_API_KEY,
        model_name: str = GEMINI_MODEL,
        timeout_seconds: float = LLM_TIMEOUT_SECONDS,
    ):
        self._api_key = api_key
        self._model_name = model_name
        self._timeout_seconds = timeout_seconds
        self._model: Optional[genai.GenerativeModel] = None

    def _get_model(self) -> genai.GenerativeModel:
        if self._model is None:
            if not self._api_key:
                raise LLMConfigurationError("GOOGLE_API_KEY is not configured")
            genai.configure(api_key=self._api_key)
            self._model = genai.GenerativeModel(
                self._model_name,
                generation_config=genai.GenerationConfig(temperature=0),
            )
        return self._model

    async def complete(self, prompt: str) -> str:
        model = self._get_model()
        response = await model.generate_content_async(
            prompt,
            request_options={"timeout": self._timeout_seconds},
        )
        text = response.text or ""
        logger.debug("Gemini reply (%s chars): %s", len(text), text[:200])
        return text


class GeminiInstructionRewriter:
    """``InstructionRewriter``: canonical rephrasing or ``None`` for no change."""

    def __init__(self, client: Optional[GeminiCompletionClient] = None):
        self._client = client or GeminiCompletionClient()

    async def rewrite(self, text: str) -> Optional[str]:
        reply = await self._client.complete(
            REWRITE_PROMPT.format(no_change=NO_CHANGE_SIGNAL, instruction=text)
        )
        rewritten = reply.strip().strip('"').strip()
        if not rewritten or rewritten.upper() == NO_CHANGE_SIGNAL:
            return None
        # Multi-line replies: only the first line is the instruction
        return rewritten.splitlines()[0].strip() or None
