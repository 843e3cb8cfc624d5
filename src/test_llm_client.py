"""Tests for the Gemini adapters; the SDK is patched, nothing is sent."""
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from app.services.llm_client import (
    NO_CHANGE_SIGNAL,
    GeminiCompletionClient,
    GeminiInstructionRewriter,
    LLMConfigurationError,
)


def _client(reply):
    client = AsyncMock()
    client.complete = AsyncMock(return_value=reply)
    return client


class GeminiInstructionRewriterTests(unittest.IsolatedAsyncioTestCase):
    async def test_rewrite_returned_trimmed(self):
        client = _client('  "Take 1 tablet by mouth twice daily"\n')
        rewritten = await GeminiInstructionRewriter(client).rewrite("1 tab bd")
        self.assertEqual(rewritten, "Take 1 tablet by mouth twice daily")
        self.assertIn("1 tab bd", client.complete.await_args.args[0])

    async def test_no_change_signal(self):
        self.assertIsNone(await GeminiInstructionRewriter(_client(NO_CHANGE_SIGNAL)).rewrite("x"))
        self.assertIsNone(await GeminiInstructionRewriter(_client("   ")).rewrite("x"))

    async def test_first_line_only(self):
        client = _client("Take 2 capsules by mouth daily\nExplanation: expanded caps")
        self.assertEqual(await GeminiInstructionRewriter(client).rewrite("2 caps qd"), "Take 2 capsules by mouth daily")


class GeminiCompletionClientTests(unittest.IsolatedAsyncioTestCase):
    async def test_missing_api_key(self):
        with self.assertRaises(LLMConfigurationError):
            await GeminiCompletionClient(api_key="").complete("prompt")

    @patch("app.services.llm_client.genai")
    async def test_complete_uses_configured_model(self, genai):
        model = MagicMock()
        model.generate_content_async = AsyncMock(return_value=MagicMock(text='{"dose": 1}'))
        genai.GenerativeModel.return_value = model

        client = GeminiCompletionClient(api_key="key", model_name="gemini-test", timeout_seconds=5)
        self.assertEqual(await client.complete("prompt"), '{"dose": 1}')
        await client.complete("again")

        genai.configure.assert_called_once_with(api_key="key")
        self.assertEqual(genai.GenerativeModel.call_args.args[0], "gemini-test")
        model.generate_content_async.assert_awaited_with("again", request_options={"timeout": 5})


if __name__ == "__main__":
    unittest.main()
