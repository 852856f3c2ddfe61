from __future__ import annotations

import unittest
from unittest.mock import patch

from assistant_kernel.llm import (
    MissingAPIKeyError,
    ModelIdentifier,
    OpenAICompatibleClient,
    ProviderError,
    parse_model_identifier,
    strip_think_blocks,
)


class ModelIdentifierTest(unittest.TestCase):
    def test_explicit_provider_prefix(self) -> None:
        self.assertEqual(parse_model_identifier("deepseek:deepseek-chat"), ModelIdentifier("deepseek", "deepseek-chat"))
        self.assertEqual(parse_model_identifier("qwen:qwen-max"), ModelIdentifier("aliyun", "qwen-max"))
        self.assertEqual(parse_model_identifier("anthropic:claude-3"), ModelIdentifier("claude", "claude-3"))

    def test_bare_model_infers_provider(self) -> None:
        self.assertEqual(parse_model_identifier("gpt-4o-mini").provider, "openai")
        self.assertEqual(parse_model_identifier("qwen-plus").provider, "aliyun")
        self.assertEqual(parse_model_identifier("deepseek-reasoner").provider, "deepseek")
        self.assertEqual(parse_model_identifier("mystery-model").provider, "openai")

    def test_empty_identifier_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            parse_model_identifier("   ")

    def test_strip_think_blocks(self) -> None:
        self.assertEqual(strip_think_blocks("<think>draft</think>\n{\"calls\": []}"), '{"calls": []}')


class OpenAICompatibleClientTest(unittest.TestCase):
    def test_call_without_key_raises_missing_key(self) -> None:
        client = OpenAICompatibleClient(api_keys={"openai": "sk-test"})

        with self.assertRaises(MissingAPIKeyError):
            client.call("system", "user", "deepseek:deepseek-chat")

    def test_call_builds_messages_and_uses_provider_key(self) -> None:
        client = OpenAICompatibleClient(api_keys={"deepseek": "deep-key"})

        with patch.object(client, "_create_reply", return_value="ok") as mock_create:
            result = client.call("你是 Planner", "REQUEST: 帮助", "deepseek:deepseek-chat")

        self.assertEqual(result, "ok")
        target, api_key, messages = mock_create.call_args.args
        self.assertEqual(target, ModelIdentifier("deepseek", "deepseek-chat"))
        self.assertEqual(api_key, "deep-key")
        self.assertEqual(
            messages,
            [
                {"role": "system", "content": "你是 Planner"},
                {"role": "user", "content": "REQUEST: 帮助"},
            ],
        )

    def test_call_propagates_provider_error(self) -> None:
        client = OpenAICompatibleClient(api_keys={"openai": "sk-test"})

        with patch.object(client, "_create_reply", side_effect=ProviderError("boom")):
            with self.assertRaises(ProviderError):
                client.call("system", "user", "gpt-4o-mini")


if __name__ == "__main__":
    unittest.main()
