from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from assistant_kernel.config import DEFAULT_MODEL_ID, load_config, load_env_file


class ConfigTest(unittest.TestCase):
    def test_load_config_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            config = load_config(load_dotenv=False)

        self.assertEqual(config.db_path, "assistant_kernel.db")
        self.assertEqual(config.model_id, DEFAULT_MODEL_ID)
        self.assertEqual(config.provider_api_keys, {})
        self.assertEqual(config.confirmation_ttl_seconds, 300)
        self.assertEqual(config.core_context_limit, 20)
        self.assertTrue(config.scheduler_enabled)
        self.assertEqual(config.cron_scan_limit, 1000)
        self.assertFalse(config.relay_enabled)
        self.assertEqual(config.relay_endpoint, "")
        self.assertIsNone(config.relay_api_key)
        self.assertEqual(config.llm_trace_log_path, "logs/llm_trace.log")

    def test_load_config_collects_provider_keys_and_base_urls(self) -> None:
        env = {
            "DEEPSEEK_API_KEY": "deep-key",
            "DEEPSEEK_BASE_URL": "https://api.deepseek.com",
            "DASHSCOPE_API_KEY": "qwen-key",
            "ASSISTANT_MODEL": "aliyun:qwen-plus",
            "ASSISTANT_KERNEL_DB_PATH": "custom.db",
        }
        with patch.dict(os.environ, env, clear=True):
            config = load_config(load_dotenv=False)

        self.assertEqual(config.provider_api_keys, {"deepseek": "deep-key", "aliyun": "qwen-key"})
        self.assertEqual(config.provider_base_urls, {"deepseek": "https://api.deepseek.com"})
        self.assertEqual(config.model_id, "aliyun:qwen-plus")
        self.assertEqual(config.db_path, "custom.db")

    def test_load_config_reads_runtime_knobs_from_env(self) -> None:
        env = {
            "CONFIRMATION_TTL_SECONDS": "60",
            "CORE_CONTEXT_LIMIT": "5",
            "SCHEDULER_ENABLED": "off",
            "SCHEDULER_POLL_INTERVAL_SECONDS": "15",
            "CRON_SCAN_LIMIT": "5000",
            "RELAY_ENABLED": "yes",
            "RELAY_ENDPOINT": " https://runtime.example.com/jobs ",
            "RELAY_API_KEY": "relay-key",
            "RELAY_TIMEOUT_SECONDS": "12",
            "LLM_TRACE_LOG_PATH": "logs/custom_llm_trace.log",
        }
        with patch.dict(os.environ, env, clear=True):
            config = load_config(load_dotenv=False)

        self.assertEqual(config.confirmation_ttl_seconds, 60)
        self.assertEqual(config.core_context_limit, 5)
        self.assertFalse(config.scheduler_enabled)
        self.assertEqual(config.scheduler_poll_interval_seconds, 15)
        self.assertEqual(config.cron_scan_limit, 5000)
        self.assertTrue(config.relay_enabled)
        self.assertEqual(config.relay_endpoint, "https://runtime.example.com/jobs")
        self.assertEqual(config.relay_api_key, "relay-key")
        self.assertEqual(config.relay_timeout_seconds, 12)
        self.assertEqual(config.llm_trace_log_path, "logs/custom_llm_trace.log")

    def test_load_config_invalid_runtime_knobs_fall_back_to_defaults(self) -> None:
        env = {
            "CONFIRMATION_TTL_SECONDS": "0",
            "CORE_CONTEXT_LIMIT": "bad",
            "SCHEDULER_ENABLED": "maybe",
            "CRON_SCAN_LIMIT": "-1",
            "RELAY_ENABLED": "",
            "LLM_TRACE_LOG_PATH": "   ",
        }
        with patch.dict(os.environ, env, clear=True):
            config = load_config(load_dotenv=False)

        self.assertEqual(config.confirmation_ttl_seconds, 300)
        self.assertEqual(config.core_context_limit, 20)
        self.assertTrue(config.scheduler_enabled)
        self.assertEqual(config.cron_scan_limit, 1000)
        self.assertFalse(config.relay_enabled)
        self.assertEqual(config.llm_trace_log_path, "")

    def test_load_env_file_sets_only_missing_keys(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            env_path = Path(tmp) / ".env"
            env_path.write_text("DEEPSEEK_API_KEY=file-key\nASSISTANT_MODEL='deepseek:deepseek-chat'\n", encoding="utf-8")
            with patch.dict(os.environ, {"DEEPSEEK_API_KEY": "existing-key"}, clear=True):
                load_env_file(str(env_path))
                self.assertEqual(os.environ["DEEPSEEK_API_KEY"], "existing-key")
                self.assertEqual(os.environ["ASSISTANT_MODEL"], "deepseek:deepseek-chat")


if __name__ == "__main__":
    unittest.main()
