from __future__ import annotations

import itertools
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from assistant_kernel.logging_setup import component_logger

PROVIDER_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "aliyun": "https://dashscope.aliyuncs.com/compatible-mode/v1",
    "deepseek": "https://api.deepseek.com",
    "claude": "https://api.anthropic.com/v1/",
}
PROVIDER_ALIASES = {
    "openai": "openai",
    "gpt": "openai",
    "aliyun": "aliyun",
    "dashscope": "aliyun",
    "qwen": "aliyun",
    "deepseek": "deepseek",
    "claude": "claude",
    "anthropic": "claude",
}

_THINK_BLOCK_PATTERN = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)


class LLMError(RuntimeError):
    """Base class for language-model call failures."""


class MissingAPIKeyError(LLMError):
    """No API key is configured for the requested provider."""


class InvalidResponseError(LLMError):
    """The provider answered without any usable content."""


class ProviderError(LLMError):
    """The provider or its SDK failed the request."""


class LLMClient(Protocol):
    def call(self, system_prompt: str, user_prompt: str, model_id: str) -> str: ...


@dataclass(frozen=True)
class ModelIdentifier:
    provider: str
    model: str

    @property
    def identifier(self) -> str:
        return f"{self.provider}:{self.model}"


def parse_model_identifier(model_id: str) -> ModelIdentifier:
    """Split ``provider:model``; bare model names infer the provider from their prefix."""
    normalized = model_id.strip()
    if not normalized:
        raise ValueError("model identifier must not be empty")
    if ":" in normalized:
        raw_provider, model = normalized.split(":", 1)
        provider = PROVIDER_ALIASES.get(raw_provider.strip().lower())
        if provider is not None and model.strip():
            return ModelIdentifier(provider=provider, model=model.strip())
    return ModelIdentifier(provider=_infer_provider(normalized), model=normalized)


def _infer_provider(model: str) -> str:
    lowered = model.lower()
    if lowered.startswith(("gpt-", "o1", "o3")):
        return "openai"
    if lowered.startswith("qwen"):
        return "aliyun"
    if lowered.startswith("deepseek"):
        return "deepseek"
    if lowered.startswith("claude"):
        return "claude"
    return "openai"


def strip_think_blocks(text: str) -> str:
    return _THINK_BLOCK_PATTERN.sub("", text).strip()


@dataclass
class OpenAICompatibleClient:
    """Chat-completions client for every provider exposing an OpenAI-compatible API."""

    api_keys: dict[str, str] = field(default_factory=dict)
    base_urls: dict[str, str] = field(default_factory=dict)
    temperature: float = 0.2
    timeout: float = 60.0
    trace_logger: logging.Logger | None = None

    def __post_init__(self) -> None:
        self._trace_logger = component_logger("llm_trace", self.trace_logger)
        self._call_seq = itertools.count(1)

    def call(self, system_prompt: str, user_prompt: str, model_id: str) -> str:
        target = parse_model_identifier(model_id)
        api_key = (self.api_keys.get(target.provider) or "").strip()
        if not api_key:
            raise MissingAPIKeyError(f"未配置 {target.provider} 的 API Key，无法调用模型 {target.model}")

        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        call_id = next(self._call_seq)
        self._trace(
            {
                "event": "llm_request",
                "call_id": call_id,
                "model": target.identifier,
                "messages": messages,
            }
        )
        try:
            content = self._create_reply(target, api_key, messages)
        except LLMError as exc:
            self._trace({"event": "llm_response_error", "call_id": call_id, "error": repr(exc)})
            raise
        self._trace({"event": "llm_response", "call_id": call_id, "response": content})
        return content

    def _create_reply(self, target: ModelIdentifier, api_key: str, messages: list[dict[str, Any]]) -> str:
        try:
            import openai
        except ImportError as exc:
            raise ProviderError("openai SDK 未安装，请先执行: pip install -e .") from exc

        base_url = self.base_urls.get(target.provider) or PROVIDER_BASE_URLS[target.provider]
        client = openai.OpenAI(api_key=api_key, base_url=base_url, timeout=self.timeout)
        try:
            resp = client.chat.completions.create(
                model=target.model,
                messages=messages,
                temperature=self.temperature,
            )
        except openai.OpenAIError as exc:
            raise ProviderError(f"{target.provider} 请求失败：{exc}") from exc

        if not resp.choices:
            raise InvalidResponseError("LLM 返回为空，请检查模型或 API 配置")
        content = resp.choices[0].message.content
        if content is None:
            raise InvalidResponseError("LLM 返回内容为空")
        text = content if isinstance(content, str) else str(content)
        text = text.strip()
        if not text:
            raise InvalidResponseError("LLM 返回内容为空")
        return text

    def _trace(self, payload: dict[str, Any]) -> None:
        self._trace_logger.info(json.dumps(payload, ensure_ascii=False))
