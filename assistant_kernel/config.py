from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_MODEL_ID = "deepseek:deepseek-chat"


@dataclass(frozen=True)
class AppConfig:
    db_path: str
    model_id: str
    provider_api_keys: dict[str, str] = field(default_factory=dict)
    provider_base_urls: dict[str, str] = field(default_factory=dict)
    llm_timeout_seconds: int = 60
    confirmation_ttl_seconds: int = 300
    core_context_limit: int = 20
    scheduler_enabled: bool = True
    scheduler_poll_interval_seconds: int = 60
    cron_scan_limit: int = 1000
    relay_enabled: bool = False
    relay_endpoint: str = ""
    relay_api_key: str | None = None
    relay_timeout_seconds: int = 30
    app_log_path: str = "logs/app.log"
    llm_trace_log_path: str = "logs/llm_trace.log"
    app_log_retention_days: int = 7


def load_env_file(env_path: str = ".env") -> None:
    """Minimal .env loader; existing environment variables win."""
    path = Path(env_path)
    if not path.exists() or not path.is_file():
        return

    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def load_config(load_dotenv: bool = True) -> AppConfig:
    if load_dotenv:
        load_env_file()
    api_keys = {
        provider: value
        for provider, value in (
            ("openai", _read_env_text("OPENAI_API_KEY", default="")),
            ("deepseek", _read_env_text("DEEPSEEK_API_KEY", default="")),
            ("aliyun", _read_env_text("DASHSCOPE_API_KEY", default="")),
            ("claude", _read_env_text("ANTHROPIC_API_KEY", default="")),
        )
        if value
    }
    base_urls = {
        provider: value
        for provider, value in (
            ("openai", _read_env_text("OPENAI_BASE_URL", default="")),
            ("deepseek", _read_env_text("DEEPSEEK_BASE_URL", default="")),
            ("aliyun", _read_env_text("DASHSCOPE_BASE_URL", default="")),
            ("claude", _read_env_text("ANTHROPIC_BASE_URL", default="")),
        )
        if value
    }
    relay_api_key = _read_env_text("RELAY_API_KEY", default="") or None
    return AppConfig(
        db_path=_read_env_text("ASSISTANT_KERNEL_DB_PATH", default="assistant_kernel.db") or "assistant_kernel.db",
        model_id=_read_env_text("ASSISTANT_MODEL", default=DEFAULT_MODEL_ID) or DEFAULT_MODEL_ID,
        provider_api_keys=api_keys,
        provider_base_urls=base_urls,
        llm_timeout_seconds=_read_env_int("LLM_TIMEOUT_SECONDS", default=60, min_value=1),
        confirmation_ttl_seconds=_read_env_int("CONFIRMATION_TTL_SECONDS", default=300, min_value=1),
        core_context_limit=_read_env_int("CORE_CONTEXT_LIMIT", default=20, min_value=1),
        scheduler_enabled=_read_env_bool("SCHEDULER_ENABLED", default=True),
        scheduler_poll_interval_seconds=_read_env_int("SCHEDULER_POLL_INTERVAL_SECONDS", default=60, min_value=1),
        cron_scan_limit=_read_env_int("CRON_SCAN_LIMIT", default=1000, min_value=1),
        relay_enabled=_read_env_bool("RELAY_ENABLED", default=False),
        relay_endpoint=_read_env_text("RELAY_ENDPOINT", default=""),
        relay_api_key=relay_api_key,
        relay_timeout_seconds=_read_env_int("RELAY_TIMEOUT_SECONDS", default=30, min_value=1),
        app_log_path=_read_env_text("APP_LOG_PATH", default="logs/app.log"),
        llm_trace_log_path=_read_env_text("LLM_TRACE_LOG_PATH", default="logs/llm_trace.log"),
        app_log_retention_days=_read_env_int("APP_LOG_RETENTION_DAYS", default=7, min_value=1),
    )


def _read_env_int(name: str, *, default: int, min_value: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    if value < min_value:
        return default
    return value


def _read_env_text(name: str, *, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip()


def _read_env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default
