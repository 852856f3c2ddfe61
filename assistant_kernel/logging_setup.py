from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any

APP_LOGGER_NAME = "assistant_kernel.app"
LLM_TRACE_LOGGER_NAME = "assistant_kernel.llm_trace"

_HandlerKey = tuple[str, int]


class JsonLinesFormatter(logging.Formatter):
    """Emit one JSON object per line for stable machine parsing."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
        }

        message = record.getMessage()
        parsed = _json_object_or_none(message)
        if parsed is not None:
            payload.update(parsed)
        elif message:
            payload["message"] = message

        event = getattr(record, "event", None)
        if isinstance(event, str) and event.strip():
            payload["event"] = event.strip()

        context = getattr(record, "context", None)
        if context is not None:
            payload["context"] = context

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


@dataclass
class _SharedHandler:
    handler: logging.Handler
    users: int = 0


class _HandlerRegistry:
    """Daily-rotating file handlers shared by every logger writing to the same path."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._by_key: dict[_HandlerKey, _SharedHandler] = {}
        self._key_by_handler: dict[int, _HandlerKey] = {}

    def key_of(self, handler: logging.Handler) -> _HandlerKey | None:
        with self._lock:
            return self._key_by_handler.get(id(handler))

    def acquire(self, key: _HandlerKey) -> logging.Handler:
        with self._lock:
            shared = self._by_key.get(key)
            if shared is not None and getattr(shared.handler, "_closed", False):
                self._forget(key, shared.handler)
                shared = None
            if shared is None:
                path, retention_days = key
                Path(path).parent.mkdir(parents=True, exist_ok=True)
                handler = TimedRotatingFileHandler(
                    path,
                    when="D",
                    interval=1,
                    backupCount=retention_days,
                    encoding="utf-8",
                )
                handler.setFormatter(JsonLinesFormatter())
                shared = _SharedHandler(handler=handler)
                self._by_key[key] = shared
                self._key_by_handler[id(handler)] = key
            shared.users += 1
            return shared.handler

    def release(self, handler: logging.Handler) -> bool:
        """Drop one user of a shared handler; return False for handlers this registry does not own."""
        with self._lock:
            key = self._key_by_handler.get(id(handler))
            if key is None:
                return False
            shared = self._by_key.get(key)
            if shared is None:
                self._key_by_handler.pop(id(handler), None)
                return False
            shared.users -= 1
            if shared.users <= 0:
                self._forget(key, handler)
                handler.close()
            return True

    def _forget(self, key: _HandlerKey, handler: logging.Handler) -> None:
        self._by_key.pop(key, None)
        self._key_by_handler.pop(id(handler), None)


_REGISTRY = _HandlerRegistry()


def configure_app_logger(log_path: str, retention_days: int = 7) -> logging.Logger:
    return _configure_json_file_logger(APP_LOGGER_NAME, log_path, retention_days)


def configure_llm_trace_logger(log_path: str, retention_days: int = 7) -> logging.Logger:
    return _configure_json_file_logger(LLM_TRACE_LOGGER_NAME, log_path, retention_days)


def component_logger(area: str, logger: logging.Logger | None = None) -> logging.Logger:
    """Return ``logger`` or a silent ``assistant_kernel.<area>`` logger."""
    if logger is not None:
        return logger
    fallback = logging.getLogger(f"assistant_kernel.{area}")
    if not fallback.handlers:
        fallback.addHandler(logging.NullHandler())
    fallback.propagate = False
    return fallback


def _configure_json_file_logger(name: str, log_path: str, retention_days: int) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    path = log_path.strip()
    if not path:
        for handler in list(logger.handlers):
            _detach(logger, handler)
        logger.addHandler(logging.NullHandler())
        return logger

    key = (str(Path(path).expanduser().resolve()), max(retention_days, 1))
    already_attached = False
    for handler in list(logger.handlers):
        if not isinstance(handler, logging.NullHandler) and _REGISTRY.key_of(handler) == key:
            already_attached = True
            continue
        _detach(logger, handler)

    if not already_attached:
        logger.addHandler(_REGISTRY.acquire(key))
    return logger


def _detach(logger: logging.Logger, handler: logging.Handler) -> None:
    logger.removeHandler(handler)
    if not _REGISTRY.release(handler):
        handler.close()


def _json_object_or_none(text: str) -> dict[str, Any] | None:
    normalized = text.strip()
    if not normalized.startswith("{") or not normalized.endswith("}"):
        return None
    try:
        parsed = json.loads(normalized)
    except json.JSONDecodeError:
        return None
    if isinstance(parsed, dict):
        return parsed
    return None
