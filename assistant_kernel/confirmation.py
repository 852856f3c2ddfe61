from __future__ import annotations

import json
import logging
import re
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from assistant_kernel.db import KernelDB, ReferenceNotFoundError
from assistant_kernel.logging_setup import component_logger
from assistant_kernel.resolver import (
    ACTION_DELETE,
    ACTION_REPLACE,
    AmbiguousReferenceError,
    ReferenceResolver,
)
from assistant_kernel.tools import ToolCall

DEFAULT_CONFIRMATION_TTL_SECONDS = 300
CONFIRMATION_TOKEN_LENGTH = 12
_CONFIRMATION_TOKEN_PATTERN = re.compile(r"#confirm\s*[:：]\s*([A-Za-z0-9_-]{6,64})", re.IGNORECASE)


@dataclass(frozen=True)
class PendingConfirmation:
    token: str
    tool_calls: tuple[ToolCall, ...]
    source: str
    request: str
    tool_plan: tuple[str, ...]
    created_at: datetime
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "tool_calls": [call.to_dict() for call in self.tool_calls],
            "source": self.source,
            "request": self.request,
            "tool_plan": list(self.tool_plan),
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PendingConfirmation:
        raw_calls = payload.get("tool_calls")
        calls = tuple(
            ToolCall.from_dict(item) for item in (raw_calls if isinstance(raw_calls, list) else []) if isinstance(item, dict)
        )
        raw_plan = payload.get("tool_plan")
        return cls(
            token=str(payload.get("token") or ""),
            tool_calls=calls,
            source=str(payload.get("source") or ""),
            request=str(payload.get("request") or ""),
            tool_plan=tuple(str(item) for item in (raw_plan if isinstance(raw_plan, list) else [])),
            created_at=datetime.fromisoformat(str(payload["created_at"])),
            expires_at=datetime.fromisoformat(str(payload["expires_at"])),
        )


def extract_confirmation_token(text: str) -> str | None:
    match = _CONFIRMATION_TOKEN_PATTERN.search(text)
    if match is None:
        return None
    return match.group(1).upper()


def generate_confirmation_token() -> str:
    return secrets.token_hex(CONFIRMATION_TOKEN_LENGTH // 2).upper()


class ConfirmationStore:
    """Single-use tokens guarding high-risk tool calls.

    Every access sweeps expired entries. A consumed token is removed whether or
    not the consuming source matches, so a token can never be replayed.
    """

    def __init__(
        self,
        *,
        ttl_seconds: int = DEFAULT_CONFIRMATION_TTL_SECONDS,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._ttl = timedelta(seconds=max(1, ttl_seconds))
        self._clock = clock or datetime.now
        self._logger = component_logger("confirmation", logger)
        self._lock = threading.Lock()
        self._entries: dict[str, PendingConfirmation] = {}

    def save(
        self,
        tool_calls: list[ToolCall] | tuple[ToolCall, ...],
        *,
        source: str,
        request: str,
        tool_plan: list[str] | tuple[str, ...] = (),
    ) -> PendingConfirmation:
        if not tool_calls:
            raise ValueError("高风险动作确认数据构造失败：tool_calls 为空")
        token = generate_confirmation_token()
        now = self._clock()
        pending = PendingConfirmation(
            token=token,
            tool_calls=tuple(tool_calls),
            source=source.strip(),
            request=request,
            tool_plan=tuple(tool_plan),
            created_at=now,
            expires_at=now + self._ttl,
        )
        with self._lock:
            self._sweep(now)
            self._put(pending)
        self._logger.info(
            "confirmation saved",
            extra={
                "event": "confirmation_saved",
                "context": {"token": token, "source": pending.source, "calls": len(pending.tool_calls)},
            },
        )
        return pending

    def consume(self, token: str, source: str) -> PendingConfirmation | None:
        normalized = token.strip().upper()
        if not normalized:
            return None
        now = self._clock()
        with self._lock:
            self._sweep(now)
            pending = self._pop(normalized)
        outcome = "consumed"
        if pending is None:
            outcome = "missing_or_expired"
        elif pending.source and pending.source != source.strip():
            outcome = "source_mismatch"
            pending = None
        self._logger.info(
            "confirmation consume",
            extra={
                "event": "confirmation_consume",
                "context": {"token": normalized, "source": source, "outcome": outcome},
            },
        )
        return pending

    def pending_count(self) -> int:
        with self._lock:
            self._sweep(self._clock())
            return self._count()

    # Storage hooks; always called with the lock held.

    def _put(self, pending: PendingConfirmation) -> None:
        self._entries[pending.token] = pending

    def _pop(self, token: str) -> PendingConfirmation | None:
        return self._entries.pop(token, None)

    def _sweep(self, now: datetime) -> None:
        expired = [token for token, pending in self._entries.items() if pending.expires_at <= now]
        for token in expired:
            del self._entries[token]

    def _count(self) -> int:
        return len(self._entries)


class SQLiteConfirmationStore(ConfirmationStore):
    """Confirmation store backed by the kernel database so tokens outlive one process."""

    def __init__(
        self,
        db: KernelDB,
        *,
        ttl_seconds: int = DEFAULT_CONFIRMATION_TTL_SECONDS,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(ttl_seconds=ttl_seconds, clock=clock, logger=logger)
        self._db = db

    def _put(self, pending: PendingConfirmation) -> None:
        self._db.save_pending_confirmation(
            pending.token,
            json.dumps(pending.to_dict(), ensure_ascii=False),
            pending.expires_at,
        )

    def _pop(self, token: str) -> PendingConfirmation | None:
        raw = self._db.pop_pending_confirmation(token)
        if raw is None:
            return None
        try:
            return PendingConfirmation.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            self._logger.warning(
                "confirmation payload unreadable",
                extra={"event": "confirmation_payload_invalid", "context": {"token": token}},
            )
            return None

    def _sweep(self, now: datetime) -> None:
        self._db.delete_expired_confirmations(now)

    def _count(self) -> int:
        return self._db.count_pending_confirmations()


def build_dry_run_preview(
    tool_calls: list[ToolCall] | tuple[ToolCall, ...],
    *,
    db: KernelDB,
    resolver: ReferenceResolver,
    request: str,
) -> list[str]:
    """Describe what each high-impact call would touch without changing anything."""
    lines: list[str] = []
    for call in tool_calls:
        if call.name in ("record.delete", "record.replace"):
            requested = call.argument("record_id") or "-"
            action = ACTION_DELETE if call.name == "record.delete" else ACTION_REPLACE
            try:
                record_id = resolver.resolve_record(requested, action, request).record_id
            except (ReferenceNotFoundError, AmbiguousReferenceError):
                record_id = requested.upper()
            record = db.get_record(record_id)
            if record is None:
                lines.append(f"- {call.name}: 目标记录不存在 [{record_id}]")
            elif call.name == "record.delete":
                lines.append(f"- record.delete: 将删除 [{record.id}] {record.filename}")
            else:
                size = len(call.argument("content"))
                lines.append(f"- record.replace: 将改写 [{record.id}] {record.filename}，新内容约 {size} 字符")
        elif call.name == "task.run":
            ref = call.argument("task_ref")
            if not ref:
                lines.append("- task.run: 缺少 task_ref")
                continue
            try:
                task = resolver.resolve_task(ref)
            except (ReferenceNotFoundError, AmbiguousReferenceError):
                lines.append(f"- task.run: 未找到任务 {ref}")
            else:
                lines.append(f"- task.run: 将运行任务 {task.name}（{task.id}）")
        elif call.name == "skill.run":
            ref = call.argument("skill_ref")
            if not ref:
                lines.append("- skill.run: 缺少 skill_ref")
                continue
            try:
                skill = resolver.resolve_skill(ref)
            except (ReferenceNotFoundError, AmbiguousReferenceError):
                lines.append(f"- skill.run: 未找到 Skill {ref}")
            else:
                lines.append(f"- skill.run: 将运行 Skill {skill.name}（{skill.id}）")
    return lines


def build_confirmation_reply(
    tool_calls: list[ToolCall] | tuple[ToolCall, ...],
    *,
    token: str,
    expires_at: datetime,
    preview_lines: list[str],
) -> str:
    description = "执行高风险动作"
    for name, verb in (("record.delete", "删除记录"), ("record.replace", "改写记录")):
        call = next((item for item in tool_calls if item.name == name and item.argument("record_id")), None)
        if call is not None:
            description = f"{verb} {call.argument('record_id').upper()}"
            break
    preview = "\n".join(preview_lines) if preview_lines else "- 无可预览信息"
    return (
        "Dry-run 预览（影响范围）：\n"
        f"{preview}\n\n"
        f"此操作需要二次确认：{description}。\n"
        f"请在 {expires_at.isoformat(sep=' ', timespec='seconds')} 前发送：#CONFIRM:{token}\n"
        f"或执行：assistant-kernel confirm {token}"
    )
