from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from assistant_kernel.confirmation import (
    ConfirmationStore,
    build_confirmation_reply,
    build_dry_run_preview,
    extract_confirmation_token,
)
from assistant_kernel.db import KernelDB
from assistant_kernel.executor import ToolExecutor
from assistant_kernel.logging_setup import component_logger
from assistant_kernel.memory import (
    CoreContextItem,
    MemoryWriter,
    TurnSummary,
    detect_core_conflict,
    load_core_context,
    parse_merge_strategy,
    resolve_merge_strategy,
    should_persist_core_memory,
)
from assistant_kernel.planner import PLANNER_SOURCE_CONFIRMATION, PlannedCalls, Planner
from assistant_kernel.resolver import ReferenceResolver
from assistant_kernel.tools import (
    RECORD_REFERENCE_TOOL_NAMES,
    ToolCall,
    default_tool_plan,
    describe_tool_calls,
    requires_confirmation,
)

DEFAULT_SOURCE = "runtime"
INVALID_CONFIRMATION_REPLY = "确认令牌无效、来源不匹配或已过期。请重新发起删除/改写请求获取新的确认令牌。"


@dataclass
class AssistantKernelResult:
    request_id: str
    source: str
    request: str
    started_at: datetime
    intent: str = "unknown"
    planner_source: str = "rule"
    planner_note: str | None = None
    tool_plan: list[str] = field(default_factory=list)
    confirmation_required: bool = False
    confirmation_token: str | None = None
    confirmation_expires_at: datetime | None = None
    reply: str = ""
    actions: list[str] = field(default_factory=list)
    related_record_ids: list[str] = field(default_factory=list)
    core_context_record_ids: list[str] = field(default_factory=list)
    core_memory_record_id: str | None = None
    audit_record_id: str | None = None
    finished_at: datetime | None = None
    succeeded: bool = False

    def to_dict(self) -> dict[str, Any]:
        expires_at = self.confirmation_expires_at
        return {
            "request_id": self.request_id,
            "source": self.source,
            "request": self.request,
            "intent": self.intent,
            "planner_source": self.planner_source,
            "planner_note": self.planner_note,
            "tool_plan": list(self.tool_plan),
            "confirmation_required": self.confirmation_required,
            "confirmation_token": self.confirmation_token,
            "confirmation_expires_at": expires_at.isoformat(timespec="seconds") if expires_at else None,
            "reply": self.reply,
            "actions": list(self.actions),
            "related_record_ids": list(self.related_record_ids),
            "core_context_record_ids": list(self.core_context_record_ids),
            "core_memory_record_id": self.core_memory_record_id,
            "audit_record_id": self.audit_record_id,
            "started_at": self.started_at.isoformat(timespec="seconds"),
            "finished_at": self.finished_at.isoformat(timespec="seconds") if self.finished_at else None,
            "succeeded": self.succeeded,
        }


class AssistantKernel:
    """One request in, one result out: context, plan, confirmation gate, execution, memory, audit."""

    def __init__(
        self,
        db: KernelDB,
        planner: Planner,
        executor: ToolExecutor,
        confirmation_store: ConfirmationStore,
        *,
        resolver: ReferenceResolver | None = None,
        memory_writer: MemoryWriter | None = None,
        core_context_limit: int = 20,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._db = db
        self._planner = planner
        self._executor = executor
        self._confirmation_store = confirmation_store
        self._clock = clock or datetime.now
        self._resolver = resolver or ReferenceResolver(db, clock=self._clock)
        self._logger = component_logger("kernel", logger)
        self._memory_writer = memory_writer or MemoryWriter(db, clock=self._clock, logger=self._logger)
        self._core_context_limit = max(1, core_context_limit)

    def handle(self, request: str, source: str = DEFAULT_SOURCE) -> AssistantKernelResult:
        cleaned = request.strip()
        source = source.strip() or DEFAULT_SOURCE
        turn = TurnSummary(request_id=str(uuid.uuid4()).upper(), source=source, request=cleaned, started_at=self._clock())
        audit_tag_id: str | None = None

        try:
            core_tag_id, audit_tag_id = self._memory_writer.ensure_tags()
            turn.actions.extend(["tag.ensure:Core", "tag.ensure:AuditLog"])

            core_context = load_core_context(self._db, core_tag_id, cleaned, limit=self._core_context_limit)
            turn.core_context_record_ids = [item.record_id for item in core_context]
            turn.actions.append(f"context.load:{len(core_context)}")

            self._run_turn(turn, core_context)
            self._persist_core_memory(turn, core_tag_id, core_context)
        except Exception as exc:  # noqa: BLE001
            self._logger.exception(
                "kernel request failed",
                extra={"event": "kernel_request_failed", "context": {"request_id": turn.request_id}},
            )
            turn.reply = f"执行失败：{exc}"
            turn.actions.append(f"error:{exc}")
            turn.succeeded = False

        turn.finished_at = self._clock()
        audit_record_id = self._memory_writer.write_audit(turn, audit_tag_id)
        if audit_record_id is not None:
            turn.actions.append(f"audit.append:{audit_record_id}")

        self._logger.info(
            "kernel request handled",
            extra={
                "event": "kernel_request_handled",
                "context": {
                    "request_id": turn.request_id,
                    "source": source,
                    "planner_source": turn.planner_source,
                    "succeeded": turn.succeeded,
                },
            },
        )
        return AssistantKernelResult(
            request_id=turn.request_id,
            source=turn.source,
            request=turn.request,
            started_at=turn.started_at,
            intent=turn.intent,
            planner_source=turn.planner_source,
            planner_note=turn.planner_note,
            tool_plan=list(turn.tool_plan),
            confirmation_required=turn.confirmation_required,
            confirmation_token=turn.confirmation_token,
            confirmation_expires_at=turn.confirmation_expires_at,
            reply=turn.reply,
            actions=list(turn.actions),
            related_record_ids=list(turn.related_record_ids),
            core_context_record_ids=list(turn.core_context_record_ids),
            core_memory_record_id=turn.core_memory_record_id,
            audit_record_id=audit_record_id,
            finished_at=turn.finished_at,
            succeeded=turn.succeeded,
        )

    def _run_turn(self, turn: TurnSummary, core_context: list[CoreContextItem]) -> None:
        token = extract_confirmation_token(turn.request)
        confirmed_calls: list[ToolCall] | None = None
        if token is not None:
            pending = self._confirmation_store.consume(token, turn.source)
            if pending is None:
                turn.intent = f"confirm.invalid({token})"
                turn.planner_source = PLANNER_SOURCE_CONFIRMATION
                turn.planner_note = "确认令牌无效、来源不匹配或已过期。"
                turn.tool_plan = ["validate-confirmation-token"]
                turn.reply = INVALID_CONFIRMATION_REPLY
                turn.actions.append(f"confirm.invalid:{token}")
                turn.succeeded = False
                return
            confirmed_calls = list(pending.tool_calls)
            turn.actions.append(f"confirm.consume:{token}")

        if confirmed_calls is not None:
            planned = PlannedCalls(
                calls=confirmed_calls,
                planner_source=PLANNER_SOURCE_CONFIRMATION,
                planner_note="已使用确认令牌执行高风险动作。",
                tool_plan=default_tool_plan(confirmed_calls),
            )
            turn.intent = f"{describe_tool_calls(confirmed_calls)} [confirmed]"
        else:
            planned = self._planner.plan(turn.request, core_context)
            turn.intent = describe_tool_calls(planned.calls) if planned.calls else "clarify"
            turn.actions.append(f"plan:{planned.planner_source}")
        turn.planner_source = planned.planner_source
        turn.planner_note = planned.planner_note
        turn.tool_plan = list(planned.tool_plan)

        if planned.clarify_question and not planned.calls:
            turn.reply = planned.clarify_question
            turn.actions.append("clarify.ask")
            turn.succeeded = True
            return

        if confirmed_calls is None and requires_confirmation(planned.calls):
            pending = self._confirmation_store.save(
                planned.calls,
                source=turn.source,
                request=turn.request,
                tool_plan=turn.tool_plan,
            )
            preview = build_dry_run_preview(planned.calls, db=self._db, resolver=self._resolver, request=turn.request)
            turn.confirmation_required = True
            turn.confirmation_token = pending.token
            turn.confirmation_expires_at = pending.expires_at
            turn.related_record_ids = _record_ids_from_calls(planned.calls)
            turn.reply = build_confirmation_reply(
                planned.calls,
                token=pending.token,
                expires_at=pending.expires_at,
                preview_lines=preview,
            )
            turn.actions.extend([f"confirm.required:{pending.token}", f"dryrun.preview:{len(planned.calls)}"])
            turn.succeeded = True
            return

        output = self._executor.execute(
            planned.calls,
            turn.request,
            core_context,
            confirmed=confirmed_calls is not None,
        )
        turn.reply = output.reply
        turn.actions.extend(output.actions)
        turn.related_record_ids = list(output.related_record_ids)
        turn.succeeded = not output.all_failed

    def _persist_core_memory(self, turn: TurnSummary, core_tag_id: str, core_context: list[CoreContextItem]) -> None:
        explicit = parse_merge_strategy(turn.request)
        if explicit is not None:
            turn.actions.append(f"memory.merge.requested:{explicit}")
        if not should_persist_core_memory(turn, explicit):
            turn.merge_strategy = resolve_merge_strategy(explicit, None)
            turn.actions.append(f"memory.merge.use:{turn.merge_strategy}")
            turn.actions.append("memory.skip:low_signal")
            return

        turn.conflict = detect_core_conflict(turn.request, turn.reply, core_context)
        if turn.conflict is not None:
            turn.actions.append(f"memory.conflict:{turn.conflict.record_id}:{turn.conflict.score:.2f}")
        turn.merge_strategy = resolve_merge_strategy(explicit, turn.conflict)
        turn.actions.append(f"memory.merge.use:{turn.merge_strategy}")

        record_id, action = self._memory_writer.write_core_memory(turn, core_tag_id)
        turn.core_memory_record_id = record_id
        turn.actions.append(action)


def _record_ids_from_calls(calls: list[ToolCall]) -> list[str]:
    ids: list[str] = []
    for call in calls:
        if call.name not in RECORD_REFERENCE_TOOL_NAMES:
            continue
        record_id = call.argument("record_id").upper()
        if record_id and record_id not in ids:
            ids.append(record_id)
    return ids
