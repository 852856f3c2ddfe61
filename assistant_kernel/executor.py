from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Protocol

from assistant_kernel.db import ContentTypeMismatchError, KernelDB, ReferenceNotFoundError
from assistant_kernel.extraction import (
    clip,
    default_create_filename,
    is_today_activity_question,
    normalize_create_filename,
    resolve_date_reference,
)
from assistant_kernel.llm import LLMClient, LLMError, strip_think_blocks
from assistant_kernel.logging_setup import component_logger
from assistant_kernel.memory import AUDIT_TAG_ALIASES, AUDIT_TAG_NAME, CoreContextItem, load_audit_snippets
from assistant_kernel.models import (
    RUN_STATUS_SUCCESS,
    AppendRecordAction,
    CreateRecordAction,
    LLMPromptAction,
    Record,
    RunLog,
    ScheduledTask,
    ShellCommandAction,
    Skill,
)
from assistant_kernel.relay import RelayClient, RelayError
from assistant_kernel.resolver import (
    ACTION_APPEND,
    ACTION_DELETE,
    ACTION_REPLACE,
    AmbiguousReferenceError,
    ReferenceResolver,
)
from assistant_kernel.skills import (
    DEFAULT_SKILL_FILENAME_TEMPLATE,
    DEFAULT_SKILL_RECORD_REF,
    build_skill_manifest_text,
    render_skill_template,
)
from assistant_kernel.tools import (
    TOOL_SPECS,
    AnswerIntent,
    AppendIntent,
    CreateIntent,
    DeleteIntent,
    HelpIntent,
    Intent,
    ReplaceIntent,
    SearchIntent,
    SkillRunIntent,
    SkillsCatalogIntent,
    SummarizeCoreIntent,
    TaskRunIntent,
    ToolCall,
    UnknownIntent,
    intent_from_call,
    requires_confirmation,
)

EMPTY_CALLS_REPLY = "我需要更多信息才能继续。请补充你要执行的动作（搜索/删除/追加/改写）以及目标记录。"
NO_VALID_CALL_REPLY = "未执行任何有效工具调用，请重试并明确目标。"
HELP_TEXT = """我支持这些操作：
1. 搜索/检索：例如 “搜索 Swift 并发”
2. 新建文本记录：例如 “为明天新建计划：<内容>”
3. 运行任务：例如 “运行任务 <task-id>”
4. 运行 Skill：例如 “运行 skill:<skill-name>，输入：<内容>”
5. 问答：例如 “今天我做了什么？”
6. 查看 Skill 文档：例如 “skills catalog” 或 “技能列表”
7. 删除记录：例如 “删除记录 <record-id>”
8. 追加文本：例如 “向 <record-id> 或 TODAY 追加：<内容>”
9. 改写文本：例如 “把 <record-id> 改写为：<内容>”
10. 总结 Core：例如 “总结 Core 记忆”"""

ANSWER_SYSTEM_PROMPT = """你是个人助理。必须优先根据提供的 Core 记忆、Audit 日志、Skill 目录回答问题，不得编造。
如果问题是“今天做了什么”，优先基于当天审计记录做事实性总结。
如果证据不足，请明确说“不确定”，并说明缺少哪些信息。
回答简洁、直接。"""

SEARCH_LIMIT = 10
SUMMARY_ITEMS = 8
ANSWER_CORE_ITEMS = 8
ANSWER_AUDIT_ITEMS = 6

TaskRunner = Callable[[ScheduledTask, str], RunLog]


class RecordEventListener(Protocol):
    def on_record_created(self, record: Record) -> object: ...

    def on_record_updated(self, record: Record) -> object: ...


@dataclass
class ExecutionOutput:
    reply: str
    actions: list[str] = field(default_factory=list)
    related_record_ids: list[str] = field(default_factory=list)
    executed: int = 0
    failures: int = 0

    @property
    def all_failed(self) -> bool:
        return self.executed == 0 or self.failures >= self.executed


@dataclass
class _CallOutcome:
    reply: str
    actions: list[str]
    related_record_ids: list[str] = field(default_factory=list)
    failed: bool = False


class ToolExecutor:
    """Dispatch validated tool calls to the record, task and skill collaborators.

    Calls run one by one; a failing call becomes a reply segment plus a
    ``<tool>:<subject>:<outcome>`` action and never stops its siblings.
    """

    def __init__(
        self,
        db: KernelDB,
        resolver: ReferenceResolver,
        llm_client: LLMClient | None,
        *,
        model_id: str,
        relay_client: RelayClient | None = None,
        task_runner: TaskRunner | None = None,
        event_listener: RecordEventListener | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._db = db
        self._resolver = resolver
        self._llm_client = llm_client
        self._model_id = model_id
        self.relay_client = relay_client
        self.task_runner = task_runner
        self.event_listener = event_listener
        self._clock = clock or datetime.now
        self._logger = component_logger("executor", logger)

    def execute(
        self,
        calls: list[ToolCall],
        request: str,
        core_context: list[CoreContextItem],
        *,
        confirmed: bool = False,
    ) -> ExecutionOutput:
        if not calls:
            return ExecutionOutput(reply=EMPTY_CALLS_REPLY, actions=["tool.execute:empty"])

        output = ExecutionOutput(reply="")
        replies: list[str] = []
        for call in calls:
            if requires_confirmation([call]) and not confirmed:
                output.executed += 1
                output.failures += 1
                output.actions.append(f"tool.blocked:{call.name}:confirmation_required")
                replies.append(f"{call.name} 需要二次确认后才能执行。")
                continue
            intent = intent_from_call(call, request, today=self._clock().date())
            if intent is None:
                output.actions.append(f"tool.unsupported:{call.name}")
                continue

            output.executed += 1
            output.actions.append(f"tool.execute:{call.name}")
            outcome = self._run_isolated(call, intent, request, core_context)
            if outcome.reply.strip():
                replies.append(outcome.reply)
            output.actions.extend(outcome.actions)
            if outcome.failed:
                output.failures += 1
            for record_id in outcome.related_record_ids:
                if record_id not in output.related_record_ids:
                    output.related_record_ids.append(record_id)

        output.reply = "\n\n".join(replies) if replies else NO_VALID_CALL_REPLY
        return output

    def _run_isolated(
        self,
        call: ToolCall,
        intent: Intent,
        request: str,
        core_context: list[CoreContextItem],
    ) -> _CallOutcome:
        subject = _call_subject(call)
        try:
            return self._dispatch(intent, request, core_context)
        except ReferenceNotFoundError as exc:
            return self._failure(call, subject, "not_found", f"未找到目标：{exc}", exc)
        except ContentTypeMismatchError as exc:
            return self._failure(call, subject, "type_mismatch", f"目标记录不是文本类型：{exc}", exc)
        except AmbiguousReferenceError as exc:
            return self._failure(call, subject, "ambiguous", f"引用不唯一：{exc}", exc)
        except (LLMError, RelayError, ValueError) as exc:
            return self._failure(call, subject, "error", f"{call.name} 执行失败：{exc}", exc)
        except Exception as exc:  # noqa: BLE001
            self._logger.exception(
                "tool call crashed",
                extra={"event": "tool_call_crashed", "context": {"tool": call.name, "subject": subject}},
            )
            return self._failure(call, subject, "error", f"{call.name} 执行失败：{exc}", exc)

    def _failure(self, call: ToolCall, subject: str, outcome: str, reply: str, exc: Exception) -> _CallOutcome:
        self._logger.warning(
            "tool call failed",
            extra={
                "event": "tool_call_failed",
                "context": {"tool": call.name, "subject": subject, "outcome": outcome, "error": repr(exc)},
            },
        )
        return _CallOutcome(reply=reply, actions=[f"{call.name}:{subject}:{outcome}"], failed=True)

    def _dispatch(self, intent: Intent, request: str, core_context: list[CoreContextItem]) -> _CallOutcome:
        if isinstance(intent, HelpIntent):
            return _CallOutcome(reply=HELP_TEXT, actions=["assistant.help"])
        if isinstance(intent, SummarizeCoreIntent):
            return self._summarize_core(core_context)
        if isinstance(intent, AnswerIntent):
            return self._answer(intent.question, core_context)
        if isinstance(intent, SkillsCatalogIntent):
            manifest = build_skill_manifest_text(self._db.list_skills(), now=self._clock())
            return _CallOutcome(reply=manifest, actions=["skills.catalog:read"])
        if isinstance(intent, SearchIntent):
            return self._search(intent.query)
        if isinstance(intent, UnknownIntent):
            return self._search(intent.text)
        if isinstance(intent, CreateIntent):
            return self._create(intent, request)
        if isinstance(intent, TaskRunIntent):
            return self._run_task(intent.task_ref)
        if isinstance(intent, SkillRunIntent):
            return self._run_skill(intent, request)
        if isinstance(intent, DeleteIntent):
            return self._delete(intent.record_ref, request)
        if isinstance(intent, AppendIntent):
            return self._append(intent, request)
        if isinstance(intent, ReplaceIntent):
            return self._replace(intent, request)
        raise ValueError(f"unsupported intent: {intent!r}")

    def _summarize_core(self, core_context: list[CoreContextItem]) -> _CallOutcome:
        if not core_context:
            return _CallOutcome(reply="当前没有 Core 记忆内容可总结。", actions=["core.summarize:empty"])
        rows = "\n".join(
            f"- [{item.record_id}] {item.filename}: {clip(item.snippet, 120)}" for item in core_context[:SUMMARY_ITEMS]
        )
        return _CallOutcome(
            reply=f"Core 记忆回顾：\n{rows}",
            actions=[f"core.summarize:{len(core_context)}"],
            related_record_ids=[item.record_id for item in core_context],
        )

    def _answer(self, question: str, core_context: list[CoreContextItem]) -> _CallOutcome:
        today = self._clock().date()
        core_rows = [
            f"[{item.record_id}] {item.filename}: {clip(item.snippet, 180)}" for item in core_context[:ANSWER_CORE_ITEMS]
        ]
        audit_tag = self._db.find_tag(AUDIT_TAG_NAME, AUDIT_TAG_ALIASES)
        audit_rows = []
        if audit_tag is not None:
            audit_rows = load_audit_snippets(self._db, audit_tag.id, question, limit=ANSWER_AUDIT_ITEMS, today=today)

        related: list[str] = []
        for record_id in [item.record_id for item in core_context[:ANSWER_CORE_ITEMS]] + [
            row.record_id for row in audit_rows
        ]:
            if record_id not in related:
                related.append(record_id)

        if self._llm_client is not None:
            audit_text = "\n".join(f"[{row.record_id}] {row.filename}: {clip(row.snippet, 320)}" for row in audit_rows)
            skills_text = build_skill_manifest_text(self._db.list_skills(), now=self._clock())
            user_prompt = (
                f"QUESTION:\n{question}\n\n"
                f"CORE_CONTEXT:\n{chr(10).join(core_rows) or '(none)'}\n\n"
                f"AUDIT_CONTEXT:\n{audit_text or '(none)'}\n\n"
                f"SKILL_CATALOG:\n{skills_text}"
            )
            try:
                answer = strip_think_blocks(self._llm_client.call(ANSWER_SYSTEM_PROMPT, user_prompt, self._model_id))
            except LLMError as exc:
                self._logger.warning(
                    "answer fallback",
                    extra={"event": "answer_fallback", "context": {"error": repr(exc)}},
                )
            else:
                if answer.strip():
                    return _CallOutcome(
                        reply=answer.strip(),
                        actions=["assistant.answer:context"],
                        related_record_ids=related,
                    )

        if is_today_activity_question(question):
            stamp = today.strftime("%Y-%m-%d")
            todays = next((row for row in audit_rows if stamp in row.filename), None)
            if todays is not None:
                return _CallOutcome(
                    reply=f"根据今天的日志，已记录这些活动：\n{clip(todays.snippet, 520)}",
                    actions=["assistant.answer:fallback:today"],
                    related_record_ids=related,
                )
            return _CallOutcome(
                reply="今天还没有可用的审计日志记录，所以我还不能可靠地回答“今天做了什么”。",
                actions=["assistant.answer:fallback:today-empty"],
                related_record_ids=related,
            )
        if core_rows:
            lines = "\n".join(core_rows[:4])
            return _CallOutcome(
                reply=f"我当前能从 Core 记忆确认这些信息：\n{lines}\n\n如果你希望更精确，我可以继续按关键词检索相关记录。",
                actions=["assistant.answer:fallback:core"],
                related_record_ids=related,
            )
        return _CallOutcome(
            reply="当前可用上下文不足，暂时无法可靠回答。你可以先让我“搜索 <关键词>”或“总结 Core 记忆”。",
            actions=["assistant.answer:fallback:empty"],
            related_record_ids=related,
        )

    def _search(self, query: str) -> _CallOutcome:
        records = self._db.search_records(query, limit=SEARCH_LIMIT)
        if not records:
            return _CallOutcome(reply=f"没有检索到与“{query}”相关的记录。", actions=[f"record.search:{query}:0"])
        lines = "\n".join(f"- [{record.id}] {record.filename}: {clip(record.preview, 90)}" for record in records)
        return _CallOutcome(
            reply=f"检索“{query}”命中 {len(records)} 条：\n{lines}",
            actions=[f"record.search:{query}:{len(records)}"],
            related_record_ids=[record.id for record in records],
        )

    def _create(self, intent: CreateIntent, request: str) -> _CallOutcome:
        now = self._clock()
        if intent.filename:
            filename = normalize_create_filename(intent.filename)
        else:
            filename = default_create_filename(request, today=now.date(), now=now)
        record_id = self._db.create_text_record(filename, intent.content)
        reply = f"已创建文本记录：{filename}（{record_id}）"
        target_date = resolve_date_reference(request, today=now.date())
        if target_date is not None:
            reply += f"\n日期：{target_date.strftime('%Y-%m-%d')}"
        self._notify(record_id, created=True)
        return _CallOutcome(reply=reply, actions=[f"record.create:{record_id}:ok"], related_record_ids=[record_id])

    def _delete(self, record_ref: str, request: str) -> _CallOutcome:
        record_id = self._resolver.resolve_record(record_ref, ACTION_DELETE, request).record_id
        if not self._db.delete_record(record_id):
            raise ReferenceNotFoundError(f"记录不存在：{record_id}")
        return _CallOutcome(
            reply=f"已删除记录：{record_id}",
            actions=[f"record.delete:{record_id}:ok"],
            related_record_ids=[record_id],
        )

    def _append(self, intent: AppendIntent, request: str) -> _CallOutcome:
        resolved = self._resolver.resolve_record(
            intent.record_ref,
            ACTION_APPEND,
            request,
            create_if_missing_content=intent.content,
        )
        if resolved.created:
            self._notify(resolved.record_id, created=True)
            return _CallOutcome(
                reply=f"目标日期记录不存在，已新建并写入：{resolved.record_id}",
                actions=[f"record.append:{resolved.record_id}:ok", f"record.create:{resolved.record_id}:implicit"],
                related_record_ids=[resolved.record_id],
            )
        record = self._db.append_record_text(resolved.record_id, intent.content)
        self._notify(record.id, created=False)
        return _CallOutcome(
            reply=f"已追加内容到记录：{record.filename}（{record.id}）",
            actions=[f"record.append:{record.id}:ok"],
            related_record_ids=[record.id],
        )

    def _replace(self, intent: ReplaceIntent, request: str) -> _CallOutcome:
        record_id = self._resolver.resolve_record(intent.record_ref, ACTION_REPLACE, request).record_id
        record = self._db.update_record_text(record_id, intent.content)
        self._notify(record.id, created=False)
        return _CallOutcome(
            reply=f"已改写记录全文：{record.filename}（{record.id}）",
            actions=[f"record.replace:{record.id}:ok"],
            related_record_ids=[record.id],
        )

    def _run_task(self, task_ref: str) -> _CallOutcome:
        task = self._resolver.resolve_task(task_ref)
        if self.task_runner is None:
            return _CallOutcome(
                reply=f"任务调度未接入，无法运行：{task.name}（{task.id}）",
                actions=[f"task.run:{task.id}:unavailable"],
                failed=True,
            )
        log = self.task_runner(task, "assistant")
        succeeded = log.status == RUN_STATUS_SUCCESS
        detail = log.output if succeeded else (log.error or log.output)
        return _CallOutcome(
            reply=f"已运行 任务：{task.name}（{task.id}）\n{clip(detail, 260)}".rstrip(),
            actions=[f"task.run:{task.id}:{'ok' if succeeded else 'failed'}"],
            failed=not succeeded,
        )

    def _run_skill(self, intent: SkillRunIntent, request: str) -> _CallOutcome:
        skill = self._resolver.resolve_skill(intent.skill_ref)
        if not skill.is_enabled:
            return _CallOutcome(
                reply=f"Skill 已停用：{skill.name}（{skill.id}）",
                actions=[f"skill.run:{skill.id}:disabled"],
            )
        input_text = intent.input.strip() or request
        now = self._clock()
        action = skill.action

        def render(template: str) -> str:
            return render_skill_template(template, input_text=input_text, request=request, now=now)

        if isinstance(action, LLMPromptAction):
            if self._llm_client is None:
                raise LLMError("LLM client is not configured")
            model_id = action.model.strip() or self._model_id
            output = self._llm_client.call(render(action.system_prompt), render(action.user_prompt_template), model_id)
            return _CallOutcome(
                reply=f"Skill {skill.name} 执行完成。\n{strip_think_blocks(output).strip()}",
                actions=[f"skill.run:{skill.id}:llm"],
            )
        if isinstance(action, ShellCommandAction):
            return self._relay_shell_skill(skill, render(action.command), request)
        if isinstance(action, CreateRecordAction):
            filename = normalize_create_filename(render(action.filename_template.strip() or DEFAULT_SKILL_FILENAME_TEMPLATE))
            content = render(action.content_template).strip()
            if not content:
                raise ValueError("Skill 输出内容为空，无法创建记录")
            record_id = self._db.create_text_record(filename, content)
            self._notify(record_id, created=True)
            return _CallOutcome(
                reply=f"Skill {skill.name} 已创建记录：{filename}（{record_id}）",
                actions=[f"skill.run:{skill.id}:create:{record_id}"],
                related_record_ids=[record_id],
            )
        if isinstance(action, AppendRecordAction):
            reference = render(action.record_ref.strip() or DEFAULT_SKILL_RECORD_REF)
            content = render(action.content_template).strip()
            if not content:
                raise ValueError("Skill 追加内容为空")
            resolved = self._resolver.resolve_record(reference, ACTION_APPEND, request, create_if_missing_content=content)
            if not resolved.created:
                self._db.append_record_text(resolved.record_id, content)
            self._notify(resolved.record_id, created=resolved.created)
            return _CallOutcome(
                reply=f"Skill {skill.name} 执行完成。\n已追加内容到记录：{resolved.record_id}",
                actions=[f"skill.run:{skill.id}:append:{resolved.record_id}"],
                related_record_ids=[resolved.record_id],
            )
        raise ValueError(f"unsupported skill action: {action!r}")

    def _relay_shell_skill(self, skill: Skill, command: str, request: str) -> _CallOutcome:
        if self.relay_client is None:
            raise RelayError("relay is not configured; shell skills are executed by the runtime only")
        payload = {
            "request_id": str(uuid.uuid4()).upper(),
            "mode": "skill_shell",
            "request": request,
            "instruction": command,
            "skill": {"id": skill.id, "name": skill.name},
            "interfaces": [spec.name for spec in TOOL_SPECS],
        }
        body = self.relay_client.post(payload)
        return _CallOutcome(
            reply=f"Skill {skill.name} 已转交执行运行时。\n{clip(body, 800)}".rstrip(),
            actions=[f"skill.run:{skill.id}:shell_relayed"],
        )

    def _notify(self, record_id: str, *, created: bool) -> None:
        if self.event_listener is None:
            return
        record = self._db.get_record(record_id)
        if record is None:
            return
        try:
            if created:
                self.event_listener.on_record_created(record)
            else:
                self.event_listener.on_record_updated(record)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "record event dispatch failed",
                extra={"event": "record_event_failed", "context": {"record_id": record_id, "error": repr(exc)}},
            )


def _call_subject(call: ToolCall) -> str:
    for key in ("record_id", "task_ref", "skill_ref", "query", "filename"):
        value = call.argument(key)
        if value:
            return value.upper() if key == "record_id" else value
    return "-"
