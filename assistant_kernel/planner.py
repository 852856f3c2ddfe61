from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Protocol

from assistant_kernel.extraction import (
    APPEND_KEYWORDS,
    DELETE_KEYWORDS,
    HELP_KEYWORDS,
    REPLACE_KEYWORDS,
    SEARCH_KEYWORDS,
    SKILL_RUN_KEYWORDS,
    SKILLS_CATALOG_KEYWORDS,
    SUMMARIZE_KEYWORDS,
    TASK_RUN_KEYWORDS,
    clip,
    contains_keyword,
    default_create_filename,
    extract_create_content,
    extract_create_filename,
    extract_payload,
    extract_record_reference,
    extract_search_query,
    extract_skill_reference,
    extract_task_reference,
    is_placeholder_reference,
    minimal_clarify_question,
    normalize_create_filename,
    should_create_record_intent,
    should_treat_as_question,
)
from assistant_kernel.llm import LLMClient, LLMError, strip_think_blocks
from assistant_kernel.logging_setup import component_logger
from assistant_kernel.memory import CoreContextItem
from assistant_kernel.tools import (
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
    calls_for_intent,
    default_tool_plan,
    get_tool_spec,
    missing_required_arguments,
    tool_catalog_payload,
)

PLANNER_SOURCE_RULE = "rule"
PLANNER_SOURCE_CONFIRMATION = "confirmation-token"
PLANNER_CONTEXT_ITEMS = 6
PLANNER_CONTEXT_SNIPPET_CHARS = 220
CLARIFY_TOOL_PLAN = ["ask-minimal-clarify-question"]

PLANNER_SYSTEM_PROMPT = """你是个人助理内核的 Planner。你只能规划工具调用，不能直接回答业务结果。
输出 JSON，字段：
- calls: [{ "name": string, "arguments": object }]
- clarify_question: string (只有在无法执行时填写；此时 calls 应为空)
- tool_plan: string[] (简短步骤，可为空)
- note: string
只允许使用给定工具名。缺少必要信息时只问一个最关键的问题，不要猜测记录 ID。"""

_UNSET = object()


@dataclass(frozen=True)
class PlannedCalls:
    calls: list[ToolCall]
    planner_source: str
    planner_note: str | None = None
    tool_plan: list[str] = field(default_factory=list)
    clarify_question: str | None = None


class PlanOverridePolicy(Protocol):
    def apply(self, request: str, calls: list[ToolCall], *, now: datetime) -> list[ToolCall] | None: ...


class WriteDowngradeOverride:
    """Replace an LLM plan that turned an actionable request into a read-only one.

    Applies only when the plan holds no write call and is empty or search-only:
    questions become ``assistant.answer``; append requests with a reference and
    payload become ``record.append``; explicit skill invocations become
    ``skill.run``; create requests with content become ``record.create``.
    The keyword thresholds are heuristic and may misfire on genuine
    search-then-answer requests; pass ``override_policy=None`` to disable.
    """

    name = "write-downgrade"
    _WRITE_TOOLS = frozenset({"record.create", "record.delete", "record.append", "record.replace"})

    def apply(self, request: str, calls: list[ToolCall], *, now: datetime) -> list[ToolCall] | None:
        if any(call.name in self._WRITE_TOOLS for call in calls):
            return None
        search_only = bool(calls) and all(call.name == "record.search" for call in calls)
        if calls and not search_only:
            return None
        if should_treat_as_question(request):
            return [ToolCall("assistant.answer", {"question": request})]

        today = now.date()
        payload = extract_payload(request)
        reference = extract_record_reference(request, today=today)
        if contains_keyword(request, APPEND_KEYWORDS) and payload and reference:
            return [ToolCall("record.append", {"record_id": reference, "content": payload})]

        skill_ref = extract_skill_reference(request)
        if contains_keyword(request, SKILL_RUN_KEYWORDS) and skill_ref:
            return [ToolCall("skill.run", {"skill_ref": skill_ref, "input": payload or request})]

        content = extract_create_content(request)
        if should_create_record_intent(request, today=today) and content:
            filename = extract_create_filename(request) or default_create_filename(request, today=today, now=now)
            return [ToolCall("record.create", {"filename": filename, "content": content})]
        return None


class Planner:
    """Two-stage planner: LLM with the tool catalog first, keyword rules as fallback.

    Every plan passes the minimal-clarification gate, so a mutating request that
    lacks its content or target always comes back as one question and no calls.
    """

    def __init__(
        self,
        llm_client: LLMClient | None,
        *,
        model_id: str,
        skill_catalog_provider: Callable[[], str] | None = None,
        override_policy: PlanOverridePolicy | None | object = _UNSET,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._llm_client = llm_client
        self._model_id = model_id
        self._skill_catalog_provider = skill_catalog_provider
        if override_policy is _UNSET:
            self._override_policy: PlanOverridePolicy | None = WriteDowngradeOverride()
        else:
            self._override_policy = override_policy  # type: ignore[assignment]
        self._clock = clock or datetime.now
        self._logger = component_logger("planner", logger)

    def plan(self, request: str, core_context: list[CoreContextItem]) -> PlannedCalls:
        normalized = request.strip()
        if not normalized:
            return PlannedCalls(
                calls=[],
                planner_source=PLANNER_SOURCE_RULE,
                planner_note="空请求",
                tool_plan=default_tool_plan([]),
            )

        fallback_note = "使用规则解析器（LLM 规划不可用或无结果）。"
        if self._llm_client is not None:
            try:
                planned = self._plan_with_llm(normalized, core_context)
            except LLMError as exc:
                fallback_note = f"使用规则解析器（LLM 规划失败：{exc}）"
                self._logger.warning(
                    "planner fallback",
                    extra={"event": "planner_fallback", "context": {"reason": "llm_error", "error": repr(exc)}},
                )
            except ValueError as exc:
                fallback_note = f"使用规则解析器（LLM 输出无法解析：{exc}）"
                self._logger.warning(
                    "planner fallback",
                    extra={"event": "planner_fallback", "context": {"reason": "invalid_json", "error": repr(exc)}},
                )
            except Exception as exc:  # noqa: BLE001
                fallback_note = f"使用规则解析器（LLM 规划失败：{exc}）"
                self._logger.exception(
                    "planner fallback",
                    extra={"event": "planner_fallback", "context": {"reason": "unexpected", "error": repr(exc)}},
                )
            else:
                if planned is not None:
                    return planned
                self._logger.info(
                    "planner fallback",
                    extra={"event": "planner_fallback", "context": {"reason": "empty_plan"}},
                )
        return self.plan_with_rules(normalized, note=fallback_note)

    def plan_with_rules(self, request: str, *, note: str | None = None) -> PlannedCalls:
        clarify = minimal_clarify_question(request, today=self._today())
        if clarify is not None:
            return PlannedCalls(
                calls=[],
                planner_source=PLANNER_SOURCE_RULE,
                planner_note=note,
                tool_plan=list(CLARIFY_TOOL_PLAN),
                clarify_question=clarify,
            )
        calls = calls_for_intent(self.parse_intent(request))
        return PlannedCalls(
            calls=calls,
            planner_source=PLANNER_SOURCE_RULE,
            planner_note=note,
            tool_plan=default_tool_plan(calls),
        )

    def parse_intent(self, request: str) -> Intent:
        today = self._today()
        record_reference = extract_record_reference(request, today=today)
        payload = extract_payload(request)

        if contains_keyword(request, HELP_KEYWORDS):
            return HelpIntent()
        if contains_keyword(request, SUMMARIZE_KEYWORDS):
            return SummarizeCoreIntent()
        if contains_keyword(request, SKILLS_CATALOG_KEYWORDS):
            return SkillsCatalogIntent()
        if contains_keyword(request, TASK_RUN_KEYWORDS):
            task_ref = extract_task_reference(request)
            if task_ref:
                return TaskRunIntent(task_ref)
        if contains_keyword(request, SKILL_RUN_KEYWORDS):
            skill_ref = extract_skill_reference(request)
            if skill_ref:
                return SkillRunIntent(skill_ref=skill_ref, input=payload or request)
        if should_create_record_intent(request, today=today):
            content = extract_create_content(request)
            if content:
                filename = extract_create_filename(request) or default_create_filename(
                    request, today=today, now=self._clock()
                )
                return CreateIntent(filename=filename, content=content)
        if record_reference and contains_keyword(request, DELETE_KEYWORDS):
            return DeleteIntent(record_reference)
        if record_reference and payload and contains_keyword(request, APPEND_KEYWORDS):
            return AppendIntent(record_ref=record_reference, content=payload)
        if record_reference and payload and contains_keyword(request, REPLACE_KEYWORDS):
            return ReplaceIntent(record_ref=record_reference, content=payload)
        if contains_keyword(request, SEARCH_KEYWORDS):
            return SearchIntent(extract_search_query(request))
        if should_treat_as_question(request):
            return AnswerIntent(request)
        return UnknownIntent(extract_search_query(request))

    def materialize_call(self, name: str, arguments: dict[str, str], request: str) -> ToolCall | None:
        """Backfill missing or placeholder arguments from the request; None if still incomplete."""
        if get_tool_spec(name) is None:
            return None
        today = self._today()
        args = {key: value.strip() for key, value in arguments.items() if value and value.strip()}

        if name == "assistant.answer":
            args.setdefault("question", request)
        elif name == "record.search":
            args.setdefault("query", extract_search_query(request))
        elif name == "record.create":
            if args.get("filename"):
                args["filename"] = normalize_create_filename(args["filename"])
            else:
                args["filename"] = extract_create_filename(request) or default_create_filename(
                    request, today=today, now=self._clock()
                )
            if not args.get("content"):
                args["content"] = extract_create_content(request)
        elif name == "task.run":
            if not args.get("task_ref"):
                args["task_ref"] = extract_task_reference(request)
        elif name == "skill.run":
            if not args.get("skill_ref"):
                args["skill_ref"] = extract_skill_reference(request)
            if not args.get("input"):
                args["input"] = extract_payload(request)
        elif name in ("record.delete", "record.append", "record.replace"):
            raw_reference = args.get("record_id", "")
            if not raw_reference or is_placeholder_reference(raw_reference):
                args["record_id"] = extract_record_reference(request, today=today) or ""
            if name != "record.delete" and not args.get("content"):
                args["content"] = extract_payload(request)

        args = {key: value for key, value in args.items() if value}
        call = ToolCall(name, args)
        if missing_required_arguments(call):
            return None
        return call

    def _plan_with_llm(self, request: str, core_context: list[CoreContextItem]) -> PlannedCalls | None:
        if self._llm_client is None:
            return None
        raw = self._llm_client.call(PLANNER_SYSTEM_PROMPT, self._build_user_prompt(request, core_context), self._model_id)
        payload = parse_planner_payload(raw)
        source = f"llm:{self._model_id}"
        clarify = str(payload.get("clarify_question") or "").strip()
        note = str(payload.get("note") or "").strip() or None
        raw_plan = payload.get("tool_plan")
        tool_plan = [str(item).strip() for item in raw_plan if str(item).strip()] if isinstance(raw_plan, list) else []

        calls: list[ToolCall] = []
        raw_calls = payload.get("calls")
        if isinstance(raw_calls, list):
            for item in raw_calls:
                if not isinstance(item, dict):
                    continue
                name = str(item.get("name") or "").strip()
                if not name:
                    continue
                call = self.materialize_call(name, _string_arguments(item.get("arguments")), request)
                if call is not None:
                    calls.append(call)
        if not calls:
            legacy = self._legacy_intent_call(payload, request)
            if legacy is not None:
                calls = [legacy]

        if self._override_policy is not None:
            override = self._override_policy.apply(request, calls, now=self._clock())
            if override is not None:
                calls = override
                tool_plan = default_tool_plan(calls)
                note = f"{note}（已应用规则覆盖）" if note else "已应用规则覆盖（避免写意图被降级为纯检索）。"

        forced_clarify = minimal_clarify_question(request, today=self._today())
        if forced_clarify is not None:
            return PlannedCalls(
                calls=[],
                planner_source=source,
                planner_note=note,
                tool_plan=list(CLARIFY_TOOL_PLAN),
                clarify_question=forced_clarify,
            )
        if calls:
            return PlannedCalls(
                calls=calls,
                planner_source=source,
                planner_note=note,
                tool_plan=tool_plan or default_tool_plan(calls),
            )
        if clarify:
            return PlannedCalls(
                calls=[],
                planner_source=source,
                planner_note=note,
                tool_plan=tool_plan or list(CLARIFY_TOOL_PLAN),
                clarify_question=clarify,
            )
        return None

    def _legacy_intent_call(self, payload: dict[str, Any], request: str) -> ToolCall | None:
        """Accept the older single-intent JSON shape (``{"intent": "delete", ...}``)."""
        intent = str(payload.get("intent") or "").strip().lower()
        query = str(payload.get("query") or "").strip()
        record_id = str(payload.get("record_id") or "").strip()
        content = str(payload.get("content") or "").strip()
        filename = str(payload.get("filename") or payload.get("title") or "").strip()

        if intent == "help":
            return ToolCall("assistant.help")
        if intent in ("summarizecore", "summarize_core"):
            return ToolCall("core.summarize")
        if intent in ("skillscatalog", "skills_catalog", "skillcatalog", "skill_catalog"):
            return ToolCall("skills.catalog")
        if intent in ("answer", "qa", "question"):
            return self.materialize_call("assistant.answer", {"question": query}, request)
        if intent == "search":
            return self.materialize_call("record.search", {"query": query}, request)
        if intent in ("create", "create_record", "record_create"):
            return self.materialize_call("record.create", {"filename": filename, "content": content}, request)
        if intent in ("taskrun", "task_run"):
            return self.materialize_call("task.run", {"task_ref": query}, request)
        if intent in ("skillrun", "skill_run"):
            return self.materialize_call("skill.run", {"skill_ref": query, "input": content}, request)
        if intent == "delete":
            return self.materialize_call("record.delete", {"record_id": record_id}, request)
        if intent in ("append", "replace"):
            return self.materialize_call(f"record.{intent}", {"record_id": record_id, "content": content}, request)
        return None

    def _build_user_prompt(self, request: str, core_context: list[CoreContextItem]) -> str:
        context_rows = "\n".join(
            f"[{item.record_id}] {item.filename}: {clip(item.snippet, PLANNER_CONTEXT_SNIPPET_CHARS)}"
            for item in core_context[:PLANNER_CONTEXT_ITEMS]
        )
        skills_text = "(none)"
        if self._skill_catalog_provider is not None:
            skills_text = self._skill_catalog_provider().strip() or "(none)"
        tools_text = json.dumps(tool_catalog_payload(), ensure_ascii=False, indent=2)
        return (
            f"REQUEST:\n{request}\n\n"
            f"CORE_CONTEXT:\n{context_rows or '(none)'}\n\n"
            f"TOOLS:\n{tools_text}\n\n"
            f"SKILLS:\n{skills_text}\n\n"
            "输出 JSON，不要附加 Markdown 代码块。"
        )

    def _today(self) -> date:
        return self._clock().date()


def extract_first_json_object(text: str) -> str | None:
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end < start:
        return None
    return text[start : end + 1]


def parse_planner_payload(raw: str) -> dict[str, Any]:
    snippet = extract_first_json_object(strip_think_blocks(raw))
    if snippet is None:
        raise ValueError("planner output contains no JSON object")
    parsed = json.loads(snippet)
    if not isinstance(parsed, dict):
        raise ValueError("planner output is not a JSON object")
    return parsed


def _string_arguments(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    arguments: dict[str, str] = {}
    for key, value in raw.items():
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, (int, float)):
            arguments[str(key)] = str(value)
        elif isinstance(value, str) and value.strip():
            arguments[str(key)] = value.strip()
    return arguments
