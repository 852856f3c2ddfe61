from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Union

from assistant_kernel.extraction import extract_record_reference, is_placeholder_reference

RISK_LOW = "low"
RISK_MEDIUM = "medium"
RISK_HIGH = "high"


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    required_arguments: tuple[str, ...]
    risk_level: str
    optional_arguments: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "required_arguments": list(self.required_arguments),
            "optional_arguments": list(self.optional_arguments),
            "risk_level": self.risk_level,
        }


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: dict[str, str] = field(default_factory=dict)

    def argument(self, key: str) -> str:
        return (self.arguments.get(key) or "").strip()

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "arguments": dict(self.arguments)}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ToolCall:
        raw_arguments = payload.get("arguments")
        arguments: dict[str, str] = {}
        if isinstance(raw_arguments, dict):
            for key, value in raw_arguments.items():
                if value is None:
                    continue
                text = value if isinstance(value, str) else str(value)
                arguments[str(key)] = text.strip()
        return cls(name=str(payload.get("name") or "").strip(), arguments=arguments)


TOOL_SPECS: tuple[ToolSpec, ...] = (
    ToolSpec("assistant.help", "展示助理能力与用法", (), RISK_LOW),
    ToolSpec("core.summarize", "总结 Core 持久记忆", (), RISK_LOW),
    ToolSpec("assistant.answer", "基于 Core 记忆与审计日志回答问题", ("question",), RISK_LOW),
    ToolSpec("skills.catalog", "列出已登记的技能清单", (), RISK_LOW),
    ToolSpec("record.search", "按关键词搜索记录", ("query",), RISK_LOW),
    ToolSpec("record.create", "新建文本记录", ("content",), RISK_LOW, ("filename",)),
    ToolSpec("task.run", "立即运行一个计划任务", ("task_ref",), RISK_HIGH),
    ToolSpec("skill.run", "运行一个技能", ("skill_ref",), RISK_MEDIUM, ("input",)),
    ToolSpec("record.delete", "删除记录", ("record_id",), RISK_HIGH),
    ToolSpec("record.append", "向文本记录追加内容", ("record_id", "content"), RISK_MEDIUM),
    ToolSpec("record.replace", "改写文本记录全文", ("record_id", "content"), RISK_HIGH),
)
TOOL_SPECS_BY_NAME = {spec.name: spec for spec in TOOL_SPECS}

RECORD_REFERENCE_TOOL_NAMES = frozenset({"record.delete", "record.append", "record.replace"})


def get_tool_spec(name: str) -> ToolSpec | None:
    return TOOL_SPECS_BY_NAME.get(name.strip())


def requires_confirmation(calls: list[ToolCall] | tuple[ToolCall, ...]) -> bool:
    for call in calls:
        spec = get_tool_spec(call.name)
        if spec is not None and spec.risk_level == RISK_HIGH:
            return True
    return False


def missing_required_arguments(call: ToolCall) -> list[str]:
    spec = get_tool_spec(call.name)
    if spec is None:
        return []
    return [key for key in spec.required_arguments if not call.argument(key)]


def tool_catalog_payload() -> list[dict[str, Any]]:
    return [spec.to_dict() for spec in TOOL_SPECS]


def default_tool_plan(calls: list[ToolCall] | tuple[ToolCall, ...]) -> list[str]:
    if not calls:
        return ["fallback-search", "request-disambiguation"]
    return [f"{index}. {call.name}" for index, call in enumerate(calls, start=1)]


def describe_tool_calls(calls: list[ToolCall] | tuple[ToolCall, ...]) -> str:
    if not calls:
        return "-"
    parts = []
    for call in calls:
        if call.arguments:
            args = ", ".join(f"{key}={value}" for key, value in sorted(call.arguments.items()))
            parts.append(f"{call.name}({args})")
        else:
            parts.append(call.name)
    return "; ".join(parts)


# Typed arguments. A ToolCall is converted to one of these before execution.
@dataclass(frozen=True)
class HelpIntent:
    pass


@dataclass(frozen=True)
class SummarizeCoreIntent:
    pass


@dataclass(frozen=True)
class AnswerIntent:
    question: str


@dataclass(frozen=True)
class SkillsCatalogIntent:
    pass


@dataclass(frozen=True)
class SearchIntent:
    query: str


@dataclass(frozen=True)
class CreateIntent:
    filename: str
    content: str


@dataclass(frozen=True)
class TaskRunIntent:
    task_ref: str


@dataclass(frozen=True)
class SkillRunIntent:
    skill_ref: str
    input: str


@dataclass(frozen=True)
class DeleteIntent:
    record_ref: str


@dataclass(frozen=True)
class AppendIntent:
    record_ref: str
    content: str


@dataclass(frozen=True)
class ReplaceIntent:
    record_ref: str
    content: str


@dataclass(frozen=True)
class UnknownIntent:
    text: str


Intent = Union[
    HelpIntent,
    SummarizeCoreIntent,
    AnswerIntent,
    SkillsCatalogIntent,
    SearchIntent,
    CreateIntent,
    TaskRunIntent,
    SkillRunIntent,
    DeleteIntent,
    AppendIntent,
    ReplaceIntent,
    UnknownIntent,
]


def calls_for_intent(intent: Intent) -> list[ToolCall]:
    if isinstance(intent, HelpIntent):
        return [ToolCall("assistant.help")]
    if isinstance(intent, SummarizeCoreIntent):
        return [ToolCall("core.summarize")]
    if isinstance(intent, AnswerIntent):
        return [ToolCall("assistant.answer", {"question": intent.question})]
    if isinstance(intent, SkillsCatalogIntent):
        return [ToolCall("skills.catalog")]
    if isinstance(intent, SearchIntent):
        return [ToolCall("record.search", {"query": intent.query})]
    if isinstance(intent, CreateIntent):
        return [ToolCall("record.create", {"filename": intent.filename, "content": intent.content})]
    if isinstance(intent, TaskRunIntent):
        return [ToolCall("task.run", {"task_ref": intent.task_ref})]
    if isinstance(intent, SkillRunIntent):
        return [ToolCall("skill.run", {"skill_ref": intent.skill_ref, "input": intent.input})]
    if isinstance(intent, DeleteIntent):
        return [ToolCall("record.delete", {"record_id": intent.record_ref})]
    if isinstance(intent, AppendIntent):
        return [ToolCall("record.append", {"record_id": intent.record_ref, "content": intent.content})]
    if isinstance(intent, ReplaceIntent):
        return [ToolCall("record.replace", {"record_id": intent.record_ref, "content": intent.content})]
    if isinstance(intent, UnknownIntent):
        return [ToolCall("record.search", {"query": intent.text})]
    raise ValueError(f"unsupported intent: {intent!r}")


def intent_from_call(call: ToolCall, request: str, *, today: date | None = None) -> Intent | None:
    """Convert a call into its typed form; None when a required argument is missing.

    Placeholder record references are re-extracted from the original request.
    """
    name = call.name
    if name == "assistant.help":
        return HelpIntent()
    if name == "core.summarize":
        return SummarizeCoreIntent()
    if name == "skills.catalog":
        return SkillsCatalogIntent()
    if name == "assistant.answer":
        question = call.argument("question")
        return AnswerIntent(question) if question else None
    if name == "record.search":
        query = call.argument("query")
        return SearchIntent(query) if query else None
    if name == "record.create":
        content = call.argument("content")
        if not content:
            return None
        return CreateIntent(filename=call.argument("filename"), content=content)
    if name == "task.run":
        task_ref = call.argument("task_ref")
        return TaskRunIntent(task_ref) if task_ref else None
    if name == "skill.run":
        skill_ref = call.argument("skill_ref")
        if not skill_ref:
            return None
        return SkillRunIntent(skill_ref=skill_ref, input=call.argument("input") or request)
    if name in RECORD_REFERENCE_TOOL_NAMES:
        record_ref = _record_reference_argument(call, request, today)
        if record_ref is None:
            return None
        if name == "record.delete":
            return DeleteIntent(record_ref)
        content = call.argument("content")
        if not content:
            return None
        if name == "record.append":
            return AppendIntent(record_ref=record_ref, content=content)
        return ReplaceIntent(record_ref=record_ref, content=content)
    return None


def _record_reference_argument(call: ToolCall, request: str, today: date | None) -> str | None:
    raw = call.argument("record_id")
    if raw and not is_placeholder_reference(raw):
        return raw
    return extract_record_reference(request, today=today)
