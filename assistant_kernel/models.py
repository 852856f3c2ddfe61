from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Union

TEXT_LIKE_FILE_TYPES = ("text", "web", "log")

RUN_STATUS_RUNNING = "running"
RUN_STATUS_SUCCESS = "success"
RUN_STATUS_FAILED = "failed"


@dataclass(frozen=True)
class Record:
    id: str
    filename: str
    file_type: str
    text: str
    preview: str
    created_at: str
    updated_at: str
    tags: tuple[str, ...] = ()
    is_pinned: bool = False
    is_archived: bool = False

    @property
    def is_text_like(self) -> bool:
        return self.file_type in TEXT_LIKE_FILE_TYPES


@dataclass(frozen=True)
class RecordFilter:
    search_text: str = ""
    tag_ids: tuple[str, ...] = ()
    tag_match_any: bool = True
    file_types: tuple[str, ...] = ()
    show_archived: bool = False
    only_pinned: bool = False
    limit: int | None = None


@dataclass(frozen=True)
class Tag:
    id: str
    name: str
    created_at: str


# Triggers. Each variant is its own type; `kind` is the serialized discriminant.
@dataclass(frozen=True)
class ManualTrigger:
    kind = "manual"


@dataclass(frozen=True)
class HeartbeatTrigger:
    interval_minutes: int
    kind = "heartbeat"


@dataclass(frozen=True)
class CronTrigger:
    expression: str
    kind = "cron"


@dataclass(frozen=True)
class OnRecordCreateTrigger:
    tag_filter: tuple[str, ...] = ()
    kind = "on_record_create"


@dataclass(frozen=True)
class OnRecordUpdateTrigger:
    tag_filter: tuple[str, ...] = ()
    kind = "on_record_update"


Trigger = Union[ManualTrigger, HeartbeatTrigger, CronTrigger, OnRecordCreateTrigger, OnRecordUpdateTrigger]


def trigger_to_dict(trigger: Trigger) -> dict[str, Any]:
    if isinstance(trigger, ManualTrigger):
        return {"kind": trigger.kind}
    if isinstance(trigger, HeartbeatTrigger):
        return {"kind": trigger.kind, "interval_minutes": trigger.interval_minutes}
    if isinstance(trigger, CronTrigger):
        return {"kind": trigger.kind, "expression": trigger.expression}
    if isinstance(trigger, (OnRecordCreateTrigger, OnRecordUpdateTrigger)):
        return {"kind": trigger.kind, "tag_filter": list(trigger.tag_filter)}
    raise ValueError(f"unsupported trigger: {trigger!r}")


def trigger_from_dict(payload: dict[str, Any]) -> Trigger:
    kind = str(payload.get("kind") or "").strip().lower()
    if kind == ManualTrigger.kind:
        return ManualTrigger()
    if kind == HeartbeatTrigger.kind:
        return HeartbeatTrigger(interval_minutes=int(payload.get("interval_minutes") or 1))
    if kind == CronTrigger.kind:
        return CronTrigger(expression=str(payload.get("expression") or "").strip())
    if kind == OnRecordCreateTrigger.kind:
        return OnRecordCreateTrigger(tag_filter=_tag_filter(payload.get("tag_filter")))
    if kind == OnRecordUpdateTrigger.kind:
        return OnRecordUpdateTrigger(tag_filter=_tag_filter(payload.get("tag_filter")))
    raise ValueError(f"unknown trigger kind: {kind or '-'}")


def describe_trigger(trigger: Trigger) -> str:
    if isinstance(trigger, ManualTrigger):
        return "manual"
    if isinstance(trigger, HeartbeatTrigger):
        return f"heartbeat/{max(1, trigger.interval_minutes)}m"
    if isinstance(trigger, CronTrigger):
        return f"cron/{trigger.expression}"
    if isinstance(trigger, OnRecordCreateTrigger):
        if not trigger.tag_filter:
            return "on_record_create"
        return f"on_record_create(tags={','.join(trigger.tag_filter)})"
    if isinstance(trigger, OnRecordUpdateTrigger):
        if not trigger.tag_filter:
            return "on_record_update"
        return f"on_record_update(tags={','.join(trigger.tag_filter)})"
    raise ValueError(f"unsupported trigger: {trigger!r}")


@dataclass(frozen=True)
class RelayInstructionAction:
    template: str
    context_record_ref: str | None = None
    include_core_memory: bool = False
    include_skill_manifest: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": "relay_instruction",
            "template": self.template,
            "context_record_ref": self.context_record_ref,
            "include_core_memory": self.include_core_memory,
            "include_skill_manifest": self.include_skill_manifest,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RelayInstructionAction:
        raw_ref = payload.get("context_record_ref")
        ref = str(raw_ref).strip() if raw_ref is not None else ""
        return cls(
            template=str(payload.get("template") or ""),
            context_record_ref=ref or None,
            include_core_memory=bool(payload.get("include_core_memory")),
            include_skill_manifest=bool(payload.get("include_skill_manifest")),
        )


@dataclass(frozen=True)
class ScheduledTask:
    id: str
    name: str
    trigger: Trigger
    action: RelayInstructionAction
    description: str = ""
    is_enabled: bool = True
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    created_at: str = ""


@dataclass
class RunLog:
    id: str
    task_id: str
    started_at: datetime
    status: str = RUN_STATUS_RUNNING
    output: str = ""
    finished_at: datetime | None = None
    error: str | None = None


# Skill actions.
@dataclass(frozen=True)
class LLMPromptAction:
    system_prompt: str
    user_prompt_template: str
    model: str = ""
    kind = "llm_prompt"


@dataclass(frozen=True)
class ShellCommandAction:
    command: str
    kind = "shell_command"


@dataclass(frozen=True)
class CreateRecordAction:
    filename_template: str
    content_template: str
    kind = "create_record"


@dataclass(frozen=True)
class AppendRecordAction:
    record_ref: str
    content_template: str
    kind = "append_record"


SkillAction = Union[LLMPromptAction, ShellCommandAction, CreateRecordAction, AppendRecordAction]


def skill_action_to_dict(action: SkillAction) -> dict[str, Any]:
    if isinstance(action, LLMPromptAction):
        return {
            "kind": action.kind,
            "system_prompt": action.system_prompt,
            "user_prompt_template": action.user_prompt_template,
            "model": action.model,
        }
    if isinstance(action, ShellCommandAction):
        return {"kind": action.kind, "command": action.command}
    if isinstance(action, CreateRecordAction):
        return {
            "kind": action.kind,
            "filename_template": action.filename_template,
            "content_template": action.content_template,
        }
    if isinstance(action, AppendRecordAction):
        return {
            "kind": action.kind,
            "record_ref": action.record_ref,
            "content_template": action.content_template,
        }
    raise ValueError(f"unsupported skill action: {action!r}")


def skill_action_from_dict(payload: dict[str, Any]) -> SkillAction:
    kind = str(payload.get("kind") or "").strip().lower()
    if kind == LLMPromptAction.kind:
        return LLMPromptAction(
            system_prompt=str(payload.get("system_prompt") or ""),
            user_prompt_template=str(payload.get("user_prompt_template") or ""),
            model=str(payload.get("model") or ""),
        )
    if kind == ShellCommandAction.kind:
        return ShellCommandAction(command=str(payload.get("command") or ""))
    if kind == CreateRecordAction.kind:
        return CreateRecordAction(
            filename_template=str(payload.get("filename_template") or ""),
            content_template=str(payload.get("content_template") or ""),
        )
    if kind == AppendRecordAction.kind:
        return AppendRecordAction(
            record_ref=str(payload.get("record_ref") or ""),
            content_template=str(payload.get("content_template") or ""),
        )
    raise ValueError(f"unknown skill action kind: {kind or '-'}")


def describe_skill_action(action: SkillAction) -> str:
    if isinstance(action, LLMPromptAction):
        return f"llm_prompt(model={action.model or '-'})"
    if isinstance(action, ShellCommandAction):
        return f"shell_command({action.command[:48]})"
    if isinstance(action, CreateRecordAction):
        return f"create_record(filename_template={action.filename_template})"
    if isinstance(action, AppendRecordAction):
        return f"append_record(record_ref={action.record_ref})"
    raise ValueError(f"unsupported skill action: {action!r}")


@dataclass(frozen=True)
class Skill:
    id: str
    name: str
    action: SkillAction
    description: str = ""
    trigger_hint: str = ""
    is_enabled: bool = True
    created_at: str = ""
    updated_at: str = ""


def _tag_filter(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, (list, tuple)):
        return ()
    return tuple(str(item).strip() for item in raw if str(item).strip())
