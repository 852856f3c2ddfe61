from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, TypeVar

from assistant_kernel.db import KernelDB, ReferenceNotFoundError
from assistant_kernel.extraction import (
    default_create_filename,
    extract_record_id,
    extract_record_reference,
    is_placeholder_reference,
    resolve_date_reference,
)
from assistant_kernel.models import ScheduledTask, Skill

ACTION_DELETE = "delete"
ACTION_APPEND = "append"
ACTION_REPLACE = "replace"

_NamedT = TypeVar("_NamedT", ScheduledTask, Skill)


class AmbiguousReferenceError(RuntimeError):
    """Raised when a reference matches more than one candidate."""


@dataclass(frozen=True)
class ResolvedRecord:
    record_id: str
    created: bool = False


class ReferenceResolver:
    """Turn user-facing references (UUIDs, 今天/明天, names, placeholders) into canonical ids."""

    def __init__(self, db: KernelDB, *, clock: Callable[[], datetime] | None = None) -> None:
        self._db = db
        self._clock = clock or datetime.now

    def today(self) -> date:
        return self._clock().date()

    def resolve_record(
        self,
        raw: str,
        action: str,
        request: str,
        *,
        create_if_missing_content: str | None = None,
    ) -> ResolvedRecord:
        reference = raw.strip()
        if not reference:
            raise ReferenceNotFoundError("记录引用为空")

        if is_placeholder_reference(reference):
            extracted = extract_record_reference(request, today=self.today())
            if extracted and extracted.upper() != reference.upper() and not is_placeholder_reference(extracted):
                return self.resolve_record(
                    extracted,
                    action,
                    request,
                    create_if_missing_content=create_if_missing_content,
                )
            raise ReferenceNotFoundError("缺少目标记录引用，请提供记录 ID 或 TODAY/明天。")

        record_id = extract_record_id(reference)
        if record_id is not None:
            if self._db.get_record(record_id) is None:
                raise ReferenceNotFoundError(f"记录不存在：{record_id}")
            return ResolvedRecord(record_id)

        target_date = resolve_date_reference(reference, today=self.today())
        if target_date is not None:
            existing = self._db.find_text_record_for_date(target_date)
            if existing is not None:
                return ResolvedRecord(existing.id)
            content = (create_if_missing_content or "").strip()
            # Only append may create the missing day record, and only with content to write.
            if action == ACTION_APPEND and content:
                filename = default_create_filename(request, target_date, now=self._clock())
                return ResolvedRecord(self._db.create_text_record(filename, content), created=True)
            raise ReferenceNotFoundError(f"未找到 {target_date.strftime('%Y-%m-%d')} 对应记录")

        if self._db.get_record(reference) is not None:
            return ResolvedRecord(reference.upper())
        matches = self._db.find_records_by_filename(reference)
        if len(matches) > 1:
            raise AmbiguousReferenceError(f"有 {len(matches)} 条记录名为 {reference}，请改用记录 ID")
        if matches:
            return ResolvedRecord(matches[0].id)
        raise ReferenceNotFoundError(f"记录不存在：{reference.upper()}")

    def resolve_task(self, task_ref: str) -> ScheduledTask:
        tasks = self._db.list_tasks()
        if not tasks:
            raise ReferenceNotFoundError("当前没有可运行的任务")
        return _resolve_named(task_ref, tasks, kind="任务")

    def resolve_skill(self, skill_ref: str) -> Skill:
        skills = self._db.list_skills()
        if not skills:
            raise ReferenceNotFoundError("当前没有已登记的技能")
        return _resolve_named(skill_ref, skills, kind="技能")


def _resolve_named(reference: str, candidates: list[_NamedT], *, kind: str) -> _NamedT:
    normalized = reference.strip()
    if not normalized:
        raise ReferenceNotFoundError(f"{kind}引用为空")
    lowered = normalized.lower()

    for candidate in candidates:
        if candidate.id.lower() == lowered:
            return candidate
    for candidate in candidates:
        if candidate.name.strip().lower() == lowered:
            return candidate
    partial = [candidate for candidate in candidates if lowered in candidate.name.lower()]
    if len(partial) > 1:
        names = "、".join(candidate.name for candidate in partial[:5])
        raise AmbiguousReferenceError(f"{kind}引用 {normalized} 匹配到多个：{names}")
    if partial:
        return partial[0]
    raise ReferenceNotFoundError(f"未找到{kind}：{normalized}")
