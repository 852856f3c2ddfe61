from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable

from assistant_kernel.db import ContentTypeMismatchError, KernelDB, ReferenceNotFoundError
from assistant_kernel.extraction import (
    clip,
    contains_keyword,
    is_today_activity_question,
    jaccard,
    request_tokens,
    score_text,
    tail,
    token_set,
)
from assistant_kernel.logging_setup import component_logger
from assistant_kernel.models import RecordFilter

CORE_TAG_NAME = "Core"
CORE_TAG_ALIASES = ("持久记忆", "core memory")
AUDIT_TAG_NAME = "AuditLog"
AUDIT_TAG_ALIASES = ("audit", "audit log", "审计")
CORE_RECORD_PREFIX = "assistant-core"
AUDIT_RECORD_PREFIX = "assistant-audit"

MERGE_OVERWRITE = "overwrite"
MERGE_KEEP = "keep"
MERGE_VERSIONED = "versioned"

CONFLICT_SCAN_LIMIT = 12
CONFLICT_MIN_REQUEST_SIMILARITY = 0.34
CONFLICT_MAX_REPLY_SIMILARITY = 0.62
CONFLICT_MIN_SCORE = 0.22
CORE_CONTEXT_CANDIDATES = 200
CORE_SNIPPET_MAX_BYTES = 120_000

_MERGE_PATTERN = re.compile(r"#merge\s*[:：]\s*(overwrite|keep|versioned|version|覆盖|保留|版本)", re.IGNORECASE)
_MERGE_ALIASES = {
    "overwrite": MERGE_OVERWRITE,
    "覆盖": MERGE_OVERWRITE,
    "keep": MERGE_KEEP,
    "保留": MERGE_KEEP,
    "version": MERGE_VERSIONED,
    "versioned": MERGE_VERSIONED,
    "版本": MERGE_VERSIONED,
}
_MEMORY_KEYWORDS = (
    "记住",
    "记下来",
    "沉淀",
    "长期",
    "偏好",
    "习惯",
    "约定",
    "原则",
    "目标",
    "复盘",
    "结论",
    "remember",
    "preference",
    "habit",
    "rule",
    "goal",
    "decision",
    "key point",
)


@dataclass(frozen=True)
class CoreContextItem:
    record_id: str
    filename: str
    snippet: str
    updated_at: str
    score: int = 0


@dataclass(frozen=True)
class CoreConflict:
    record_id: str
    score: float
    request_similarity: float
    reply_similarity: float


@dataclass(frozen=True)
class AuditSnippet:
    record_id: str
    filename: str
    snippet: str


@dataclass
class TurnSummary:
    """Everything one kernel turn produced; rendered into Core and audit entries."""

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
    merge_strategy: str = MERGE_VERSIONED
    conflict: CoreConflict | None = None
    finished_at: datetime | None = None
    succeeded: bool = False


def load_core_context(db: KernelDB, core_tag_id: str, request: str, limit: int = 20) -> list[CoreContextItem]:
    """Rank Core-tagged records by token overlap with the request, newest first on ties."""
    records = db.fetch_records(RecordFilter(tag_ids=(core_tag_id,), limit=CORE_CONTEXT_CANDIDATES))
    tokens = request_tokens(request)
    items = []
    for record in records:
        snippet = record.text.encode("utf-8")[:CORE_SNIPPET_MAX_BYTES].decode("utf-8", errors="ignore")
        if not record.is_text_like or not snippet:
            snippet = record.preview
        items.append(
            CoreContextItem(
                record_id=record.id,
                filename=record.filename,
                snippet=snippet,
                updated_at=record.updated_at,
                score=score_text(f"{record.filename} {record.preview} {snippet}", tokens),
            )
        )
    items.sort(key=lambda item: item.updated_at, reverse=True)
    items.sort(key=lambda item: item.score, reverse=True)
    return items[: max(0, limit)]


def load_audit_snippets(
    db: KernelDB,
    audit_tag_id: str,
    question: str,
    *,
    limit: int = 6,
    today: date | None = None,
) -> list[AuditSnippet]:
    records = db.fetch_records(RecordFilter(tag_ids=(audit_tag_id,), limit=120))
    if is_today_activity_question(question):
        today_filename = daily_record_filename(AUDIT_RECORD_PREFIX, today or date.today()).lower()
        records.sort(key=lambda record: record.filename.lower() != today_filename)
    return [
        AuditSnippet(record_id=record.id, filename=record.filename, snippet=tail(record.text, 1800))
        for record in records[:limit]
    ]


def daily_record_filename(prefix: str, day: date) -> str:
    return f"{prefix}-{day.strftime('%Y-%m-%d')}.txt"


def parse_merge_strategy(request: str) -> str | None:
    match = _MERGE_PATTERN.search(request)
    if match is None:
        return None
    return _MERGE_ALIASES.get(match.group(1).strip().lower())


def resolve_merge_strategy(explicit: str | None, conflict: CoreConflict | None) -> str:
    if explicit is not None:
        return explicit
    return MERGE_VERSIONED


def extract_markdown_section(title: str, markdown: str) -> str | None:
    marker = f"## {title}"
    start = markdown.find(marker)
    if start < 0:
        return None
    body = markdown[start + len(marker):].split("\n## ", 1)[0].strip()
    return body or None


def detect_core_conflict(request: str, reply: str, core_context: list[CoreContextItem]) -> CoreConflict | None:
    """Find the stored entry that answered a similar request differently.

    Similar request (Jaccard >= 0.34) with a divergent reply (<= 0.62) scores
    ``request_sim * (1 - reply_sim)``; the best score of at least 0.22 wins.
    """
    request_set = token_set(request)
    reply_set = token_set(reply)
    if not request_set or not reply_set:
        return None

    best: CoreConflict | None = None
    for item in core_context[:CONFLICT_SCAN_LIMIT]:
        old_request = extract_markdown_section("Request", item.snippet) or item.filename
        old_reply = extract_markdown_section("Reply", item.snippet) or item.snippet
        request_similarity = jaccard(request_set, token_set(old_request))
        reply_similarity = jaccard(reply_set, token_set(old_reply))
        score = request_similarity * (1 - reply_similarity)
        if request_similarity < CONFLICT_MIN_REQUEST_SIMILARITY:
            continue
        if reply_similarity > CONFLICT_MAX_REPLY_SIMILARITY or score < CONFLICT_MIN_SCORE:
            continue
        if best is None or score > best.score:
            best = CoreConflict(
                record_id=item.record_id,
                score=score,
                request_similarity=request_similarity,
                reply_similarity=reply_similarity,
            )
    return best


def is_action_worth_persisting(action: str) -> bool:
    for prefix in ("record.create:", "record.append:", "record.replace:", "record.delete:"):
        if action.startswith(prefix) and action.endswith(":ok"):
            return True
    if action.startswith("task.run:") and action.endswith((":ok", ":success")):
        return True
    return action.startswith("skill.run:") and (":create:" in action or ":append:" in action)


def should_persist_core_memory(turn: TurnSummary, explicit_strategy: str | None) -> bool:
    if explicit_strategy is not None:
        return True
    if not turn.succeeded or turn.confirmation_required:
        return False
    if contains_keyword(turn.request, _MEMORY_KEYWORDS):
        return True
    if any(is_action_worth_persisting(action) for action in turn.actions):
        return True
    short_reply = clip(turn.reply, 240).lower()
    return ("结论" in short_reply or "decision" in short_reply) and bool(turn.related_record_ids)


def build_core_memory_text(turn: TurnSummary, *, now: datetime) -> str:
    key_actions = [action for action in turn.actions if is_action_worth_persisting(action)]
    conflict = turn.conflict
    return "\n".join(
        [
            "# Core Memory Entry",
            f"at: {now.isoformat(sep=' ', timespec='seconds')}",
            f"request_id: {turn.request_id}",
            f"source: {turn.source}",
            f"intent: {turn.intent}",
            f"planner_source: {turn.planner_source}",
            f"planner_note: {turn.planner_note or '-'}",
            f"merge_strategy: {turn.merge_strategy}",
            f"confirmation_required: {'yes' if turn.confirmation_required else 'no'}",
            f"conflict_ref: {conflict.record_id if conflict else '-'}",
            f"conflict_score: {f'{conflict.score:.2f}' if conflict else '-'}",
            "",
            "## Request",
            clip(turn.request, 180),
            "",
            "## Reply",
            clip(turn.reply, 260),
            "",
            "## Tool Plan",
            _bullet_rows(turn.tool_plan, 5),
            "",
            "## Key Actions",
            _bullet_rows(key_actions, 6),
            "",
            "## Related Records",
            _bullet_rows(turn.related_record_ids, 8),
            "",
            "## Context Size",
            str(len(turn.core_context_record_ids)),
        ]
    )


def build_audit_text(turn: TurnSummary) -> str:
    finished_at = turn.finished_at or turn.started_at
    duration_ms = int((finished_at - turn.started_at).total_seconds() * 1000)
    status = "failed" if any(action.startswith("error:") for action in turn.actions) else "ok"
    conflict = turn.conflict
    expires_at = turn.confirmation_expires_at
    return "\n".join(
        [
            "# Assistant Audit Entry",
            f"request_id: {turn.request_id}",
            f"status: {status}",
            f"source: {turn.source}",
            f"started_at: {turn.started_at.isoformat(sep=' ', timespec='seconds')}",
            f"finished_at: {finished_at.isoformat(sep=' ', timespec='seconds')}",
            f"duration_ms: {max(0, duration_ms)}",
            f"intent: {turn.intent}",
            f"planner_source: {turn.planner_source}",
            f"planner_note: {turn.planner_note or '-'}",
            f"confirmation_required: {'yes' if turn.confirmation_required else 'no'}",
            f"confirmation_token: {turn.confirmation_token or '-'}",
            f"confirmation_expires_at: {expires_at.isoformat(sep=' ', timespec='seconds') if expires_at else '-'}",
            f"merge_strategy: {turn.merge_strategy}",
            f"conflict_record_id: {conflict.record_id if conflict else '-'}",
            f"conflict_score: {f'{conflict.score:.2f}' if conflict else '-'}",
            f"core_memory_record_id: {turn.core_memory_record_id or '-'}",
            "",
            "## Request",
            clip(turn.request, 280),
            "",
            "## Reply",
            clip(turn.reply, 360),
            "",
            "## Tool Plan",
            _bullet_rows(turn.tool_plan, 8),
            "",
            "## Actions",
            _bullet_rows(turn.actions, 14),
            "",
            "## Related Records",
            _bullet_rows(turn.related_record_ids, 10),
            "",
            "## Core Context Records",
            _bullet_rows(turn.core_context_record_ids, 10),
        ]
    )


class MemoryWriter:
    """Persist Core memory entries and audit entries as daily tagged text records."""

    def __init__(
        self,
        db: KernelDB,
        *,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._db = db
        self._clock = clock or datetime.now
        self._logger = component_logger("memory", logger)

    def ensure_tags(self) -> tuple[str, str]:
        core = self._db.ensure_tag(CORE_TAG_NAME, CORE_TAG_ALIASES)
        audit = self._db.ensure_tag(AUDIT_TAG_NAME, AUDIT_TAG_ALIASES)
        return core.id, audit.id

    def write_core_memory(self, turn: TurnSummary, core_tag_id: str) -> tuple[str | None, str]:
        """Apply the turn's merge strategy; returns (record id or None, action tag)."""
        conflict = turn.conflict
        if turn.merge_strategy == MERGE_KEEP:
            return None, f"memory.keep:{conflict.record_id if conflict else '-'}"

        entry = build_core_memory_text(turn, now=self._clock())
        if turn.merge_strategy == MERGE_OVERWRITE and conflict is not None:
            try:
                record = self._db.update_record_text(conflict.record_id, entry)
            except (ReferenceNotFoundError, ContentTypeMismatchError) as exc:
                self._logger.warning(
                    "core overwrite failed, appending instead",
                    extra={
                        "event": "memory_overwrite_failed",
                        "context": {"record_id": conflict.record_id, "error": repr(exc)},
                    },
                )
            else:
                return record.id, f"memory.overwrite:{record.id}"

        record_id = self.append_daily_record(core_tag_id, CORE_RECORD_PREFIX, entry)
        return record_id, f"memory.append:{record_id}"

    def write_audit(self, turn: TurnSummary, audit_tag_id: str | None = None) -> str | None:
        """Append the audit entry; failures are logged and swallowed."""
        try:
            tag_id = audit_tag_id or self._db.ensure_tag(AUDIT_TAG_NAME, AUDIT_TAG_ALIASES).id
            return self.append_daily_record(tag_id, AUDIT_RECORD_PREFIX, build_audit_text(turn))
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "audit write failed",
                extra={"event": "audit_write_failed", "context": {"request_id": turn.request_id, "error": repr(exc)}},
            )
            return None

    def append_daily_record(self, tag_id: str, prefix: str, entry: str) -> str:
        filename = daily_record_filename(prefix, self._clock().date())
        trimmed = entry.strip()
        for record in self._db.find_records_by_filename(filename):
            if tag_id in record.tags and record.is_text_like:
                return self._db.append_record_text(record.id, trimmed).id
        return self._db.create_text_record(filename, trimmed, tag_ids=(tag_id,))


def _bullet_rows(items: list[str], limit: int) -> str:
    if not items:
        return "- (none)"
    return "\n".join(f"- {item}" for item in items[:limit])
