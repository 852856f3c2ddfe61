"""Keyword and pattern helpers that pull structured intent out of free-form requests.

Everything here is pure: callers pass ``today``/``now`` when the result depends
on the calendar.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta

TODAY_REFERENCE = "TODAY"
TOMORROW_REFERENCE = "TOMORROW"
DAY_AFTER_TOMORROW_REFERENCE = "DAY_AFTER_TOMORROW"
SYMBOLIC_DATE_REFERENCES = (TODAY_REFERENCE, TOMORROW_REFERENCE, DAY_AFTER_TOMORROW_REFERENCE)

DELETE_KEYWORDS = ("删除", "delete", "移除")
APPEND_KEYWORDS = ("追加", "append", "补充")
REPLACE_KEYWORDS = ("改写", "replace", "rewrite", "编辑", "更新")
SEARCH_KEYWORDS = ("搜索", "检索", "查找", "search", "find")
TASK_RUN_KEYWORDS = ("task.run", "run task", "运行任务", "执行任务")
SKILL_RUN_KEYWORDS = ("skill.run", "run skill", "运行skill", "执行skill", "运行技能", "执行技能", "调用skill", "使用skill")
SKILLS_CATALOG_KEYWORDS = (
    "skills.catalog",
    "skill manifest",
    "skill list",
    "skills list",
    "技能列表",
    "skill文档",
    "技能文档",
)
HELP_KEYWORDS = ("help", "帮助", "你能做什么")
SUMMARIZE_KEYWORDS = ("总结", "回顾", "core memory", "持久记忆")
CREATE_KEYWORDS = (
    "新建",
    "创建",
    "新增",
    "记录一下",
    "写一条",
    "记一条",
    "写个",
    "create",
    "new note",
    "new record",
    "capture",
    "log",
)
PLAN_KEYWORDS = ("计划", "待办", "todo", "日程", "安排", "日志", "日记", "plan", "schedule")

_CREATE_BLOCKED_KEYWORDS = (
    *DELETE_KEYWORDS,
    *APPEND_KEYWORDS,
    "改写",
    "replace",
    "rewrite",
    *SEARCH_KEYWORDS,
    "task.run",
    "run task",
    "运行任务",
    "执行任务",
    "skill.run",
    "run skill",
    "运行技能",
    "执行技能",
    "skill list",
    "技能列表",
)
_CREATE_FILLER_WORDS = (
    "请",
    "帮我",
    "帮忙",
    *CREATE_KEYWORDS,
    "今天",
    "明天",
    "后天",
    "today",
    "tomorrow",
    "day after tomorrow",
    "的",
    "一个",
    "一条",
    "一下",
)
_QUESTION_ACTION_KEYWORDS = (
    "创建",
    "新建",
    "新增",
    "删除",
    "追加",
    "补充",
    "改写",
    "编辑",
    "更新",
    "create",
    "new note",
    "delete",
    "append",
    "replace",
    "rewrite",
    *SEARCH_KEYWORDS,
    "task.run",
    "run task",
    "skill.run",
    "run skill",
)
_QUESTION_KEYWORDS = (
    "今天我做了什么",
    "今天做了什么",
    "我做了什么",
    "回顾",
    "总结",
    "为什么",
    "怎么",
    "如何",
    "哪些",
    "什么",
    "what did i do",
    "what have i done",
    "why",
    "how",
    "what",
    "which",
    "when",
)
_PAYLOAD_SEPARATORS = ("内容:", "content:", "text:", "为:", "->", "=>")
_FILENAME_MARKERS = ("文件名:", "filename:", "标题:", "title:", "名为", "叫做")
_TASK_REFERENCE_MARKERS = ("task:", "任务:", "任务：", "task ", "任务 ")
_SKILL_REFERENCE_MARKERS = ("skill:", "技能:", "skill：", "技能：", "skill ", "技能 ")
_PLACEHOLDER_MARKERS = (
    "RESULT_OF_SEARCH",
    "SEARCH_RESULT",
    "RECORD_ID",
    "TARGET_RECORD",
    "ID_FROM_SEARCH",
    "FIRST_RESULT",
    "UNKNOWN",
)

_UUID_PATTERN = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")
_DATE_PATTERN = re.compile(r"(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})")
_QUOTED_PATTERNS = (
    re.compile(r'"([^"]+)"'),
    re.compile(r"“([^”]+)”"),
    re.compile(r"「([^」]+)」"),
)
_UNSAFE_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|\r\n\t]+')
_TOKEN_PATTERN = re.compile(r"\w+")


def contains_keyword(text: str, keywords: tuple[str, ...] | list[str]) -> bool:
    lowered = text.lower()
    return any(keyword.lower() in lowered for keyword in keywords)


def extract_record_id(text: str) -> str | None:
    match = _UUID_PATTERN.search(text)
    if match is None:
        return None
    return match.group(0).upper()


def extract_record_reference(text: str, *, today: date | None = None) -> str | None:
    """UUID first, then a symbolic day (TODAY/TOMORROW/DAY_AFTER_TOMORROW), then an explicit date."""
    record_id = extract_record_id(text)
    if record_id is not None:
        return record_id
    lower = text.lower()
    if "后天" in lower or "day after tomorrow" in lower:
        return DAY_AFTER_TOMORROW_REFERENCE
    if "明天" in lower or "tomorrow" in lower:
        return TOMORROW_REFERENCE
    if "今天" in lower or "today" in lower:
        return TODAY_REFERENCE
    resolved = resolve_date_reference(text, today=today)
    if resolved is not None:
        return resolved.strftime("%Y-%m-%d")
    return None


def is_placeholder_reference(raw: str) -> bool:
    value = raw.strip()
    if not value:
        return False
    upper = value.upper()
    if upper.startswith("<") and upper.endswith(">"):
        return True
    return any(marker in upper for marker in _PLACEHOLDER_MARKERS)


def extract_quoted_text(text: str) -> str | None:
    for pattern in _QUOTED_PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue
        value = match.group(1).strip()
        if value:
            return value
    return None


def extract_payload(text: str) -> str:
    quoted = extract_quoted_text(text)
    if quoted is not None:
        return quoted
    lower = text.lower()
    for separator in _PAYLOAD_SEPARATORS:
        index = lower.find(separator.lower())
        if index < 0:
            continue
        rhs = text[index + len(separator):].strip()
        if rhs:
            return rhs
    colon = max(text.rfind("："), text.rfind(":"))
    if colon >= 0:
        rhs = text[colon + 1:].strip()
        if rhs:
            return rhs
    return ""


def should_create_record_intent(text: str, *, today: date | None = None) -> bool:
    if contains_keyword(text, _CREATE_BLOCKED_KEYWORDS):
        return False
    if contains_keyword(text, CREATE_KEYWORDS):
        return True
    return resolve_date_reference(text, today=today) is not None and contains_keyword(text, PLAN_KEYWORDS)


def extract_create_content(text: str) -> str:
    quoted = extract_quoted_text(text)
    if quoted is not None:
        return quoted
    payload = extract_payload(text)
    if payload:
        return payload
    cleaned = text
    for word in _CREATE_FILLER_WORDS:
        cleaned = re.sub(re.escape(word), "", cleaned, flags=re.IGNORECASE)
    return cleaned.strip()


def extract_create_filename(text: str) -> str | None:
    lower = text.lower()
    for marker in _FILENAME_MARKERS:
        index = lower.find(marker.lower())
        if index < 0:
            continue
        rhs = text[index + len(marker):].strip()
        rhs = re.split(r"[，,。;]", rhs, maxsplit=1)[0].strip()
        if rhs:
            return normalize_create_filename(rhs)
    return None


def normalize_create_filename(raw: str) -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub("-", raw).strip().strip("-").strip()
    base = cleaned or "note"
    return base if "." in base else f"{base}.txt"


def default_create_filename(
    request: str,
    target_date: date | None = None,
    *,
    today: date | None = None,
    now: datetime | None = None,
) -> str:
    if contains_keyword(request, ("计划", "待办", "todo", "plan", "schedule", "日程")):
        prefix = "plan"
    elif contains_keyword(request, ("日志", "日记", "log", "journal")):
        prefix = "journal"
    else:
        prefix = "note"

    resolved = target_date or resolve_date_reference(request, today=today)
    if resolved is not None:
        return f"{prefix}-{resolved.strftime('%Y-%m-%d')}.txt"
    return timestamp_filename(prefix, now=now)


def timestamp_filename(prefix: str, *, now: datetime | None = None) -> str:
    current = now or datetime.now()
    return f"{prefix}-{current.strftime('%Y%m%d-%H%M%S')}.txt"


def resolve_date_reference(text: str, *, today: date | None = None) -> date | None:
    """Map 今天/明天/后天 (or TODAY-style tokens) and explicit YYYY-MM-DD dates to a calendar day."""
    base = today or date.today()
    lower = text.lower().replace("_", " ")
    if "后天" in lower or "day after tomorrow" in lower:
        return base + timedelta(days=2)
    if "明天" in lower or "tomorrow" in lower:
        return base + timedelta(days=1)
    if "今天" in lower or "today" in lower:
        return base

    match = _DATE_PATTERN.search(text)
    if match is None:
        return None
    try:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None


def extract_search_query(text: str) -> str:
    quoted = extract_quoted_text(text)
    if quoted is not None:
        return quoted
    query = text
    for keyword in SEARCH_KEYWORDS:
        query = re.sub(re.escape(keyword), "", query, flags=re.IGNORECASE)
    query = query.replace("记录", "").strip()
    return query or text


def extract_task_reference(text: str) -> str:
    record_id = extract_record_id(text)
    if record_id is not None:
        return record_id
    quoted = extract_quoted_text(text)
    if quoted is not None:
        return quoted
    lower = text.lower()
    for marker in _TASK_REFERENCE_MARKERS:
        index = lower.find(marker)
        if index < 0:
            continue
        rhs = text[index + len(marker):].strip()
        if rhs:
            return rhs
    return ""


def extract_skill_reference(text: str) -> str:
    record_id = extract_record_id(text)
    if record_id is not None:
        return record_id
    quoted = extract_quoted_text(text)
    if quoted is not None:
        return quoted
    lower = text.lower()
    for marker in _SKILL_REFERENCE_MARKERS:
        index = lower.find(marker)
        if index < 0:
            continue
        rhs = text[index + len(marker):].strip()
        if rhs:
            return re.split(r"[,，。;；:：]", rhs, maxsplit=1)[0].strip()
    return ""


def should_treat_as_question(text: str) -> bool:
    if contains_keyword(text, _QUESTION_ACTION_KEYWORDS):
        return False
    if "?" in text or "？" in text:
        return True
    return contains_keyword(text, _QUESTION_KEYWORDS)


def is_today_activity_question(text: str) -> bool:
    return contains_keyword(text, ("今天", "today")) and contains_keyword(
        text,
        ("做了什么", "干了什么", "完成了什么", "what did i do", "what have i done"),
    )


def minimal_clarify_question(request: str, *, today: date | None = None) -> str | None:
    """Return the single question that unblocks a mutating request, or None when nothing is missing."""
    text = request.strip()
    record_reference = extract_record_reference(text, today=today)
    payload = extract_payload(text)

    if should_create_record_intent(text, today=today) and not extract_create_content(text):
        return "请提供要写入新记录的内容，例如：为明天新建计划：<内容>。"

    if contains_keyword(text, DELETE_KEYWORDS) and record_reference is None:
        return "请提供要删除的记录 ID（UUID 或 TODAY/明天），例如：删除记录 <record-id>。"

    if contains_keyword(text, APPEND_KEYWORDS):
        if record_reference is None and not payload:
            return "请补充目标记录引用和追加内容，例如：向 TODAY 追加：<内容>。"
        if record_reference is None:
            return "请提供要追加内容的记录 ID（UUID 或 TODAY/明天）。"
        if not payload:
            return f"请提供要追加的内容，例如：向 {record_reference} 追加：<内容>。"

    if contains_keyword(text, REPLACE_KEYWORDS):
        if record_reference is None and not payload:
            return "请补充目标记录引用和改写后的内容，例如：把 TODAY 改写为：<内容>。"
        if record_reference is None:
            return "请提供要改写的记录 ID（UUID 或 TODAY/明天）。"
        if not payload:
            return f"请提供改写后的内容，例如：把 {record_reference} 改写为：<内容>。"

    if contains_keyword(text, TASK_RUN_KEYWORDS) and not extract_task_reference(text):
        return "请提供要运行的任务 ID 或任务名，例如：运行任务 <task-id>。"

    if contains_keyword(text, SKILL_RUN_KEYWORDS) and not extract_skill_reference(text):
        return "请提供要运行的 Skill ID 或名称，例如：运行 skill:daily-standup。"

    return None


def request_tokens(text: str, limit: int = 12) -> list[str]:
    tokens = _TOKEN_PATTERN.findall(text.lower())
    if not tokens:
        return [text.lower()]
    return tokens[:limit]


def score_text(text: str, tokens: list[str]) -> int:
    haystack = text.lower()
    return sum(min(len(token), 8) for token in tokens if token and token in haystack)


def token_set(text: str, max_tokens: int = 64) -> set[str]:
    return set(_TOKEN_PATTERN.findall(text.lower())[:max_tokens])


def jaccard(lhs: set[str], rhs: set[str]) -> float:
    if not lhs or not rhs:
        return 0.0
    return len(lhs & rhs) / len(lhs | rhs)


def clip(text: str, limit: int) -> str:
    normalized = text.strip()
    if len(normalized) <= limit:
        return normalized
    return normalized[:limit] + "..."


def tail(text: str, limit: int) -> str:
    normalized = text.strip()
    if len(normalized) <= limit:
        return normalized
    return "...\n" + normalized[-limit:]
