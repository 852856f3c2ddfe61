from __future__ import annotations

import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from assistant_kernel.db import KernelDB, ReferenceNotFoundError
from assistant_kernel.models import (
    LLMPromptAction,
    ManualTrigger,
    RelayInstructionAction,
    ScheduledTask,
    Skill,
)
from assistant_kernel.resolver import (
    ACTION_APPEND,
    ACTION_DELETE,
    ACTION_REPLACE,
    AmbiguousReferenceError,
    ReferenceResolver,
)

NOW = datetime(2026, 10, 19, 8, 0)


class ReferenceResolverTest(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.db = KernelDB(str(Path(self.tmp.name) / "resolver_test.db"))
        self.resolver = ReferenceResolver(self.db, clock=lambda: NOW)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_uuid_reference_must_exist(self) -> None:
        record_id = self.db.create_text_record("note.txt", "内容")

        self.assertEqual(self.resolver.resolve_record(record_id.lower(), ACTION_DELETE, "").record_id, record_id)
        with self.assertRaises(ReferenceNotFoundError):
            self.resolver.resolve_record("00000000-0000-4000-8000-000000000000", ACTION_DELETE, "")

    def test_symbolic_day_resolves_to_existing_record(self) -> None:
        record_id = self.db.create_text_record("plan-2026-10-20.txt", "计划")

        resolved = self.resolver.resolve_record("TOMORROW", ACTION_REPLACE, "把明天改写为：新计划")
        self.assertEqual(resolved.record_id, record_id)
        self.assertFalse(resolved.created)

    def test_day_after_tomorrow_token_resolves(self) -> None:
        record_id = self.db.create_text_record("plan-2026-10-21.txt", "计划")

        self.assertEqual(self.resolver.resolve_record("DAY_AFTER_TOMORROW", ACTION_DELETE, "").record_id, record_id)

    def test_missing_day_record_is_created_only_for_append_with_content(self) -> None:
        with self.assertRaises(ReferenceNotFoundError):
            self.resolver.resolve_record("TODAY", ACTION_REPLACE, "把今天改写为：x", create_if_missing_content="x")
        with self.assertRaises(ReferenceNotFoundError):
            self.resolver.resolve_record("TODAY", ACTION_APPEND, "向今天追加", create_if_missing_content="  ")

        resolved = self.resolver.resolve_record(
            "TODAY",
            ACTION_APPEND,
            "向今天的日志追加：跑步 5 公里",
            create_if_missing_content="跑步 5 公里",
        )
        self.assertTrue(resolved.created)
        record = self.db.get_record(resolved.record_id)
        assert record is not None
        self.assertEqual(record.filename, "journal-2026-10-19.txt")
        self.assertEqual(record.text, "跑步 5 公里")

    def test_kernel_daily_records_are_not_date_targets(self) -> None:
        self.db.create_text_record("assistant-audit-2026-10-19.txt", "审计")

        with self.assertRaises(ReferenceNotFoundError):
            self.resolver.resolve_record("TODAY", ACTION_DELETE, "删除今天的记录")

    def test_placeholder_falls_back_to_request_reference(self) -> None:
        record_id = self.db.create_text_record("note.txt", "内容")

        resolved = self.resolver.resolve_record("<RECORD_ID>", ACTION_DELETE, f"删除记录 {record_id}")
        self.assertEqual(resolved.record_id, record_id)
        with self.assertRaises(ReferenceNotFoundError):
            self.resolver.resolve_record("RESULT_OF_SEARCH", ACTION_DELETE, "删除那条记录")

    def test_filename_reference_and_ambiguity(self) -> None:
        unique_id = self.db.create_text_record("weekly.txt", "a")
        self.db.create_text_record("dup.txt", "b")
        self.db.create_text_record("DUP.txt", "c")

        self.assertEqual(self.resolver.resolve_record("weekly.txt", ACTION_DELETE, "").record_id, unique_id)
        with self.assertRaises(AmbiguousReferenceError):
            self.resolver.resolve_record("dup.txt", ACTION_DELETE, "")

    def test_resolve_task_by_id_name_and_partial(self) -> None:
        action = RelayInstructionAction(template="x")
        self.db.save_task(ScheduledTask(id="TASK-A", name="晨报", trigger=ManualTrigger(), action=action))
        self.db.save_task(ScheduledTask(id="TASK-B", name="晚间复盘", trigger=ManualTrigger(), action=action))
        self.db.save_task(ScheduledTask(id="TASK-C", name="周末复盘", trigger=ManualTrigger(), action=action))

        self.assertEqual(self.resolver.resolve_task("task-a").id, "TASK-A")
        self.assertEqual(self.resolver.resolve_task("晚间复盘").id, "TASK-B")
        self.assertEqual(self.resolver.resolve_task("周末").id, "TASK-C")
        with self.assertRaises(AmbiguousReferenceError):
            self.resolver.resolve_task("复盘")
        with self.assertRaises(ReferenceNotFoundError):
            self.resolver.resolve_task("不存在")

    def test_resolve_skill_without_skills(self) -> None:
        with self.assertRaises(ReferenceNotFoundError):
            self.resolver.resolve_skill("daily")

        self.db.save_skill(Skill(id="SKILL-1", name="daily-standup", action=LLMPromptAction("s", "u")))
        self.assertEqual(self.resolver.resolve_skill("DAILY-STANDUP").id, "SKILL-1")


if __name__ == "__main__":
    unittest.main()
