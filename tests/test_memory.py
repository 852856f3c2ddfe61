from __future__ import annotations

import tempfile
import unittest
from datetime import date, datetime
from pathlib import Path

from assistant_kernel.db import KernelDB
from assistant_kernel.memory import (
    MERGE_KEEP,
    MERGE_OVERWRITE,
    MERGE_VERSIONED,
    CoreConflict,
    CoreContextItem,
    MemoryWriter,
    TurnSummary,
    build_audit_text,
    build_core_memory_text,
    detect_core_conflict,
    extract_markdown_section,
    load_audit_snippets,
    load_core_context,
    parse_merge_strategy,
    resolve_merge_strategy,
    should_persist_core_memory,
)

NOW = datetime(2026, 10, 19, 9, 30)


def _turn(
    request: str = "记住：部署节奏是每周二",
    reply: str = "好的",
    succeeded: bool = True,
    **kwargs,
) -> TurnSummary:  # type: ignore[no-untyped-def]
    return TurnSummary(
        request_id="REQ-1",
        source="cli",
        request=request,
        started_at=NOW,
        reply=reply,
        succeeded=succeeded,
        **kwargs,
    )


def _core_entry(request: str, reply: str) -> str:
    return f"# Core Memory Entry\n\n## Request\n{request}\n\n## Reply\n{reply}\n\n## Tool Plan\n- (none)"


class MergeStrategyTest(unittest.TestCase):
    def test_parse_merge_strategy(self) -> None:
        self.assertEqual(parse_merge_strategy("记住这个 #merge:overwrite"), MERGE_OVERWRITE)
        self.assertEqual(parse_merge_strategy("#MERGE：保留"), MERGE_KEEP)
        self.assertEqual(parse_merge_strategy("#merge: version"), MERGE_VERSIONED)
        self.assertIsNone(parse_merge_strategy("#merge:replace-all"))
        self.assertIsNone(parse_merge_strategy("普通请求"))

    def test_resolve_merge_strategy_defaults_to_versioned(self) -> None:
        conflict = CoreConflict("CORE-1", 0.5, 0.8, 0.2)

        self.assertEqual(resolve_merge_strategy(None, conflict), MERGE_VERSIONED)
        self.assertEqual(resolve_merge_strategy(None, None), MERGE_VERSIONED)
        self.assertEqual(resolve_merge_strategy(MERGE_KEEP, conflict), MERGE_KEEP)

    def test_extract_markdown_section(self) -> None:
        markdown = _core_entry("deploy cadence", "tuesday")

        self.assertEqual(extract_markdown_section("Request", markdown), "deploy cadence")
        self.assertEqual(extract_markdown_section("Reply", markdown), "tuesday")
        self.assertIsNone(extract_markdown_section("Missing", markdown))


class ConflictDetectionTest(unittest.TestCase):
    def test_similar_request_with_divergent_reply_conflicts(self) -> None:
        context = [
            CoreContextItem(
                "CORE-1",
                "assistant-core-2026-10-18.txt",
                _core_entry("remember our deploy cadence is weekly on tuesday", "noted deploy cadence tuesday"),
                "2026-10-18",
            )
        ]

        conflict = detect_core_conflict(
            "remember our deploy cadence is weekly on thursday",
            "updated release schedule to thursday afternoons",
            context,
        )

        self.assertIsNotNone(conflict)
        assert conflict is not None
        self.assertEqual(conflict.record_id, "CORE-1")
        self.assertGreaterEqual(conflict.request_similarity, 0.34)
        self.assertLessEqual(conflict.reply_similarity, 0.62)
        self.assertGreaterEqual(conflict.score, 0.22)

    def test_same_reply_is_not_a_conflict(self) -> None:
        context = [
            CoreContextItem(
                "CORE-1",
                "core.txt",
                _core_entry("remember deploy cadence tuesday", "noted deploy cadence tuesday"),
                "2026-10-18",
            )
        ]

        self.assertIsNone(
            detect_core_conflict("remember deploy cadence tuesday", "noted deploy cadence tuesday", context)
        )

    def test_unrelated_request_is_not_a_conflict(self) -> None:
        context = [CoreContextItem("CORE-1", "core.txt", _core_entry("coffee preference", "latte"), "2026-10-18")]

        self.assertIsNone(detect_core_conflict("deploy cadence thursday", "ok thursday", context))


class PersistencePolicyTest(unittest.TestCase):
    def test_memory_keywords_persist(self) -> None:
        self.assertTrue(should_persist_core_memory(_turn(), None))

    def test_write_actions_persist(self) -> None:
        turn = _turn(request="向 TODAY 追加：喝水", actions=["record.append:ABC:ok"])

        self.assertTrue(should_persist_core_memory(turn, None))

    def test_low_signal_turn_is_skipped(self) -> None:
        turn = _turn(request="搜索 部署", actions=["record.search:部署:2"])

        self.assertFalse(should_persist_core_memory(turn, None))

    def test_failed_or_pending_turns_are_skipped(self) -> None:
        self.assertFalse(should_persist_core_memory(_turn(succeeded=False), None))
        self.assertFalse(should_persist_core_memory(_turn(confirmation_required=True), None))

    def test_explicit_merge_always_persists(self) -> None:
        self.assertTrue(should_persist_core_memory(_turn(request="搜索 部署", succeeded=False), MERGE_KEEP))


class TextRenderingTest(unittest.TestCase):
    def test_core_memory_text_sections(self) -> None:
        turn = _turn(actions=["tag.ensure:Core", "record.create:ABC:ok"], tool_plan=["1. record.create"])

        text = build_core_memory_text(turn, now=NOW)

        self.assertIn("# Core Memory Entry", text)
        self.assertEqual(extract_markdown_section("Request", text), "记住：部署节奏是每周二")
        self.assertEqual(extract_markdown_section("Reply", text), "好的")
        self.assertEqual(extract_markdown_section("Key Actions", text), "- record.create:ABC:ok")
        self.assertIn("conflict_ref: -", text)

    def test_audit_text_marks_failures(self) -> None:
        turn = _turn(actions=["error:boom"])
        turn.finished_at = datetime(2026, 10, 19, 9, 30, 2)

        text = build_audit_text(turn)

        self.assertIn("status: failed", text)
        self.assertIn("duration_ms: 2000", text)
        self.assertEqual(extract_markdown_section("Actions", text), "- error:boom")


class MemoryWriterTest(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.db = KernelDB(str(Path(self.tmp.name) / "memory_test.db"))
        self.writer = MemoryWriter(self.db, clock=lambda: NOW)
        self.core_id, self.audit_id = self.writer.ensure_tags()

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_ensure_tags_is_idempotent(self) -> None:
        self.assertEqual(self.writer.ensure_tags(), (self.core_id, self.audit_id))

    def test_versioned_entries_share_daily_record(self) -> None:
        first_id, first_action = self.writer.write_core_memory(_turn(), self.core_id)
        second_id, _ = self.writer.write_core_memory(_turn(request="记住：咖啡要燕麦奶"), self.core_id)

        self.assertEqual(first_id, second_id)
        self.assertEqual(first_action, f"memory.append:{first_id}")
        record = self.db.get_record(first_id or "")
        assert record is not None
        self.assertEqual(record.filename, "assistant-core-2026-10-19.txt")
        self.assertEqual(record.text.count("# Core Memory Entry"), 2)
        self.assertIn(self.core_id, record.tags)

    def test_keep_writes_nothing(self) -> None:
        turn = _turn(merge_strategy=MERGE_KEEP, conflict=CoreConflict("CORE-1", 0.5, 0.8, 0.2))

        record_id, action = self.writer.write_core_memory(turn, self.core_id)

        self.assertIsNone(record_id)
        self.assertEqual(action, "memory.keep:CORE-1")
        self.assertEqual(self.db.fetch_records(), [])

    def test_overwrite_replaces_conflicting_record(self) -> None:
        old_id = self.db.create_text_record("core-old.txt", "旧的约定", tag_ids=(self.core_id,))
        turn = _turn(merge_strategy=MERGE_OVERWRITE, conflict=CoreConflict(old_id, 0.5, 0.8, 0.2))

        record_id, action = self.writer.write_core_memory(turn, self.core_id)

        self.assertEqual(record_id, old_id)
        self.assertEqual(action, f"memory.overwrite:{old_id}")
        record = self.db.get_record(old_id)
        assert record is not None
        self.assertNotIn("旧的约定", record.text)
        self.assertIn("merge_strategy: overwrite", record.text)

    def test_overwrite_of_missing_record_appends(self) -> None:
        turn = _turn(
            merge_strategy=MERGE_OVERWRITE,
            conflict=CoreConflict("00000000-0000-4000-8000-000000000000", 0.5, 0.8, 0.2),
        )

        record_id, action = self.writer.write_core_memory(turn, self.core_id)

        self.assertEqual(action, f"memory.append:{record_id}")

    def test_audit_write_and_snippets(self) -> None:
        turn = _turn()
        turn.finished_at = NOW

        audit_id = self.writer.write_audit(turn, self.audit_id)

        self.assertIsNotNone(audit_id)
        snippets = load_audit_snippets(self.db, self.audit_id, "今天我做了什么？", today=date(2026, 10, 19))
        self.assertEqual(snippets[0].filename, "assistant-audit-2026-10-19.txt")
        self.assertIn("request_id: REQ-1", snippets[0].snippet)

    def test_core_context_ranks_by_overlap(self) -> None:
        relevant = self.db.create_text_record("deploy.txt", "deploy cadence tuesday", tag_ids=(self.core_id,))
        self.db.create_text_record("coffee.txt", "oat milk latte", tag_ids=(self.core_id,))
        self.db.create_text_record("untagged.txt", "deploy cadence friday")

        context = load_core_context(self.db, self.core_id, "what is our deploy cadence", limit=5)

        self.assertEqual([item.record_id for item in context][0], relevant)
        self.assertEqual(len(context), 2)


if __name__ == "__main__":
    unittest.main()
