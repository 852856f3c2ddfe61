from __future__ import annotations

import unittest
from datetime import date, datetime

from assistant_kernel.extraction import (
    default_create_filename,
    extract_create_content,
    extract_payload,
    extract_record_reference,
    extract_skill_reference,
    extract_task_reference,
    is_placeholder_reference,
    jaccard,
    minimal_clarify_question,
    normalize_create_filename,
    resolve_date_reference,
    should_create_record_intent,
    should_treat_as_question,
    token_set,
)

TODAY = date(2026, 10, 19)
RECORD_ID = "0A1B2C3D-0000-4000-8000-00000000ABCD"


class ReferenceExtractionTest(unittest.TestCase):
    def test_record_reference_prefers_uuid(self) -> None:
        self.assertEqual(extract_record_reference(f"删除记录 {RECORD_ID.lower()} 明天", today=TODAY), RECORD_ID)

    def test_record_reference_symbolic_days(self) -> None:
        self.assertEqual(extract_record_reference("向今天追加：喝水", today=TODAY), "TODAY")
        self.assertEqual(extract_record_reference("明天的计划", today=TODAY), "TOMORROW")
        self.assertEqual(extract_record_reference("后天的计划", today=TODAY), "DAY_AFTER_TOMORROW")
        self.assertEqual(extract_record_reference("看看 2026/11/02 的记录", today=TODAY), "2026-11-02")
        self.assertIsNone(extract_record_reference("随便聊聊", today=TODAY))

    def test_resolve_date_reference_accepts_symbolic_tokens(self) -> None:
        self.assertEqual(resolve_date_reference("TODAY", today=TODAY), TODAY)
        self.assertEqual(resolve_date_reference("TOMORROW", today=TODAY), date(2026, 10, 20))
        self.assertEqual(resolve_date_reference("DAY_AFTER_TOMORROW", today=TODAY), date(2026, 10, 21))
        self.assertEqual(resolve_date_reference("2026-02-30", today=TODAY), None)

    def test_placeholder_references(self) -> None:
        self.assertTrue(is_placeholder_reference("<record_id>"))
        self.assertTrue(is_placeholder_reference("result_of_search"))
        self.assertFalse(is_placeholder_reference(RECORD_ID))
        self.assertFalse(is_placeholder_reference(""))

    def test_task_and_skill_references(self) -> None:
        self.assertEqual(extract_task_reference("运行任务 task:晨报"), "晨报")
        self.assertEqual(extract_task_reference("运行任务 “每周复盘”"), "每周复盘")
        self.assertEqual(extract_skill_reference("运行 skill:daily-standup，输入：今天很顺利"), "daily-standup")
        self.assertEqual(extract_skill_reference("运行技能"), "")


class PayloadExtractionTest(unittest.TestCase):
    def test_payload_prefers_quotes_then_separators(self) -> None:
        self.assertEqual(extract_payload("向 TODAY 追加 “买牛奶”"), "买牛奶")
        self.assertEqual(extract_payload("把 TODAY 改写为:新的全文"), "新的全文")
        self.assertEqual(extract_payload("向 TODAY 追加：喝水"), "喝水")
        self.assertEqual(extract_payload("删除记录"), "")

    def test_create_intent_and_content(self) -> None:
        request = "为明天新建计划：完成周报"

        self.assertTrue(should_create_record_intent(request, today=TODAY))
        self.assertEqual(extract_create_content(request), "完成周报")
        self.assertEqual(default_create_filename(request, today=TODAY), "plan-2026-10-20.txt")
        self.assertFalse(should_create_record_intent("删除明天的计划", today=TODAY))

    def test_default_filename_without_date_uses_timestamp(self) -> None:
        filename = default_create_filename("记录一下：灵感", today=TODAY, now=datetime(2026, 10, 19, 8, 30, 5))

        self.assertEqual(filename, "note-20261019-083005.txt")

    def test_normalize_create_filename(self) -> None:
        self.assertEqual(normalize_create_filename("周报/草稿"), "周报-草稿.txt")
        self.assertEqual(normalize_create_filename("summary.md"), "summary.md")
        self.assertEqual(normalize_create_filename("///"), "note.txt")

    def test_question_detection_ignores_action_requests(self) -> None:
        self.assertTrue(should_treat_as_question("今天我做了什么？"))
        self.assertFalse(should_treat_as_question("删除什么记录？"))


class ClarifyQuestionTest(unittest.TestCase):
    def test_missing_create_content(self) -> None:
        question = minimal_clarify_question("新建", today=TODAY)

        self.assertIsNotNone(question)
        assert question is not None
        self.assertIn("内容", question)

    def test_missing_delete_target(self) -> None:
        question = minimal_clarify_question("删除那条记录", today=TODAY)

        self.assertIsNotNone(question)
        assert question is not None
        self.assertIn("删除", question)

    def test_append_missing_payload_names_reference(self) -> None:
        question = minimal_clarify_question("向 TODAY 追加", today=TODAY)

        self.assertEqual(question, "请提供要追加的内容，例如：向 TODAY 追加：<内容>。")

    def test_complete_requests_need_no_question(self) -> None:
        self.assertIsNone(minimal_clarify_question("向 TODAY 追加：喝水", today=TODAY))
        self.assertIsNone(minimal_clarify_question(f"删除记录 {RECORD_ID}", today=TODAY))
        self.assertIsNone(minimal_clarify_question("搜索 部署", today=TODAY))


class SimilarityTest(unittest.TestCase):
    def test_jaccard(self) -> None:
        self.assertEqual(jaccard(token_set("deploy on tuesday"), token_set("deploy on tuesday")), 1.0)
        self.assertEqual(jaccard(set(), {"a"}), 0.0)
        self.assertAlmostEqual(jaccard({"a", "b"}, {"b", "c"}), 1 / 3)


if __name__ == "__main__":
    unittest.main()
