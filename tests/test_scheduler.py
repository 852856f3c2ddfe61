from __future__ import annotations

import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path

from assistant_kernel.db import KernelDB
from assistant_kernel.models import (
    RUN_STATUS_FAILED,
    RUN_STATUS_RUNNING,
    RUN_STATUS_SUCCESS,
    CronTrigger,
    HeartbeatTrigger,
    ManualTrigger,
    OnRecordCreateTrigger,
    OnRecordUpdateTrigger,
    RelayInstructionAction,
    ScheduledTask,
)
from assistant_kernel.relay import RelayError
from assistant_kernel.scheduler import JOB_MODE, JOB_TYPE, SchedulerError, SchedulerService, inline_dispatcher

NOW = datetime(2026, 10, 19, 9, 0)


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


class _FakeRelay:
    endpoint = "https://runtime.example.com/jobs"

    def __init__(self, on_post=None, error: Exception | None = None) -> None:  # type: ignore[no-untyped-def]
        self.on_post = on_post
        self.error = error
        self.payloads: list[dict] = []

    def post(self, payload: dict) -> str:
        self.payloads.append(payload)
        if self.on_post is not None:
            self.on_post(payload)
        if self.error is not None:
            raise self.error
        return '{"accepted": true}'


def _task(task_id: str, trigger, template: str = "整理 {{date}} 的记录", **kwargs) -> ScheduledTask:  # type: ignore[no-untyped-def]
    return ScheduledTask(
        id=task_id,
        name=kwargs.pop("name", task_id.lower()),
        trigger=trigger,
        action=RelayInstructionAction(template=template, **kwargs),
    )


class SchedulerServiceTest(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.db = KernelDB(str(Path(self.tmp.name) / "scheduler_test.db"))
        self.clock = _Clock(NOW)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _service(self, relay=None, **kwargs) -> SchedulerService:  # type: ignore[no-untyped-def]
        return SchedulerService(
            self.db,
            relay_client=relay,
            dispatcher=inline_dispatcher,
            clock=self.clock,
            **kwargs,
        )

    def test_heartbeat_is_rescheduled_from_finish_time(self) -> None:
        def slow_post(payload: dict) -> None:
            self.clock.now += timedelta(minutes=2)

        task = _task("TASK-HB", HeartbeatTrigger(15))
        self.db.save_task(task)

        log = self._service(_FakeRelay(on_post=slow_post)).run_task(task)

        self.assertEqual(log.status, RUN_STATUS_SUCCESS)
        self.assertEqual(log.finished_at, NOW + timedelta(minutes=2))
        stored = self.db.get_task("TASK-HB")
        assert stored is not None
        self.assertEqual(stored.last_run_at, NOW + timedelta(minutes=2))
        self.assertEqual(stored.next_run_at, NOW + timedelta(minutes=17))

    def test_running_log_is_written_before_relay(self) -> None:
        seen: list[str] = []

        def inspect(payload: dict) -> None:
            seen.extend(log.status for log in self.db.list_run_logs("TASK-1"))

        task = _task("TASK-1", ManualTrigger())
        self.db.save_task(task)

        self._service(_FakeRelay(on_post=inspect)).run_task(task)

        self.assertEqual(seen, [RUN_STATUS_RUNNING])
        logs = self.db.list_run_logs("TASK-1")
        self.assertEqual([log.status for log in logs], [RUN_STATUS_SUCCESS])
        self.assertIn("Job 已投递", logs[0].output)

    def test_relay_failure_marks_run_failed_and_still_reschedules(self) -> None:
        task = _task("TASK-CRON", CronTrigger("0 8 * * *"))
        self.db.save_task(task)

        log = self._service(_FakeRelay(error=RelayError("relay returned HTTP 502"))).run_task(task)

        self.assertEqual(log.status, RUN_STATUS_FAILED)
        self.assertEqual(log.error, "relay returned HTTP 502")
        stored = self.db.get_task("TASK-CRON")
        assert stored is not None
        self.assertEqual(stored.next_run_at, datetime(2026, 10, 20, 8, 0))

    def test_disabled_relay_fails_without_posting(self) -> None:
        relay = _FakeRelay()
        task = _task("TASK-1", ManualTrigger())
        self.db.save_task(task)

        log = self._service(relay, relay_enabled=False).run_task(task)

        self.assertEqual(log.status, RUN_STATUS_FAILED)
        self.assertEqual(log.error, "relay is disabled")
        self.assertEqual(relay.payloads, [])

    def test_missing_endpoint_fails(self) -> None:
        task = _task("TASK-1", ManualTrigger())
        self.db.save_task(task)

        log = self._service(None).run_task(task)

        self.assertEqual(log.error, "relay endpoint is not configured")

    def test_tick_seeds_then_dispatches_due_tasks(self) -> None:
        relay = _FakeRelay()
        service = self._service(relay)
        self.db.save_task(_task("TASK-HB", HeartbeatTrigger(30)))
        self.db.save_task(_task("TASK-MANUAL", ManualTrigger()))

        self.assertEqual(service.tick_once(), [])
        seeded = self.db.get_task("TASK-HB")
        assert seeded is not None
        self.assertEqual(seeded.next_run_at, NOW + timedelta(minutes=30))
        self.assertIsNone(self.db.get_task("TASK-MANUAL").next_run_at)  # type: ignore[union-attr]

        self.clock.now = NOW + timedelta(minutes=31)
        self.assertEqual(service.tick_once(), ["TASK-HB"])
        self.assertEqual(relay.payloads[0]["trigger"]["kind"], "scheduler.tick")
        self.assertEqual(service.tick_once(), [])

    def test_disabled_tasks_are_not_dispatched(self) -> None:
        task = ScheduledTask(
            id="TASK-OFF",
            name="off",
            trigger=HeartbeatTrigger(5),
            action=RelayInstructionAction(template="x"),
            is_enabled=False,
            next_run_at=NOW - timedelta(minutes=1),
        )
        self.db.save_task(task)

        self.assertEqual(self._service(_FakeRelay()).tick_once(), [])

    def test_in_flight_task_is_not_dispatched_twice(self) -> None:
        queued = []
        service = SchedulerService(self.db, relay_client=_FakeRelay(), dispatcher=queued.append, clock=self.clock)
        self.db.save_task(
            ScheduledTask(
                id="TASK-HB",
                name="hb",
                trigger=HeartbeatTrigger(5),
                action=RelayInstructionAction(template="x"),
                next_run_at=NOW - timedelta(minutes=1),
            )
        )

        self.assertEqual(service.tick_once(), ["TASK-HB"])
        self.assertEqual(service.tick_once(), [])

        queued[0]()
        self.clock.now = NOW + timedelta(minutes=10)
        self.assertEqual(service.tick_once(), ["TASK-HB"])

    def test_record_events_respect_tag_filter(self) -> None:
        relay = _FakeRelay()
        service = self._service(relay)
        meeting = self.db.create_tag("Meeting")
        self.db.save_task(_task("TASK-ANY", OnRecordCreateTrigger()))
        self.db.save_task(_task("TASK-MEET", OnRecordCreateTrigger(("meeting",))))
        self.db.save_task(_task("TASK-UPD", OnRecordUpdateTrigger()))

        plain_id = self.db.create_text_record("note.txt", "随手记")
        tagged_id = self.db.create_text_record("standup.txt", "站会", tag_ids=(meeting.id,))

        self.assertEqual(service.on_record_created(self.db.get_record(plain_id)), ["TASK-ANY"])  # type: ignore[arg-type]
        self.assertEqual(
            service.on_record_created(self.db.get_record(tagged_id)),  # type: ignore[arg-type]
            ["TASK-ANY", "TASK-MEET"],
        )
        self.assertEqual(service.on_record_updated(self.db.get_record(plain_id)), ["TASK-UPD"])  # type: ignore[arg-type]
        self.assertEqual(relay.payloads[-1]["trigger"]["kind"], "record.update")
        self.assertEqual(relay.payloads[-1]["event_record"]["record_id"], plain_id)

    def test_compute_next_run(self) -> None:
        service = self._service()

        self.assertIsNone(service.compute_next_run(ManualTrigger(), NOW))
        self.assertIsNone(service.compute_next_run(OnRecordCreateTrigger(), NOW))
        self.assertEqual(service.compute_next_run(CronTrigger("*/15 * * * *"), NOW), datetime(2026, 10, 19, 9, 15))


class JobPayloadTest(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.db = KernelDB(str(Path(self.tmp.name) / "payload_test.db"))
        self.service = SchedulerService(self.db, dispatcher=inline_dispatcher, clock=lambda: NOW)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_template_placeholders(self) -> None:
        record_id = self.db.create_text_record("standup.txt", "今天完成了接口联调")
        record = self.db.get_record(record_id)
        task = _task("TASK-1", ManualTrigger(), name="站会整理")

        rendered = self.service.render_instruction_template(
            "{{task_name}} {{date}} {{record_filename}}\n{{record_text}}", task, record
        )

        self.assertEqual(rendered, "站会整理 2026-10-19 standup.txt\n今天完成了接口联调")

    def test_empty_template_falls_back_to_task_summary(self) -> None:
        task = _task("TASK-1", HeartbeatTrigger(10), template="  ", name="巡检")

        rendered = self.service.render_instruction_template("  ", task)

        self.assertIn("任务名称：巡检", rendered)
        self.assertIn("触发来源：heartbeat/10m", rendered)

    def test_payload_shape(self) -> None:
        core = self.db.create_tag("Core")
        self.db.create_text_record("assistant-core-2026-10-19.txt", "部署节奏：每周二", tag_ids=(core.id,))
        task = _task("TASK-1", CronTrigger("0 8 * * *"), include_core_memory=True, include_skill_manifest=True)

        payload = self.service.build_job_payload(task, "manual")

        self.assertEqual(payload["mode"], JOB_MODE)
        self.assertEqual(payload["job_type"], JOB_TYPE)
        self.assertEqual(payload["instruction"], "整理 2026-10-19 的记录")
        self.assertEqual(payload["task"]["trigger"], "cron/0 8 * * *")
        self.assertEqual(payload["trigger"]["fired_at"], "2026-10-19T09:00:00")
        self.assertEqual(payload["core_context"][0]["snippet"], "部署节奏：每周二")
        self.assertIn("# Assistant Skill Manifest", payload["skills_manifest"])
        self.assertIn("record.delete", [item["name"] for item in payload["interfaces"]])
        self.assertNotIn("event_record", payload)

    def test_event_record_instruction_is_appended(self) -> None:
        record_id = self.db.create_text_record("brief.txt", "请总结这份材料")
        record = self.db.get_record(record_id)
        task = _task("TASK-1", OnRecordCreateTrigger(), template="处理新记录", context_record_ref="EVENT_RECORD")

        payload = self.service.build_job_payload(task, "record.create", record)

        self.assertEqual(payload["instruction"], "处理新记录\n\n请总结这份材料")
        self.assertEqual(payload["event_record"]["filename"], "brief.txt")

    def test_missing_context_record_raises(self) -> None:
        task = _task("TASK-1", ManualTrigger(), context_record_ref="missing.txt")

        with self.assertRaises(SchedulerError):
            self.service.build_job_payload(task, "manual")


if __name__ == "__main__":
    unittest.main()
