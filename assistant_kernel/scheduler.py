from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Callable

from assistant_kernel.cron import CRON_SCAN_LIMIT, next_date, next_heartbeat
from assistant_kernel.db import ContentTypeMismatchError, KernelDB, ReferenceNotFoundError
from assistant_kernel.extraction import clip
from assistant_kernel.logging_setup import component_logger
from assistant_kernel.memory import CORE_TAG_ALIASES, CORE_TAG_NAME
from assistant_kernel.models import (
    RUN_STATUS_FAILED,
    RUN_STATUS_RUNNING,
    RUN_STATUS_SUCCESS,
    CronTrigger,
    HeartbeatTrigger,
    OnRecordCreateTrigger,
    OnRecordUpdateTrigger,
    Record,
    RecordFilter,
    RunLog,
    ScheduledTask,
    Trigger,
    describe_trigger,
)
from assistant_kernel.relay import RelayClient, RelayError
from assistant_kernel.skills import build_skill_manifest_text
from assistant_kernel.tools import tool_catalog_payload

EVENT_RECORD_REFERENCE = "EVENT_RECORD"
JOB_MODE = "scheduled_job"
JOB_TYPE = "relay.task"
RELAY_CORE_CONTEXT_LIMIT = 8
EVENT_TEXT_MAX_BYTES = 20_000
INSTRUCTION_RECORD_MAX_BYTES = 60_000

TRIGGER_REASON_TICK = "scheduler.tick"
TRIGGER_REASON_MANUAL = "manual"
TRIGGER_REASON_RECORD_CREATE = "record.create"
TRIGGER_REASON_RECORD_UPDATE = "record.update"

Dispatcher = Callable[[Callable[[], None]], None]


class SchedulerError(RuntimeError):
    """Raised when a task cannot be composed or handed to the relay."""


def thread_dispatcher(work: Callable[[], None]) -> None:
    threading.Thread(target=work, name="assistant-task-run", daemon=True).start()


def inline_dispatcher(work: Callable[[], None]) -> None:
    work()


class SchedulerService:
    """Find due tasks, run them through the relay and keep their schedule current.

    ``tick_once`` never runs a task itself; every run goes through the
    dispatcher so a slow relay never delays the next tick.
    """

    def __init__(
        self,
        db: KernelDB,
        *,
        relay_client: RelayClient | None = None,
        relay_enabled: bool = True,
        dispatcher: Dispatcher | None = None,
        cron_scan_limit: int = CRON_SCAN_LIMIT,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._db = db
        self._relay_client = relay_client
        self._relay_enabled = relay_enabled
        self._dispatcher = dispatcher or thread_dispatcher
        self._cron_scan_limit = cron_scan_limit
        self._clock = clock or datetime.now
        self._logger = component_logger("scheduler", logger)
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()

    def tick_once(self) -> list[str]:
        """Seed unscheduled recurring tasks and dispatch every due one; returns dispatched ids."""
        now = self._clock()
        dispatched: list[str] = []
        seeded = 0
        for task in self._db.list_tasks(enabled_only=True):
            if task.next_run_at is None:
                next_run_at = self.compute_next_run(task.trigger, now)
                if next_run_at is not None:
                    self._db.set_task_next_run(task.id, next_run_at)
                    seeded += 1
                continue
            if task.next_run_at <= now and self._dispatch(task, TRIGGER_REASON_TICK):
                dispatched.append(task.id)
        if dispatched or seeded:
            self._logger.info(
                "scheduler tick",
                extra={"event": "scheduler_tick", "context": {"dispatched": dispatched, "seeded": seeded}},
            )
        return dispatched

    def on_record_created(self, record: Record) -> list[str]:
        return self._fire_record_event(OnRecordCreateTrigger, record, TRIGGER_REASON_RECORD_CREATE)

    def on_record_updated(self, record: Record) -> list[str]:
        return self._fire_record_event(OnRecordUpdateTrigger, record, TRIGGER_REASON_RECORD_UPDATE)

    def run_task(
        self,
        task: ScheduledTask,
        trigger_reason: str = TRIGGER_REASON_MANUAL,
        event_record: Record | None = None,
    ) -> RunLog:
        log = RunLog(
            id=str(uuid.uuid4()).upper(),
            task_id=task.id,
            started_at=self._clock(),
            status=RUN_STATUS_RUNNING,
        )
        self._db.insert_run_log(log)
        self._logger.info(
            "task run started",
            extra={
                "event": "task_run_started",
                "context": {"task_id": task.id, "run_id": log.id, "trigger_reason": trigger_reason},
            },
        )

        try:
            log.output = self._relay_task(task, trigger_reason, event_record)
            log.status = RUN_STATUS_SUCCESS
        except (SchedulerError, RelayError) as exc:
            log.status = RUN_STATUS_FAILED
            log.error = str(exc)
        except Exception as exc:  # noqa: BLE001
            self._logger.exception(
                "task run crashed",
                extra={"event": "task_run_crashed", "context": {"task_id": task.id, "run_id": log.id}},
            )
            log.status = RUN_STATUS_FAILED
            log.error = str(exc) or exc.__class__.__name__

        log.finished_at = self._clock()
        self._db.update_run_log(log)
        self._db.update_task_schedule(
            task.id,
            last_run_at=log.finished_at,
            next_run_at=self.compute_next_run(task.trigger, log.finished_at),
        )
        self._logger.info(
            "task run finished",
            extra={
                "event": "task_run_finished",
                "context": {"task_id": task.id, "run_id": log.id, "status": log.status, "error": log.error},
            },
        )
        return log

    def compute_next_run(self, trigger: Trigger, after: datetime) -> datetime | None:
        if isinstance(trigger, CronTrigger):
            return next_date(trigger.expression, after, max_iterations=self._cron_scan_limit)
        if isinstance(trigger, HeartbeatTrigger):
            return next_heartbeat(trigger.interval_minutes, after)
        return None

    def render_instruction_template(
        self,
        template: str,
        task: ScheduledTask,
        event_record: Record | None = None,
    ) -> str:
        now = self._clock()
        event_text = ""
        if event_record is not None and event_record.is_text_like:
            event_text = self._db.load_text(event_record.id, EVENT_TEXT_MAX_BYTES)
        replacements = {
            "{{task_name}}": task.name,
            "{{task_description}}": task.description,
            "{{date}}": now.strftime("%Y-%m-%d"),
            "{{timestamp}}": now.strftime("%Y%m%d-%H%M%S"),
            "{{record_id}}": event_record.id if event_record else "",
            "{{record_filename}}": event_record.filename if event_record else "",
            "{{record_preview}}": event_record.preview if event_record else "",
            "{{record_text}}": event_text,
        }
        output = template
        for key, value in replacements.items():
            output = output.replace(key, value)
        if not output.strip():
            return "\n".join(
                [
                    f"任务名称：{task.name}",
                    f"任务说明：{task.description or '-'}",
                    f"触发来源：{describe_trigger(task.trigger)}",
                ]
            )
        return output

    def build_job_payload(
        self,
        task: ScheduledTask,
        trigger_reason: str,
        event_record: Record | None = None,
    ) -> dict[str, Any]:
        action = task.action
        instruction = self.render_instruction_template(action.template, task, event_record)
        appended = self._instruction_from_record(action.context_record_ref, event_record)
        if appended:
            instruction = f"{instruction}\n\n{appended}" if instruction.strip() else appended
        instruction = instruction.strip()
        if not instruction:
            raise SchedulerError("job instruction is empty")

        now = self._clock()
        trigger_text = describe_trigger(task.trigger)
        payload: dict[str, Any] = {
            "request_id": str(uuid.uuid4()).upper(),
            "mode": JOB_MODE,
            "job_type": JOB_TYPE,
            "task": {
                "id": task.id,
                "name": task.name,
                "description": task.description,
                "enabled": task.is_enabled,
                "trigger": trigger_text,
            },
            "trigger": {"kind": trigger_reason, "fired_at": now.isoformat(), "task_trigger": trigger_text},
            "instruction": instruction,
            "interfaces": tool_catalog_payload(),
            "core_context": self._core_context() if action.include_core_memory else [],
        }
        if action.include_skill_manifest:
            payload["skills_manifest"] = build_skill_manifest_text(self._db.list_skills(), now=now)
        if event_record is not None:
            payload["event_record"] = {
                "record_id": event_record.id,
                "filename": event_record.filename,
                "preview": clip(event_record.preview, 260),
                "updated_at": event_record.updated_at,
                "tags": list(event_record.tags),
            }
        return payload

    def _relay_task(self, task: ScheduledTask, trigger_reason: str, event_record: Record | None) -> str:
        if not self._relay_enabled:
            raise SchedulerError("relay is disabled")
        if self._relay_client is None or not self._relay_client.endpoint:
            raise SchedulerError("relay endpoint is not configured")
        payload = self.build_job_payload(task, trigger_reason, event_record)
        body = self._relay_client.post(payload)
        return f"Job 已投递。响应：{clip(body.strip() or 'ok', 260)}"

    def _instruction_from_record(self, reference: str | None, event_record: Record | None) -> str | None:
        ref = (reference or "").strip()
        if not ref:
            return None
        if ref.upper() == EVENT_RECORD_REFERENCE:
            if event_record is None:
                return None
            return self._load_instruction_text(event_record.id)

        record = self._db.get_record(ref)
        if record is None:
            candidates = self._db.search_records(ref, limit=20)
            record = next((item for item in candidates if item.filename == ref), None)
            if record is None and candidates:
                record = candidates[0]
        if record is None:
            raise SchedulerError(f"record not found: {ref}")
        return self._load_instruction_text(record.id)

    def _load_instruction_text(self, record_id: str) -> str:
        try:
            return self._db.load_text(record_id, INSTRUCTION_RECORD_MAX_BYTES)
        except ReferenceNotFoundError as exc:
            raise SchedulerError(f"record not found: {record_id}") from exc
        except ContentTypeMismatchError as exc:
            raise SchedulerError(f"record is not text-like: {record_id}") from exc

    def _core_context(self) -> list[dict[str, str]]:
        tag = self._db.find_tag(CORE_TAG_NAME, CORE_TAG_ALIASES)
        if tag is None:
            return []
        records = self._db.fetch_records(
            RecordFilter(tag_ids=(tag.id,), show_archived=True, limit=RELAY_CORE_CONTEXT_LIMIT)
        )
        return [
            {
                "record_id": record.id,
                "filename": record.filename,
                "snippet": clip(record.text, 400) if record.is_text_like and record.text else clip(record.preview, 220),
                "updated_at": record.updated_at,
            }
            for record in records
        ]

    def _fire_record_event(self, trigger_type: type, record: Record, reason: str) -> list[str]:
        dispatched: list[str] = []
        tag_names: dict[str, str] | None = None
        for task in self._db.list_tasks(enabled_only=True):
            trigger = task.trigger
            if not isinstance(trigger, trigger_type):
                continue
            if trigger.tag_filter:
                if tag_names is None:
                    tag_names = {tag.id: tag.name.strip().lower() for tag in self._db.list_tags()}
                if not _tag_filter_matches(trigger.tag_filter, record, tag_names):
                    continue
            if self._dispatch(task, reason, record):
                dispatched.append(task.id)
        return dispatched

    def _dispatch(self, task: ScheduledTask, reason: str, event_record: Record | None = None) -> bool:
        with self._in_flight_lock:
            if task.id in self._in_flight:
                return False
            self._in_flight.add(task.id)

        def work() -> None:
            try:
                self.run_task(task, reason, event_record)
            finally:
                with self._in_flight_lock:
                    self._in_flight.discard(task.id)

        try:
            self._dispatcher(work)
        except Exception:
            with self._in_flight_lock:
                self._in_flight.discard(task.id)
            raise
        return True


def _tag_filter_matches(tag_filter: tuple[str, ...], record: Record, tag_names: dict[str, str]) -> bool:
    wanted = {item.strip().lower() for item in tag_filter}
    for tag_id in record.tags:
        if tag_id.lower() in wanted or tag_names.get(tag_id, "") in wanted:
            return True
    return False
