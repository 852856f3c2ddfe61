from __future__ import annotations

import argparse
import json
import sys
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TextIO

from assistant_kernel.config import AppConfig, load_config
from assistant_kernel.confirmation import SQLiteConfirmationStore
from assistant_kernel.cron import is_valid_expression
from assistant_kernel.db import KernelDB
from assistant_kernel.executor import ToolExecutor
from assistant_kernel.kernel import AssistantKernel, AssistantKernelResult
from assistant_kernel.llm import OpenAICompatibleClient
from assistant_kernel.logging_setup import configure_app_logger, configure_llm_trace_logger
from assistant_kernel.models import (
    CronTrigger,
    HeartbeatTrigger,
    ManualTrigger,
    OnRecordCreateTrigger,
    OnRecordUpdateTrigger,
    RelayInstructionAction,
    ScheduledTask,
    Skill,
    Trigger,
    describe_trigger,
    skill_action_from_dict,
)
from assistant_kernel.planner import Planner
from assistant_kernel.relay import RelayClient
from assistant_kernel.resolver import ReferenceResolver
from assistant_kernel.scheduler import SchedulerService, inline_dispatcher, thread_dispatcher
from assistant_kernel.skills import build_skill_catalog_for_prompt, build_skill_manifest_text
from assistant_kernel.timer import TimerEngine

DEFAULT_CLI_SOURCE = "cli"


@dataclass
class KernelRuntime:
    config: AppConfig
    db: KernelDB
    kernel: AssistantKernel
    scheduler: SchedulerService
    resolver: ReferenceResolver


def build_runtime(config: AppConfig, *, background: bool = False) -> KernelRuntime:
    """Wire every collaborator from config; ``background`` runs triggered tasks on threads."""
    app_logger = configure_app_logger(config.app_log_path, config.app_log_retention_days)
    trace_logger = configure_llm_trace_logger(config.llm_trace_log_path, config.app_log_retention_days)
    db = KernelDB(config.db_path)

    llm_client = None
    if config.provider_api_keys:
        llm_client = OpenAICompatibleClient(
            api_keys=dict(config.provider_api_keys),
            base_urls=dict(config.provider_base_urls),
            timeout=float(config.llm_timeout_seconds),
            trace_logger=trace_logger,
        )
    relay_client = None
    if config.relay_endpoint:
        relay_client = RelayClient(
            config.relay_endpoint,
            api_key=config.relay_api_key,
            timeout=float(config.relay_timeout_seconds),
            logger=app_logger,
        )

    scheduler = SchedulerService(
        db,
        relay_client=relay_client,
        relay_enabled=config.relay_enabled,
        dispatcher=thread_dispatcher if background else inline_dispatcher,
        cron_scan_limit=config.cron_scan_limit,
        logger=app_logger,
    )
    resolver = ReferenceResolver(db)
    planner = Planner(
        llm_client,
        model_id=config.model_id,
        skill_catalog_provider=lambda: build_skill_catalog_for_prompt(db.list_skills()),
        logger=app_logger,
    )
    executor = ToolExecutor(
        db,
        resolver,
        llm_client,
        model_id=config.model_id,
        relay_client=relay_client if config.relay_enabled else None,
        task_runner=scheduler.run_task,
        event_listener=scheduler,
        logger=app_logger,
    )
    kernel = AssistantKernel(
        db,
        planner,
        executor,
        SQLiteConfirmationStore(db, ttl_seconds=config.confirmation_ttl_seconds, logger=app_logger),
        resolver=resolver,
        core_context_limit=config.core_context_limit,
        logger=app_logger,
    )
    return KernelRuntime(config=config, db=db, kernel=kernel, scheduler=scheduler, resolver=resolver)


def parse_trigger_spec(raw: str) -> Trigger:
    """Parse ``manual``, ``heartbeat:15``, ``cron:0 9 * * 1-5`` or ``on_record_create[:tag,tag]``."""
    kind, _, argument = raw.strip().partition(":")
    kind = kind.strip().lower()
    argument = argument.strip()
    if kind == "manual":
        return ManualTrigger()
    if kind == "heartbeat":
        try:
            minutes = int(argument)
        except ValueError as exc:
            raise ValueError(f"heartbeat 需要分钟数：{raw}") from exc
        return HeartbeatTrigger(interval_minutes=max(1, minutes))
    if kind == "cron":
        if not is_valid_expression(argument):
            raise ValueError(f"cron 表达式无效：{argument or '-'}")
        return CronTrigger(expression=argument)
    if kind in ("on_record_create", "on_record_update"):
        tags = tuple(item.strip() for item in argument.split(",") if item.strip())
        if kind == "on_record_create":
            return OnRecordCreateTrigger(tag_filter=tags)
        return OnRecordUpdateTrigger(tag_filter=tags)
    raise ValueError(f"未知触发器：{raw}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="assistant-kernel", description="自然语言任务编排内核")
    commands = parser.add_subparsers(dest="command", required=True)

    ask = commands.add_parser("ask", help="处理一条自然语言请求")
    ask.add_argument("text", nargs="+")
    ask.add_argument("--source", default=DEFAULT_CLI_SOURCE)
    ask.add_argument("--json", action="store_true")

    confirm = commands.add_parser("confirm", help="使用确认令牌执行高风险动作")
    confirm.add_argument("token")
    confirm.add_argument("--source", default=DEFAULT_CLI_SOURCE)
    confirm.add_argument("--json", action="store_true")

    chat = commands.add_parser("chat", help="交互式对话")
    chat.add_argument("--source", default=DEFAULT_CLI_SOURCE)

    commands.add_parser("scheduler", help="在前台运行调度循环")

    task = commands.add_parser("task", help="计划任务管理")
    task_commands = task.add_subparsers(dest="task_command", required=True)
    task_add = task_commands.add_parser("add")
    task_add.add_argument("--name", required=True)
    task_add.add_argument("--trigger", default="manual")
    task_add.add_argument("--instruction", default="")
    task_add.add_argument("--description", default="")
    task_add.add_argument("--context-record", default=None)
    task_add.add_argument("--include-core-memory", action="store_true")
    task_add.add_argument("--include-skill-manifest", action="store_true")
    task_add.add_argument("--disabled", action="store_true")
    task_list = task_commands.add_parser("list")
    task_list.add_argument("--json", action="store_true")
    task_logs = task_commands.add_parser("logs")
    task_logs.add_argument("task_ref", nargs="?")
    task_logs.add_argument("--limit", type=int, default=20)
    task_run = task_commands.add_parser("run")
    task_run.add_argument("task_ref")

    skills = commands.add_parser("skills", help="技能管理")
    skill_commands = skills.add_subparsers(dest="skills_command", required=True)
    skill_commands.add_parser("catalog")
    skill_add = skill_commands.add_parser("add")
    skill_add.add_argument("--name", required=True)
    skill_add.add_argument("--action", required=True, help='JSON，例如 {"kind": "create_record", ...}')
    skill_add.add_argument("--description", default="")
    skill_add.add_argument("--trigger-hint", default="")
    return parser


def render_result(result: AssistantKernelResult, *, as_json: bool, stream: TextIO) -> None:
    if as_json:
        stream.write(json.dumps(result.to_dict(), ensure_ascii=False, indent=2) + "\n")
    else:
        stream.write(f"{result.reply}\n")
    stream.flush()


def run_chat(runtime: KernelRuntime, *, source: str, stream: TextIO = sys.stdout) -> None:
    stream.write("个人助理内核已启动。输入 help 查看能力，输入 exit 退出。\n")
    stream.flush()
    while True:
        try:
            raw = input("你> ").strip()
        except (EOFError, KeyboardInterrupt):
            stream.write("\n已退出。\n")
            break
        if not raw:
            continue
        if raw.lower() in {"exit", "quit"}:
            stream.write("已退出。\n")
            break
        try:
            result = runtime.kernel.handle(raw, source=source)
        except Exception as exc:  # noqa: BLE001
            stream.write(f"助手> 处理失败: {exc}\n")
            continue
        stream.write(f"助手> {result.reply}\n")
        stream.flush()


def _run_scheduler(runtime: KernelRuntime, stream: TextIO) -> int:
    if not runtime.config.scheduler_enabled:
        stream.write("SCHEDULER_ENABLED=false，调度器未启动。\n")
        return 1
    engine = TimerEngine(
        scheduler=runtime.scheduler,
        poll_interval_seconds=runtime.config.scheduler_poll_interval_seconds,
    )
    engine.start()
    stream.write("调度器已启动，按 Ctrl+C 退出。\n")
    stream.flush()
    try:
        engine.wait()
    except KeyboardInterrupt:
        stream.write("\n已退出。\n")
    finally:
        engine.stop()
    return 0


def _handle_task_command(runtime: KernelRuntime, args: argparse.Namespace, stream: TextIO) -> int:
    db = runtime.db
    if args.task_command == "add":
        trigger = parse_trigger_spec(args.trigger)
        task = ScheduledTask(
            id=str(uuid.uuid4()).upper(),
            name=args.name.strip(),
            trigger=trigger,
            action=RelayInstructionAction(
                template=args.instruction,
                context_record_ref=args.context_record,
                include_core_memory=args.include_core_memory,
                include_skill_manifest=args.include_skill_manifest,
            ),
            description=args.description,
            is_enabled=not args.disabled,
        )
        db.save_task(task)
        stream.write(f"已创建任务：{task.name}（{task.id}） trigger={describe_trigger(trigger)}\n")
        return 0

    if args.task_command == "list":
        tasks = db.list_tasks()
        if args.json:
            rows = [
                {
                    "id": task.id,
                    "name": task.name,
                    "trigger": describe_trigger(task.trigger),
                    "enabled": task.is_enabled,
                    "last_run_at": task.last_run_at.isoformat() if task.last_run_at else None,
                    "next_run_at": task.next_run_at.isoformat() if task.next_run_at else None,
                }
                for task in tasks
            ]
            stream.write(json.dumps(rows, ensure_ascii=False, indent=2) + "\n")
            return 0
        if not tasks:
            stream.write("暂无任务。\n")
            return 0
        for task in tasks:
            next_run = task.next_run_at.isoformat(sep=" ", timespec="minutes") if task.next_run_at else "-"
            state = "on" if task.is_enabled else "off"
            stream.write(f"- [{task.id}] {task.name} ({describe_trigger(task.trigger)}, {state}) next={next_run}\n")
        return 0

    if args.task_command == "logs":
        task_id = runtime.resolver.resolve_task(args.task_ref).id if args.task_ref else None
        logs = db.list_run_logs(task_id, limit=args.limit)
        if not logs:
            stream.write("暂无运行记录。\n")
            return 0
        for log in logs:
            detail = log.error or log.output
            stream.write(f"- {log.started_at.isoformat(sep=' ', timespec='seconds')} [{log.status}] {log.task_id}: {detail}\n")
        return 0

    task = runtime.resolver.resolve_task(args.task_ref)
    log = runtime.scheduler.run_task(task, "manual")
    stream.write(f"[{log.status}] {task.name}（{task.id}）: {log.error or log.output}\n")
    return 0 if log.error is None else 1


def _handle_skills_command(runtime: KernelRuntime, args: argparse.Namespace, stream: TextIO) -> int:
    if args.skills_command == "catalog":
        stream.write(build_skill_manifest_text(runtime.db.list_skills()) + "\n")
        return 0
    action = skill_action_from_dict(json.loads(args.action))
    skill = Skill(
        id=str(uuid.uuid4()).upper(),
        name=args.name.strip(),
        action=action,
        description=args.description,
        trigger_hint=args.trigger_hint,
    )
    runtime.db.save_skill(skill)
    stream.write(f"已登记技能：{skill.name}（{skill.id}）\n")
    return 0


def main(argv: Sequence[str] | None = None, *, stream: TextIO = sys.stdout) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config()
    runtime = build_runtime(config, background=args.command in {"chat", "scheduler"})

    try:
        if args.command == "ask":
            result = runtime.kernel.handle(" ".join(args.text), source=args.source)
            render_result(result, as_json=args.json, stream=stream)
            return 0 if result.succeeded else 1
        if args.command == "confirm":
            result = runtime.kernel.handle(f"#CONFIRM:{args.token.strip()}", source=args.source)
            render_result(result, as_json=args.json, stream=stream)
            return 0 if result.succeeded else 1
        if args.command == "chat":
            run_chat(runtime, source=args.source, stream=stream)
            return 0
        if args.command == "scheduler":
            return _run_scheduler(runtime, stream)
        if args.command == "task":
            return _handle_task_command(runtime, args, stream)
        return _handle_skills_command(runtime, args, stream)
    except (ValueError, LookupError, RuntimeError) as exc:
        stream.write(f"错误：{exc}\n")
        return 2


if __name__ == "__main__":
    sys.exit(main())
