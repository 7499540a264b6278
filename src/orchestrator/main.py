"""
Service wiring and command-line entry point for the par2protect engine.
"""

from __future__ import annotations

import argparse
import functools
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from config import AppConfig, ensure_directories
from database import DatabaseManager
from metadata import MetadataManager
from operations import ProtectionService, RemovalService, VerificationService
from orchestrator.processor import QueueProcessor
from orchestrator.queue import QueueService, spawn_processor
from orchestrator.schedule import enqueue_scheduled_verifications
from par2 import CommandBuilder, CommandRunner
from par2.models import PROTECT, REMOVE, REPAIR, VERIFY
from utils import ResourceMonitor, setup_logging
from utils.errors import Par2ProtectError
from utils.instance_guard import InstanceLockError, PidFileElection, acquire_instance_lock


@dataclass
class Services:
    """Every long-lived object of one process, built once from configuration."""

    config: AppConfig
    loggers: Dict[str, logging.Logger]
    db_manager: DatabaseManager
    election: PidFileElection
    resource_monitor: ResourceMonitor
    builder: CommandBuilder
    runner: CommandRunner
    metadata: MetadataManager
    protection: ProtectionService
    verification: VerificationService
    removal: RemovalService
    queue: QueueService

    @property
    def logger(self) -> logging.Logger:
        return self.loggers["main"]

    def processor(self) -> QueueProcessor:
        config = self.config
        return QueueProcessor(
            self.db_manager,
            self.election,
            handlers={
                PROTECT: self.protection.protect,
                VERIFY: self.verification.verify,
                REPAIR: self.verification.repair,
                REMOVE: self.removal.remove,
            },
            resource_monitor=self.resource_monitor,
            max_concurrent=config.get_int("queue", "max_concurrent_operations"),
            max_execution_time=config.get_float("queue", "max_execution_time"),
            stuck_timeout_seconds=config.get_int("queue", "stuck_timeout_seconds"),
            poll_interval_seconds=config.get_float("queue", "poll_interval_seconds"),
            logger=self.logger,
            performance_logger=self.loggers["performance"],
        )

    def close(self) -> None:
        self.db_manager.close()


def build_resource_monitor(config: AppConfig, logger: Optional[logging.Logger] = None) -> ResourceMonitor:
    interval = config.get_float("resource_limits", "sample_interval_seconds")
    return ResourceMonitor(
        max_cpu_percent=config.get_float("resource_limits", "max_cpu_percent"),
        max_memory_percent=config.get_float("resource_limits", "max_memory_percent"),
        max_io_percent=config.get_float("resource_limits", "max_io_percent"),
        io_reference_mbps=config.get_float("resource_limits", "io_reference_mbps"),
        sample_intervals={"cpu": interval, "memory": interval * 2, "io": interval},
        adaptive=config.get_bool("resource_limits", "adaptive"),
        adaptive_interval_seconds=config.get_float("resource_limits", "adaptive_interval_seconds"),
        logger=logger,
    )


def build_services(config: AppConfig, launcher=None) -> Services:
    """Construct and connect every service explicitly."""
    data_dir = config.resolve_path("paths", "data")
    log_dir = config.resolve_path("paths", "logs")
    ensure_directories([data_dir, log_dir])
    loggers = setup_logging(log_dir)
    logger = loggers["main"]

    db_manager = DatabaseManager(
        config.db_paths(),
        logger=logger,
        busy_timeout_ms=config.get_int("database", "busy_timeout_ms"),
        initial_retry_delay_ms=config.get_int("database", "initial_retry_delay_ms"),
        max_retry_delay_ms=config.get_int("database", "max_retry_delay_ms"),
        max_retries=config.get_int("database", "max_retries"),
    )
    db_manager.initialize()

    election = PidFileElection(config.resolve_path("queue", "lock_file"))
    builder = CommandBuilder.from_config(config)
    runner = CommandRunner(
        timeout=config.get_float("queue", "operation_timeout_seconds"),
        logger=logger,
        tool_logger=loggers["tool"],
    )
    metadata = MetadataManager(db_manager, logger=logger)
    operation_args = (config, db_manager, builder, runner)
    protection = ProtectionService(*operation_args, metadata=metadata, logger=logger)
    verification = VerificationService(*operation_args, metadata=metadata, logger=logger)
    removal = RemovalService(*operation_args, logger=logger)
    queue = QueueService(
        db_manager,
        election,
        launcher=launcher or functools.partial(spawn_processor, config.source),
        logger=logger,
    )
    return Services(
        config=config,
        loggers=loggers,
        db_manager=db_manager,
        election=election,
        resource_monitor=build_resource_monitor(config, logger),
        builder=builder,
        runner=runner,
        metadata=metadata,
        protection=protection,
        verification=verification,
        removal=removal,
        queue=queue,
    )


def _parse_parameters(args: argparse.Namespace) -> dict:
    parameters: Dict[str, Any] = json.loads(args.params) if args.params else {}
    if args.path:
        parameters["path"] = args.path
    if args.id is not None:
        parameters["id"] = args.id
    if args.redundancy is not None:
        parameters["redundancy"] = args.redundancy
    if args.file_types:
        parameters["file_types"] = [value for value in args.file_types.split(",") if value]
    return parameters


def _command_add(services: Services, args: argparse.Namespace) -> Any:
    return services.queue.add_operation(args.operation_type, _parse_parameters(args))


def _command_process(services: Services, args: argparse.Namespace) -> Any:
    processed = services.processor().run()
    return {"success": True, "processed": processed}


def _command_status(services: Services, args: argparse.Namespace) -> Any:
    return services.queue.get_operation_status(args.operation_id)


def _command_list(services: Services, args: argparse.Namespace) -> Any:
    limit = args.limit if args.limit > 0 else None
    return services.queue.get_all_operations(limit=limit, status=args.status)


def _command_active(services: Services, args: argparse.Namespace) -> Any:
    return services.queue.get_active_operations()


def _command_cancel(services: Services, args: argparse.Namespace) -> Any:
    return services.queue.cancel_operation(args.operation_id)


def _command_cleanup(services: Services, args: argparse.Namespace) -> Any:
    days = args.days if args.days is not None else services.config.get_int("queue", "cleanup_days")
    return {"success": True, "deleted": services.queue.cleanup_old_operations(days)}


def _command_items(services: Services, args: argparse.Namespace) -> Any:
    db_manager = services.db_manager
    if args.id is not None:
        item = db_manager.get_item(args.id).to_dict()
        if args.history:
            item["history"] = db_manager.get_history(args.id)
        return item
    if args.path:
        return [item.to_dict() for item in db_manager.get_items_by_path(os.path.abspath(args.path))]
    return [item.to_dict() for item in db_manager.list_items(status=args.status)]


def _command_verify_scheduled(services: Services, args: argparse.Namespace) -> Any:
    expression = args.cron or str(services.config.get("protection", "verify_cron"))
    lock_path = services.config.resolve_path("paths", "data") / "scheduler.lock"
    try:
        lock = acquire_instance_lock(lock_path)
    except InstanceLockError:
        return {"success": False, "error": "Scheduled verification already running"}
    try:
        operation_ids = enqueue_scheduled_verifications(
            services.queue, services.db_manager, expression, logger=services.logger
        )
    finally:
        lock.release()
    return {"success": True, "operation_ids": operation_ids}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="par2protect", description="par2 protection queue")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    subparsers = parser.add_subparsers(dest="command", required=True)

    add = subparsers.add_parser("add", help="Queue an operation")
    add.add_argument("operation_type", choices=[PROTECT, VERIFY, REPAIR, REMOVE])
    add.add_argument("--path")
    add.add_argument("--id", type=int)
    add.add_argument("--redundancy", type=int)
    add.add_argument("--file-types", help="Comma separated extensions")
    add.add_argument("--params", help="Extra parameters as a JSON object")
    add.set_defaults(handler=_command_add)

    process = subparsers.add_parser("process", help="Drain the queue (normally started automatically)")
    process.set_defaults(handler=_command_process)

    status = subparsers.add_parser("status", help="Show one operation")
    status.add_argument("operation_id", type=int)
    status.set_defaults(handler=_command_status)

    listing = subparsers.add_parser("list", help="List recent operations")
    listing.add_argument("--limit", type=int, default=10, help="0 for no limit")
    listing.add_argument("--status")
    listing.set_defaults(handler=_command_list)

    active = subparsers.add_parser("active", help="List active and recently finished operations")
    active.set_defaults(handler=_command_active)

    cancel = subparsers.add_parser("cancel", help="Cancel a pending or processing operation")
    cancel.add_argument("operation_id", type=int)
    cancel.set_defaults(handler=_command_cancel)

    cleanup = subparsers.add_parser("cleanup", help="Delete finished operations older than N days")
    cleanup.add_argument("--days", type=int)
    cleanup.set_defaults(handler=_command_cleanup)

    items = subparsers.add_parser("items", help="Show protected items")
    items.add_argument("--id", type=int)
    items.add_argument("--path")
    items.add_argument("--status")
    items.add_argument("--history", action="store_true")
    items.set_defaults(handler=_command_items)

    scheduled = subparsers.add_parser("verify-scheduled", help="Queue verification when the cron is due")
    scheduled.add_argument("--cron", help="Override protection.verify_cron")
    scheduled.set_defaults(handler=_command_verify_scheduled)
    return parser


def main(argv: Optional[Sequence[str]] = None, services: Optional[Services] = None) -> int:
    """CLI entry point; prints JSON and returns the process exit code."""
    args = build_parser().parse_args(argv)
    owned = services is None
    if services is None:
        services = build_services(AppConfig.load(args.config))
    try:
        output = args.handler(services, args)
        exit_code = 0
    except Par2ProtectError as exc:
        output = {"success": False, "error": str(exc)}
        exit_code = 1
    finally:
        if owned:
            services.close()
    json.dump(output, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
