"""Application entry point for the duewatch alert service."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint

import settings
from adapters.log_notifier import LogOnlyNotifier
from adapters.smtp_notifier import SmtpEmailNotifier
from adapters.sqlite_storage import SQLiteLeaseStore, SQLiteStorage
from core.errors import ConfigError
from core.lease import DistributedLease
from core.models import AlertStatus
from core.ports import NotifierPort
from core.processor import AlertJobProcessor
from core.rules_engine import build_rules, describe_rule
from core.scheduler import Scheduler, TriggerOutcome

NAME = "DUEWATCH"
FONT = "tarty-1"

EXIT_CODES = {200: 0, 409: 2}

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
CREDENTIAL_MASK = "***"


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _CredentialMaskingFormatter(logging.Formatter):
    """Masks SMTP credentials wherever they appear in a formatted record."""

    def __init__(self, credentials: list[str], fmt: str = LOG_FORMAT, datefmt: str = LOG_DATE_FORMAT) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        # Longest first, so a credential that contains another is masked whole.
        self._credentials = sorted({value for value in credentials if value}, key=len, reverse=True)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for value in self._credentials:
            message = message.replace(value, CREDENTIAL_MASK)
        return message


def _smtp_credentials(config: dict) -> list[str]:
    if not config.get("mask_smtp_credentials", True):
        return []
    return [value for value in (settings.SMTP_USERNAME, settings.SMTP_PASSWORD) if value]


def _rotating_file_handler(file_cfg: dict) -> RotatingFileHandler:
    path = file_cfg.get("path", "logs/duewatch.log")
    if not os.path.isabs(path):
        path = os.path.join(settings.PROJECT_ROOT, path)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    return RotatingFileHandler(
        path,
        maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
        backupCount=int(file_cfg.get("backup_count", 5)),
        encoding="utf-8",
    )


def _logging_handlers(config: dict) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if config.get("console", True):
        handlers.append(logging.StreamHandler())
    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        handlers.append(_rotating_file_handler(file_cfg))

    formatter = _CredentialMaskingFormatter(_smtp_credentials(config))
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    handlers = _logging_handlers(config)
    if handlers:
        level = getattr(logging, str(config.get("level", "INFO")).upper(), logging.INFO)
        logging.basicConfig(level=level, handlers=handlers)


def _build_notifier() -> NotifierPort:
    # Select the notification adapter based on configuration to keep the core
    # processor independent from delivery details.
    config = settings.NOTIFICATIONS
    if config.method == "smtp":
        return SmtpEmailNotifier(config, settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
    if config.method == "log":
        return LogOnlyNotifier(config.from_address)
    raise ConfigError("notifications.method must be 'smtp' or 'log'")


@dataclass
class _Services:
    storage: SQLiteStorage
    lease_store: SQLiteLeaseStore
    processor: AlertJobProcessor
    scheduler: Scheduler


def _build_services() -> _Services:
    logger = logging.getLogger(__name__)

    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    lease_store = SQLiteLeaseStore(settings.DB_PATH)

    notifier = _build_notifier()
    logger.info("Selected notification method - %s", settings.NOTIFICATIONS.method)

    lease = DistributedLease(lease_store, on_lease_lost=settings.JOB.on_lease_lost)
    processor = AlertJobProcessor(
        storage=storage,
        notifier=notifier,
        lease=lease,
        job_config=settings.JOB,
    )

    scheduler = Scheduler()
    scheduler.register(settings.JOB.job_name, settings.JOB.run_at, processor.run_with_lock)
    return _Services(storage=storage, lease_store=lease_store, processor=processor, scheduler=scheduler)


def _print_outcome(outcome: TriggerOutcome) -> None:
    print(f"{outcome.status_code} {outcome.message}")
    if outcome.summary is not None:
        print(json.dumps(outcome.summary, indent=2))
    if outcome.error:
        print(f"error: {outcome.error}")


async def _serve(scheduler: Scheduler) -> None:
    scheduler.start()
    try:
        # Timers do all the work; this just keeps the loop alive until Ctrl+C.
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()


def _run() -> None:
    _print_banner()
    _configure_logging()
    logger = logging.getLogger(__name__)
    logger.info("Starting duewatch")

    services = _build_services()
    try:
        asyncio.run(_serve(services.scheduler))
    except KeyboardInterrupt:
        logger.info("Shutting down")


def _trigger() -> int:
    _configure_logging()
    services = _build_services()
    outcome = asyncio.run(services.scheduler.trigger(settings.JOB.job_name))
    _print_outcome(outcome)
    return EXIT_CODES.get(outcome.status_code, 1)


def _jobs() -> None:
    services = _build_services()
    for job in services.scheduler.list_jobs():
        lease = services.lease_store.lease_info(job["name"])
        holder = lease["locked_by"] if lease and lease["active"] else "-"
        print(f"{job['name']} | {job['run_at']} | lease holder: {holder}")


def _init_db() -> None:
    _configure_logging()
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    SQLiteLeaseStore(settings.DB_PATH).init_db()

    specs = build_rules(settings.RULES_CONFIG)
    for spec in specs:
        storage.upsert_rule(spec)
    logging.getLogger(__name__).info("%s rules are seeded into %s", len(specs), settings.DB_PATH)


def _logs(status: Optional[str], limit: int) -> None:
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    wanted = AlertStatus(status.upper()) if status else None
    for entry in storage.list_alert_logs(status=wanted, limit=limit):
        rule = describe_rule(entry.rule_type, entry.day_offset)
        line = (
            f"{entry.sent_at} | {entry.trigger_local_date.isoformat()} | expense {entry.expense_id} | "
            f"{rule} | {entry.sent_to} | {entry.status.value}"
        )
        if entry.error_message:
            line += f" | {entry.error_message}"
        print(line)


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="duewatch")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the daily scheduler")
    subparsers.add_parser("trigger", help="Run the alert job now (under the distributed lock)")
    subparsers.add_parser("jobs", help="List scheduled jobs and current lease holders")
    subparsers.add_parser("init-db", help="Create tables and seed rules from config.json")
    logs_parser = subparsers.add_parser("logs", help="Show recent alert log entries")
    logs_parser.add_argument("--status", choices=[status.value.lower() for status in AlertStatus])
    logs_parser.add_argument("--limit", type=int, default=50)

    args = parser.parse_args(argv)
    if args.command == "trigger":
        sys.exit(_trigger())
    if args.command == "jobs":
        _jobs()
        return
    if args.command == "init-db":
        _init_db()
        return
    if args.command == "logs":
        _logs(args.status, args.limit)
        return
    _run()


if __name__ == "__main__":
    main()
