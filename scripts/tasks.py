#!/usr/bin/env python3
"""Inspect notification tasks in the scheduler database.

Usage examples:
    # Latest 20 tasks
    uv run python scripts/tasks.py

    # Everything that failed
    uv run python scripts/tasks.py --status failed

    # History for one appointment
    uv run python scripts/tasks.py --entity appointment:64f1c2

    # Archive terminal tasks older than the retention window now
    uv run python scripts/tasks.py --archive
"""

import argparse
import asyncio
import sys
from datetime import timedelta
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sms_scheduler.config import settings
from sms_scheduler.scheduler.models import EntityRef, NotificationTask, TaskStatus, utc_now
from sms_scheduler.scheduler.store import TaskStore


def format_task(task: NotificationTask) -> str:
    line = (
        f"{task.id}  {task.status:<10}  {task.entity!s:<30}  "
        f"due={task.due_at.isoformat()}  attempts={task.attempts}  v{task.version}"
    )
    if task.provider_ref:
        line += f"  ref={task.provider_ref}"
    if task.failure_reason:
        line += f"  reason={task.failure_reason}"
    if task.superseded_by:
        line += f"  superseded_by={task.superseded_by}"
    if task.cancel_requested:
        line += "  cancel_requested"
    return line


def parse_entity(value: str) -> EntityRef:
    kind, sep, entity_id = value.partition(":")
    if not sep or not kind or not entity_id:
        msg = f"Entity must look like kind:id, got {value!r}"
        raise argparse.ArgumentTypeError(msg)
    return EntityRef(kind, entity_id)


async def run(args: argparse.Namespace) -> int:
    store = TaskStore(args.db)
    if args.archive:
        cutoff = utc_now() - timedelta(days=settings.retention_days)
        archived = await store.archive_terminal(cutoff)
        print(f"Archived {archived} task(s) last updated before {cutoff.isoformat()}")
        return 0

    tasks = await store.list_tasks(status=args.status, entity=args.entity, limit=args.limit)
    if not tasks:
        print("No tasks found.")
        return 0
    for task in tasks:
        print(format_task(task))
        if args.verbose:
            print(f"    to={task.recipient}  body={task.body!r}")
            if task.last_error:
                print(f"    last_error={task.last_error}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect scheduled SMS notification tasks")
    parser.add_argument("--db", type=Path, default=settings.database_path, help="SQLite path")
    parser.add_argument(
        "--status", type=TaskStatus, choices=list(TaskStatus), help="Filter by status"
    )
    parser.add_argument("--entity", type=parse_entity, help="Filter by entity (kind:id)")
    parser.add_argument("--limit", type=int, default=20, help="Maximum rows (default 20)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show recipient, body, errors")
    parser.add_argument("--archive", action="store_true", help="Run the retention sweep and exit")
    args = parser.parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
