"""Read-time classification of tasks and mandatory courses.

Overdue is never stored: it is recomputed from the due date and the
caller's ``now`` on every read.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import date, datetime
from typing import Literal

from app.models.progress import MandatoryCourseEntry, Task

TaskReadStatus = Literal["pending", "completed", "overdue"]


def is_task_overdue(task: Task, now: datetime) -> bool:
    return task.status == "pending" and task.due_date < now.date()


def is_mandatory_overdue(entry: MandatoryCourseEntry, now: datetime) -> bool:
    return entry.overdue(now)


def task_status(task: Task, now: datetime) -> TaskReadStatus:
    if is_task_overdue(task, now):
        return "overdue"
    return task.status


def upcoming_tasks(
    tasks: Iterable[Task], now: datetime, limit: int | None = 5
) -> list[Task]:
    """Open tasks (pending or overdue), earliest due first.

    sorted() is stable, so tasks due the same day keep insertion order.
    """
    open_tasks = [t for t in tasks if task_status(t, now) != "completed"]
    ordered = sorted(open_tasks, key=lambda t: t.due_date)
    return ordered if limit is None else ordered[:limit]


def days_until(due_date: date, now: datetime) -> int:
    return (due_date - now.date()).days


def format_due_label(due_date: date, now: datetime) -> str:
    days = days_until(due_date, now)
    if days < 0:
        return "Overdue"
    if days == 0:
        return "Today"
    if days == 1:
        return "Tomorrow"
    if days <= 7:
        return f"{days} days"
    if days <= 30:
        return f"{math.ceil(days / 7)} weeks"
    return f"{due_date:%b} {due_date.day}, {due_date.year}"
