from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Literal
from uuid import uuid4

ActivityType = Literal[
    "course_accessed",
    "module_completed",
    "assignment_submitted",
    "quiz_completed",
    "course_completed",
]
TaskType = Literal["assignment", "quiz", "assessment"]
TaskStatus = Literal["pending", "completed"]


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives.

    Python's round() is banker's rounding (round(12.5) == 12); progress
    bars and scores expect 12.5 -> 13.
    """
    return math.floor(value + 0.5)


def course_key(path_slug: str, course_id: str) -> str:
    return f"{path_slug}/{course_id}"


@dataclass(frozen=True, slots=True)
class CourseProgressEntry:
    """One learner's progress through one course.

    ``progress`` and ``course_completed`` are derived from the completion
    set on every read and are never stored.
    """

    path_slug: str
    course_id: str
    course_title: str
    total_modules: int = 0
    path_title: str | None = None
    module_ids: tuple[str, ...] = ()
    completed_module_ids: tuple[str, ...] = ()
    current_module_id: str | None = None
    last_accessed_at: datetime | None = None

    @property
    def key(self) -> str:
        return course_key(self.path_slug, self.course_id)

    @property
    def completed_count(self) -> int:
        return len(self.completed_module_ids)

    @property
    def progress(self) -> int:
        if self.total_modules <= 0:
            return 0
        return min(100, round_half_up(100 * self.completed_count / self.total_modules))

    @property
    def course_completed(self) -> bool:
        return self.total_modules > 0 and self.completed_count >= self.total_modules

    def accepts_module(self, module_id: str) -> bool:
        """Whether ``module_id`` may be added to the completion set."""
        if module_id in self.completed_module_ids:
            return True
        if module_id in self.module_ids:
            return True
        if len(self.module_ids) >= self.total_modules:
            return False
        # The catalogue is missing or partial; the count is the only bound left.
        return self.completed_count < self.total_modules


@dataclass(frozen=True, slots=True)
class MandatoryCourseEntry:
    path_slug: str
    path_title: str
    course_id: str
    course_title: str
    due_date: date
    completed: bool = False

    @property
    def key(self) -> str:
        return course_key(self.path_slug, self.course_id)

    def overdue(self, now: datetime) -> bool:
        return not self.completed and self.due_date < now.date()


@dataclass(frozen=True, slots=True)
class Task:
    """A pending assignment, quiz or assessment.

    Only pending/completed is stored.  "overdue" is a read-time
    classification, see app.services.schedule.task_status().
    """

    id: str
    title: str
    course_title: str
    path_slug: str
    course_id: str
    due_date: date
    type: TaskType = "assignment"
    status: TaskStatus = "pending"


@dataclass(frozen=True, slots=True)
class ActivityEntry:
    id: str
    type: ActivityType
    title: str
    timestamp: datetime
    subtitle: str | None = None
    path_slug: str | None = None
    course_id: str | None = None

    @staticmethod
    def new(
        *,
        type: ActivityType,
        title: str,
        timestamp: datetime,
        subtitle: str | None = None,
        path_slug: str | None = None,
        course_id: str | None = None,
    ) -> ActivityEntry:
        return ActivityEntry(
            id=f"act-{uuid4().hex[:12]}",
            type=type,
            title=title,
            timestamp=timestamp,
            subtitle=subtitle,
            path_slug=path_slug,
            course_id=course_id,
        )


@dataclass(frozen=True, slots=True)
class Certificate:
    """Immutable record of a learner's first completion of a course."""

    path_slug: str
    course_id: str
    course_title: str
    earned_at: date
    path_title: str | None = None

    @property
    def key(self) -> str:
        return course_key(self.path_slug, self.course_id)


@dataclass(frozen=True, slots=True)
class ProgressState:
    """Aggregate root for one learner's local progress.

    Snapshots are never mutated in place; the store swaps in a new one
    built with dataclasses.replace().
    """

    course_progress: dict[str, CourseProgressEntry] = field(default_factory=dict)
    mandatory_courses: tuple[MandatoryCourseEntry, ...] = ()
    tasks: tuple[Task, ...] = ()
    activity_log: tuple[ActivityEntry, ...] = ()  # newest first
    certificates: tuple[Certificate, ...] = ()
    enrolled_path_slugs: tuple[str, ...] = ()
    skills_gained: tuple[str, ...] = ()
    total_learning_hours: float = 0.0

    def has_certificate(self, path_slug: str, course_id: str) -> bool:
        key = course_key(path_slug, course_id)
        return any(c.key == key for c in self.certificates)

    def find_task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None


@dataclass(frozen=True, slots=True)
class RecentCourse:
    """What the "Continue Learning" card needs."""

    path_slug: str
    course_id: str
    course_title: str
    path_title: str | None
    current_module_id: str | None
    progress: int
    total_modules: int
    completed_count: int


@dataclass(frozen=True, slots=True)
class DashboardStats:
    enrolled: int
    in_progress: int
    completed: int
    total_hours: float
    streak: int


@dataclass(frozen=True, slots=True)
class DailyActivity:
    day: str  # Mon..Sun
    date: date
    hours: float
