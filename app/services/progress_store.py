"""Per-learner progress store.

ONE OWNER, ONE WRITER
----------------------
A ProgressStore is built once per learner session and handed to whoever
needs it (the HTTP layer gets it from the SessionRegistry).  There is no
module-level instance.  Mutations are coroutines serialised by a
per-store asyncio.Lock: each one builds a new immutable ProgressState,
persists it, swaps it in, and only then notifies subscribers, exactly
once per call.  A subscriber can never observe a half-applied update,
and two requests for the same learner never interleave their writes.

Reads are plain methods over the current snapshot; they never touch
storage.

MERGE ON WRITE
---------------
Several API instances (or browser tabs) may hold a store for the same
learner.  Before every write the persisted document is read back and
merged into the new state (see merge_states), so a write from one
instance does not erase what another instance saved in between.  The
merge only ever adds: completions, enrollments and certificates are
unioned, and a course that becomes complete only once both sides are
combined is completed properly (certificate, activity, mandatory entry).

NO-OPS ARE NOT ERRORS
----------------------
This is local bookkeeping, not the system of record.  Completing a module
of a course the learner never opened, or submitting a task id we have
never seen, is logged at debug and ignored.

DERIVED VALUES
---------------
Progress percentages, course completion, overdue flags and the readiness
score are computed from the snapshot on every read.  See
app.services.readiness and app.services.schedule.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import replace
from datetime import datetime, timedelta
from typing import TypeVar

from app.core.clock import Clock, SystemClock
from app.core.metrics import CERTIFICATES_ISSUED, PROGRESS_MUTATIONS, READINESS_SCORE
from app.models.progress import (
    ActivityEntry,
    ActivityType,
    Certificate,
    CourseProgressEntry,
    DailyActivity,
    DashboardStats,
    MandatoryCourseEntry,
    ProgressState,
    RecentCourse,
    Task,
    course_key,
    round_half_up,
)
from app.services.progress_storage import (
    ProgressStorage,
    load_state,
    save_state,
    storage_key,
)
from app.services.readiness import Readiness, compute_readiness
from app.services.schedule import upcoming_tasks

logger = logging.getLogger(__name__)

Listener = Callable[[], None]
T = TypeVar("T")

DEFAULT_ACTIVITY_LOG_LIMIT = 50
RECENT_ACTIVITY_LIMIT = 8
HOURS_PER_MODULE = 0.25

_DAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


class ProgressStore:
    def __init__(
        self,
        learner_id: str,
        storage: ProgressStorage,
        *,
        clock: Clock | None = None,
        activity_log_limit: int = DEFAULT_ACTIVITY_LOG_LIMIT,
    ) -> None:
        self.learner_id = learner_id
        self._storage = storage
        self._key = storage_key(learner_id)
        self._clock: Clock = clock or SystemClock()
        self._activity_log_limit = activity_log_limit
        self._listeners: list[Listener] = []
        self._lock = asyncio.Lock()
        self._loaded = False
        self._state = ProgressState()

    @classmethod
    async def open(
        cls,
        learner_id: str,
        storage: ProgressStorage,
        *,
        clock: Clock | None = None,
        activity_log_limit: int = DEFAULT_ACTIVITY_LOG_LIMIT,
    ) -> ProgressStore:
        """Build a store and load the learner's persisted state into it."""
        store = cls(
            learner_id, storage, clock=clock, activity_log_limit=activity_log_limit
        )
        await store.load()
        return store

    async def load(self) -> None:
        """Read the persisted document once.  Later calls are no-ops."""
        async with self._lock:
            if self._loaded:
                return
            self._state = await load_state(self._storage, self._key)
            self._loaded = True

    # ------------------------------------------------------------------
    # Snapshot & subscription
    # ------------------------------------------------------------------

    @property
    def clock(self) -> Clock:
        return self._clock

    def snapshot(self) -> ProgressState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unsubscribes it."""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _commit(
        self, operation: str, new_state: ProgressState, *, force: bool = False
    ) -> None:
        # Caller holds self._lock.
        if force or new_state is not self._state:
            persisted = await load_state(self._storage, self._key)
            merged = merge_states(
                new_state,
                persisted,
                now=self._clock.now(),
                limit=self._activity_log_limit,
                learner_id=self.learner_id,
            )
            await save_state(self._storage, self._key, merged)
            self._state = merged
            self._loaded = True
        PROGRESS_MUTATIONS.labels(operation=operation).inc()
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception(
                    "Progress listener failed", extra={"learner_id": self.learner_id}
                )

    def _activity(
        self,
        type: ActivityType,
        title: str,
        *,
        subtitle: str | None = None,
        path_slug: str | None = None,
        course_id: str | None = None,
    ) -> ActivityEntry:
        return ActivityEntry.new(
            type=type,
            title=title,
            timestamp=self._clock.now(),
            subtitle=subtitle,
            path_slug=path_slug,
            course_id=course_id,
        )

    def _prepend(
        self, log: tuple[ActivityEntry, ...], *entries: ActivityEntry
    ) -> tuple[ActivityEntry, ...]:
        # entries are given oldest first
        return (tuple(reversed(entries)) + log)[: self._activity_log_limit]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def enroll_in_path(self, path_slug: str) -> None:
        async with self._lock:
            state = self._state
            if path_slug not in state.enrolled_path_slugs:
                state = replace(
                    state, enrolled_path_slugs=state.enrolled_path_slugs + (path_slug,)
                )
            await self._commit("enroll_in_path", state)

    async def record_course_access(
        self,
        path_slug: str,
        course_id: str,
        course_title: str,
        total_modules: int,
        *,
        path_title: str | None = None,
        module_ids: Sequence[str] = (),
        current_module_id: str | None = None,
    ) -> None:
        """Open (or reopen) a course.

        ``total_modules`` only ever grows: if the catalogue now reports
        fewer modules than before, the larger count is kept so existing
        completions stay valid.
        """
        async with self._lock:
            now = self._clock.now()
            state = self._state
            key = course_key(path_slug, course_id)
            existing = state.course_progress.get(key)

            known_ids = tuple(
                dict.fromkeys(
                    (existing.module_ids if existing else ()) + tuple(module_ids)
                )
            )
            floor = max(total_modules, 0, len(known_ids))
            if existing is None:
                entry = CourseProgressEntry(
                    path_slug=path_slug,
                    course_id=course_id,
                    course_title=course_title,
                    total_modules=floor,
                    path_title=path_title,
                    module_ids=known_ids,
                    current_module_id=current_module_id,
                    last_accessed_at=now,
                )
            else:
                if total_modules < existing.total_modules:
                    logger.info(
                        "Keeping total_modules=%d for %s (catalogue reports %d)",
                        existing.total_modules,
                        key,
                        total_modules,
                    )
                entry = replace(
                    existing,
                    course_title=course_title or existing.course_title,
                    path_title=path_title or existing.path_title,
                    total_modules=max(existing.total_modules, floor),
                    module_ids=known_ids,
                    current_module_id=current_module_id or existing.current_module_id,
                    last_accessed_at=now,
                )

            enrolled = state.enrolled_path_slugs
            if path_slug not in enrolled:
                enrolled = enrolled + (path_slug,)

            activity = self._activity(
                "course_accessed",
                course_title,
                subtitle=path_title,
                path_slug=path_slug,
                course_id=course_id,
            )
            await self._commit(
                "record_course_access",
                replace(
                    state,
                    course_progress={**state.course_progress, key: entry},
                    enrolled_path_slugs=enrolled,
                    activity_log=self._prepend(state.activity_log, activity),
                ),
            )

    async def record_module_complete(
        self,
        path_slug: str,
        course_id: str,
        module_id: str,
        *,
        module_title: str | None = None,
        skills: Sequence[str] = (),
    ) -> None:
        """Mark ``module_id`` complete.

        The completion set is idempotent; the activity log is not (every
        accepted call appends a module_completed entry).  When this call
        completes the course, a course_completed entry and, if the course
        has none yet, a certificate are added in the same update.
        """
        async with self._lock:
            now = self._clock.now()
            state = self._state
            key = course_key(path_slug, course_id)
            existing = state.course_progress.get(key)

            if existing is None:
                logger.debug("Ignoring completion for untracked course %s", key)
                await self._commit("record_module_complete", state)
                return
            if not existing.accepts_module(module_id):
                logger.debug("Ignoring unknown module %s for course %s", module_id, key)
                await self._commit("record_module_complete", state)
                return

            completed_ids = existing.completed_module_ids
            if module_id not in completed_ids:
                completed_ids = completed_ids + (module_id,)
            entry = replace(
                existing,
                completed_module_ids=completed_ids,
                current_module_id=module_id,
                last_accessed_at=now,
            )

            activities = [
                self._activity(
                    "module_completed",
                    module_title or module_id,
                    subtitle=entry.course_title,
                    path_slug=path_slug,
                    course_id=course_id,
                )
            ]
            state = replace(
                state,
                course_progress={**state.course_progress, key: entry},
                total_learning_hours=state.total_learning_hours + HOURS_PER_MODULE,
            )
            if entry.course_completed and not existing.course_completed:
                state, completed = _complete_course(
                    state, entry, now, skills=skills, learner_id=self.learner_id
                )
                activities.append(completed)

            await self._commit(
                "record_module_complete",
                replace(
                    state, activity_log=self._prepend(state.activity_log, *activities)
                ),
            )

    async def assign_mandatory_course(self, entry: MandatoryCourseEntry) -> None:
        """Record an administrator's assignment.  Re-assigning replaces the entry."""
        async with self._lock:
            state = self._state
            tracked = state.course_progress.get(entry.key)
            if tracked is not None and tracked.course_completed:
                entry = replace(entry, completed=True)

            mandatory = list(state.mandatory_courses)
            for i, m in enumerate(mandatory):
                if m.key == entry.key:
                    mandatory[i] = entry
                    break
            else:
                mandatory.append(entry)
            await self._commit(
                "assign_mandatory_course",
                replace(state, mandatory_courses=tuple(mandatory)),
            )

    async def add_task(self, task: Task) -> None:
        """Track a task; an existing task with the same id is replaced in place."""
        async with self._lock:
            state = self._state
            tasks = list(state.tasks)
            for i, t in enumerate(tasks):
                if t.id == task.id:
                    tasks[i] = task
                    break
            else:
                tasks.append(task)
            await self._commit("add_task", replace(state, tasks=tuple(tasks)))

    async def record_task_submitted(self, task_id: str) -> None:
        async with self._lock:
            state = self._state
            task = state.find_task(task_id)
            if task is None or task.status == "completed":
                logger.debug("Ignoring submission for task %s", task_id)
                await self._commit("record_task_submitted", state)
                return

            done = replace(task, status="completed")
            activity = self._activity(
                "quiz_completed" if task.type == "quiz" else "assignment_submitted",
                task.title,
                subtitle=task.course_title,
                path_slug=task.path_slug,
                course_id=task.course_id,
            )
            await self._commit(
                "record_task_submitted",
                replace(
                    state,
                    tasks=tuple(done if t.id == task_id else t for t in state.tasks),
                    activity_log=self._prepend(state.activity_log, activity),
                ),
            )

    async def add_learning_hours(self, hours: float) -> None:
        async with self._lock:
            state = self._state
            if hours > 0:
                state = replace(
                    state, total_learning_hours=state.total_learning_hours + hours
                )
            await self._commit("add_learning_hours", state)

    async def reload(self) -> None:
        """Merge whatever is persisted for this learner into the current state."""
        async with self._lock:
            await self._commit("reload", self._state, force=True)

    # ------------------------------------------------------------------
    # Derived reads
    # ------------------------------------------------------------------

    def get_most_recent_course(self) -> RecentCourse | None:
        state = self._state
        for activity in state.activity_log:
            if activity.type not in ("course_accessed", "module_completed"):
                continue
            if activity.path_slug is None or activity.course_id is None:
                continue
            entry = state.course_progress.get(
                course_key(activity.path_slug, activity.course_id)
            )
            if entry is None:
                continue
            return RecentCourse(
                path_slug=entry.path_slug,
                course_id=entry.course_id,
                course_title=entry.course_title,
                path_title=entry.path_title,
                current_module_id=entry.current_module_id,
                progress=entry.progress,
                total_modules=entry.total_modules,
                completed_count=entry.completed_count,
            )
        return None

    def get_readiness_score(self) -> Readiness:
        readiness = compute_readiness(self._state, self._clock.now())
        READINESS_SCORE.observe(readiness.score)
        return readiness

    def get_dashboard_stats(self) -> DashboardStats:
        state = self._state
        enrolled_paths = set(state.enrolled_path_slugs)
        entries = [
            e for e in state.course_progress.values() if e.path_slug in enrolled_paths
        ]
        return DashboardStats(
            enrolled=len(entries),
            in_progress=sum(1 for e in entries if 0 < e.progress < 100),
            completed=sum(1 for e in entries if e.course_completed),
            total_hours=round_half_up(state.total_learning_hours * 10) / 10,
            streak=self._streak(),
        )

    def _streak(self) -> int:
        active_days = {a.timestamp.date() for a in self._state.activity_log}
        day = self._clock.now().date()
        streak = 0
        while day in active_days:
            streak += 1
            day -= timedelta(days=1)
        return streak

    def get_daily_activity_for_chart(self) -> list[DailyActivity]:
        """Hours per day for the last 7 days, oldest first, today last."""
        today = self._clock.now().date()
        days = [today - timedelta(days=offset) for offset in range(6, -1, -1)]
        hours = dict.fromkeys(days, 0.0)
        for activity in self._state.activity_log:
            if activity.type != "module_completed":
                continue
            day = activity.timestamp.date()
            if day in hours:
                hours[day] += HOURS_PER_MODULE
        return [
            DailyActivity(day=_DAY_NAMES[d.weekday()], date=d, hours=round(hours[d], 2))
            for d in days
        ]

    def get_recent_activity(self, limit: int = RECENT_ACTIVITY_LIMIT) -> list[ActivityEntry]:
        return list(self._state.activity_log[:limit])

    def get_upcoming_tasks(self, limit: int | None = 5) -> list[Task]:
        return upcoming_tasks(self._state.tasks, self._clock.now(), limit)




def _complete_course(
    state: ProgressState,
    entry: CourseProgressEntry,
    now: datetime,
    *,
    skills: Sequence[str] = (),
    learner_id: str | None = None,
) -> tuple[ProgressState, ActivityEntry]:
    """Apply what finishing ``entry`` earns the learner.

    Issues the certificate unless the course already has one, adds
    ``skills``, and marks a matching mandatory assignment completed.
    Returns the new state and the course_completed activity entry; the
    caller decides where the entry goes in the log.
    """
    certificates = state.certificates
    if not state.has_certificate(entry.path_slug, entry.course_id):
        certificates = certificates + (
            Certificate(
                path_slug=entry.path_slug,
                course_id=entry.course_id,
                course_title=entry.course_title,
                earned_at=now.date(),
                path_title=entry.path_title,
            ),
        )
        CERTIFICATES_ISSUED.inc()
        logger.info(
            "Certificate earned for %s", entry.key, extra={"learner_id": learner_id}
        )

    activity = ActivityEntry.new(
        type="course_completed",
        title=entry.course_title,
        timestamp=now,
        subtitle=entry.path_title,
        path_slug=entry.path_slug,
        course_id=entry.course_id,
    )
    return (
        replace(
            state,
            certificates=certificates,
            skills_gained=tuple(dict.fromkeys(state.skills_gained + tuple(skills))),
            mandatory_courses=tuple(
                replace(m, completed=True) if m.key == entry.key else m
                for m in state.mandatory_courses
            ),
        ),
        activity,
    )


def _merge_by_key(
    local: Iterable[T],
    persisted: Iterable[T],
    key: Callable[[T], str],
    done: Callable[[T], bool],
) -> tuple[T, ...]:
    """Union by ``key`` in local order; a completed copy beats a pending one."""
    merged = {key(x): x for x in local}
    for theirs in persisted:
        mine = merged.get(key(theirs))
        if mine is None or (done(theirs) and not done(mine)):
            merged[key(theirs)] = theirs
    return tuple(merged.values())


def merge_states(
    local: ProgressState,
    persisted: ProgressState,
    *,
    now: datetime,
    limit: int = DEFAULT_ACTIVITY_LOG_LIMIT,
    learner_id: str | None = None,
) -> ProgressState:
    """Combine two snapshots of the same learner without losing either side.

    Completions, enrollments, skills and certificates are unioned; for
    tasks and mandatory courses a completed copy wins over a pending one;
    learning hours take the larger total.  Local ordering is kept and the
    persisted side only contributes what local lacks.

    A course neither side had finished may be finished by the union
    (one side completed m1, the other m2).  That course is completed here
    with the same bookkeeping record_module_complete does, stamped ``now``.
    """
    courses = dict(local.course_progress)
    for key, theirs in persisted.course_progress.items():
        mine = courses.get(key)
        if mine is None:
            courses[key] = theirs
            continue
        last = max(
            (t for t in (mine.last_accessed_at, theirs.last_accessed_at) if t),
            default=None,
        )
        courses[key] = replace(
            mine,
            total_modules=max(mine.total_modules, theirs.total_modules),
            module_ids=tuple(dict.fromkeys(mine.module_ids + theirs.module_ids)),
            completed_module_ids=tuple(
                dict.fromkeys(mine.completed_module_ids + theirs.completed_module_ids)
            ),
            last_accessed_at=last,
        )

    certificates = {c.key: c for c in local.certificates}
    for c in persisted.certificates:
        certificates.setdefault(c.key, c)

    activity = {a.id: a for a in local.activity_log}
    for a in persisted.activity_log:
        activity.setdefault(a.id, a)

    merged = ProgressState(
        course_progress=courses,
        mandatory_courses=_merge_by_key(
            local.mandatory_courses,
            persisted.mandatory_courses,
            lambda m: m.key,
            lambda m: m.completed,
        ),
        tasks=_merge_by_key(
            local.tasks,
            persisted.tasks,
            lambda t: t.id,
            lambda t: t.status == "completed",
        ),
        # sorted() is stable, so entries sharing a timestamp keep local order
        activity_log=tuple(
            sorted(activity.values(), key=lambda a: a.timestamp, reverse=True)
        ),
        certificates=tuple(certificates.values()),
        enrolled_path_slugs=tuple(
            dict.fromkeys(local.enrolled_path_slugs + persisted.enrolled_path_slugs)
        ),
        skills_gained=tuple(dict.fromkeys(local.skills_gained + persisted.skills_gained)),
        total_learning_hours=max(
            local.total_learning_hours, persisted.total_learning_hours
        ),
    )

    completions: list[ActivityEntry] = []
    for key, entry in courses.items():
        if not entry.course_completed:
            continue
        sides = (local.course_progress.get(key), persisted.course_progress.get(key))
        if any(side is not None and side.course_completed for side in sides):
            continue
        merged, completed = _complete_course(merged, entry, now, learner_id=learner_id)
        completions.append(completed)

    return replace(
        merged,
        activity_log=(tuple(reversed(completions)) + merged.activity_log)[:limit],
    )
