"""Learner progress endpoints.

Thin HTTP wrappers over the learner's ProgressStore.  Every handler is
``async def``: store mutations are coroutines that hold the store's lock
while they read, merge and write the persisted document, so concurrent
requests for one learner apply one after the other.

Mutations return 200 with the fresh course entry or stats where that is
useful; they never fail for unknown ids (the store ignores them).
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Annotated

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from app.api.dependencies import get_registry, get_session, get_store, require_learner
from app.models.progress import (
    ActivityType,
    CourseProgressEntry,
    MandatoryCourseEntry,
    Task,
    TaskType,
    course_key,
)
from app.services.dashboard import reconcile
from app.services.progress_store import RECENT_ACTIVITY_LIMIT, ProgressStore
from app.services.schedule import format_due_label, task_status
from app.services.sessions import LearnerSession, SessionRegistry

router = APIRouter(prefix="/v1/progress", tags=["progress"])

Store = Annotated[ProgressStore, Depends(get_store)]


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class EnrollIn(BaseModel):
    path_slug: str = Field(min_length=1)


class CourseAccessIn(BaseModel):
    path_slug: str = Field(min_length=1)
    course_id: str = Field(min_length=1)
    course_title: str
    total_modules: int = Field(ge=0)
    path_title: str | None = None
    module_ids: list[str] = []
    current_module_id: str | None = None


class ModuleCompleteIn(BaseModel):
    path_slug: str = Field(min_length=1)
    course_id: str = Field(min_length=1)
    module_id: str = Field(min_length=1)
    module_title: str | None = None
    skills: list[str] = []


class TaskIn(BaseModel):
    id: str = Field(min_length=1)
    title: str
    course_title: str
    path_slug: str
    course_id: str
    due_date: date
    type: TaskType = "assignment"


class MandatoryCourseIn(BaseModel):
    path_slug: str = Field(min_length=1)
    path_title: str
    course_id: str = Field(min_length=1)
    course_title: str
    due_date: date


class CourseProgressOut(BaseModel):
    path_slug: str
    course_id: str
    course_title: str
    path_title: str | None
    total_modules: int
    completed_module_ids: list[str]
    progress: int
    course_completed: bool

    @classmethod
    def from_entry(cls, e: CourseProgressEntry) -> CourseProgressOut:
        return cls(
            path_slug=e.path_slug,
            course_id=e.course_id,
            course_title=e.course_title,
            path_title=e.path_title,
            total_modules=e.total_modules,
            completed_module_ids=list(e.completed_module_ids),
            progress=e.progress,
            course_completed=e.course_completed,
        )


class TaskOut(BaseModel):
    id: str
    type: TaskType
    title: str
    course_title: str
    path_slug: str
    course_id: str
    due_date: date
    status: str
    due_label: str


class MandatoryCourseOut(BaseModel):
    path_slug: str
    path_title: str
    course_id: str
    course_title: str
    due_date: date
    completed: bool
    overdue: bool


class CertificateOut(BaseModel):
    path_slug: str
    course_id: str
    course_title: str
    path_title: str | None
    earned_at: date


class ActivityOut(BaseModel):
    id: str
    type: ActivityType
    title: str
    subtitle: str | None
    timestamp: datetime
    path_slug: str | None
    course_id: str | None


class StateOut(BaseModel):
    enrolled_path_slugs: list[str]
    courses: list[CourseProgressOut]
    mandatory_courses: list[MandatoryCourseOut]
    tasks: list[TaskOut]
    certificates: list[CertificateOut]
    skills_gained: list[str]
    total_learning_hours: float


class ReadinessOut(BaseModel):
    score: int
    status: str
    mandatory_complete: int
    mandatory_total: int
    course_completion: int


class StatsOut(BaseModel):
    enrolled: int
    in_progress: int
    completed: int
    total_hours: float
    streak: int


class DailyActivityOut(BaseModel):
    day: str
    date: date
    hours: float


class RecentCourseOut(BaseModel):
    path_slug: str
    course_id: str
    course_title: str
    path_title: str | None
    current_module_id: str | None
    progress: int
    total_modules: int
    completed_count: int


class DashboardOut(BaseModel):
    source: str
    readiness_score: int
    total_enrolled: int
    completed_courses: int
    most_recent_course_id: str | None
    most_recent_course_title: str | None


def _task_out(task: Task, now: datetime) -> TaskOut:
    return TaskOut(
        id=task.id,
        type=task.type,
        title=task.title,
        course_title=task.course_title,
        path_slug=task.path_slug,
        course_id=task.course_id,
        due_date=task.due_date,
        status=task_status(task, now),
        due_label=format_due_label(task.due_date, now),
    )


def _stats_out(store: ProgressStore) -> StatsOut:
    s = store.get_dashboard_stats()
    return StatsOut(
        enrolled=s.enrolled,
        in_progress=s.in_progress,
        completed=s.completed,
        total_hours=s.total_hours,
        streak=s.streak,
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/state", response_model=StateOut)
async def get_state(store: Store) -> StateOut:
    state = store.snapshot()
    now = store.clock.now()
    return StateOut(
        enrolled_path_slugs=list(state.enrolled_path_slugs),
        courses=[CourseProgressOut.from_entry(e) for e in state.course_progress.values()],
        mandatory_courses=[
            MandatoryCourseOut(
                path_slug=m.path_slug,
                path_title=m.path_title,
                course_id=m.course_id,
                course_title=m.course_title,
                due_date=m.due_date,
                completed=m.completed,
                overdue=m.overdue(now),
            )
            for m in state.mandatory_courses
        ],
        tasks=[_task_out(t, now) for t in state.tasks],
        certificates=[
            CertificateOut(
                path_slug=c.path_slug,
                course_id=c.course_id,
                course_title=c.course_title,
                path_title=c.path_title,
                earned_at=c.earned_at,
            )
            for c in state.certificates
        ],
        skills_gained=list(state.skills_gained),
        total_learning_hours=state.total_learning_hours,
    )


@router.get("/readiness", response_model=ReadinessOut)
async def get_readiness(store: Store) -> ReadinessOut:
    r = store.get_readiness_score()
    return ReadinessOut(
        score=r.score,
        status=r.status.value,
        mandatory_complete=r.mandatory_complete,
        mandatory_total=r.mandatory_total,
        course_completion=r.course_completion,
    )


@router.get("/stats", response_model=StatsOut)
async def get_stats(store: Store) -> StatsOut:
    return _stats_out(store)


@router.get("/activity", response_model=list[ActivityOut])
async def get_activity(
    store: Store, limit: int = RECENT_ACTIVITY_LIMIT
) -> list[ActivityOut]:
    return [
        ActivityOut(
            id=a.id,
            type=a.type,
            title=a.title,
            subtitle=a.subtitle,
            timestamp=a.timestamp,
            path_slug=a.path_slug,
            course_id=a.course_id,
        )
        for a in store.get_recent_activity(max(0, limit))
    ]


@router.get("/activity/daily", response_model=list[DailyActivityOut])
async def get_daily_activity(store: Store) -> list[DailyActivityOut]:
    return [
        DailyActivityOut(day=d.day, date=d.date, hours=d.hours)
        for d in store.get_daily_activity_for_chart()
    ]


@router.get("/tasks/upcoming", response_model=list[TaskOut])
async def get_upcoming_tasks(store: Store, limit: int = 5) -> list[TaskOut]:
    now = store.clock.now()
    return [_task_out(t, now) for t in store.get_upcoming_tasks(max(0, limit))]


@router.get("/continue", response_model=RecentCourseOut | None)
async def get_continue_learning(store: Store) -> RecentCourseOut | None:
    recent = store.get_most_recent_course()
    if recent is None:
        return None
    return RecentCourseOut(
        path_slug=recent.path_slug,
        course_id=recent.course_id,
        course_title=recent.course_title,
        path_title=recent.path_title,
        current_module_id=recent.current_module_id,
        progress=recent.progress,
        total_modules=recent.total_modules,
        completed_count=recent.completed_count,
    )


@router.get("/dashboard", response_model=DashboardOut)
async def get_dashboard(
    session: Annotated[LearnerSession, Depends(get_session)],
) -> DashboardOut:
    aggregate = session.poller.latest if session.poller is not None else None
    view = reconcile(session.store, aggregate)
    return DashboardOut(
        source=view.source,
        readiness_score=view.readiness_score,
        total_enrolled=view.total_enrolled,
        completed_courses=view.completed_courses,
        most_recent_course_id=view.most_recent_course_id,
        most_recent_course_title=view.most_recent_course_title,
    )


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


@router.post("/enrollments", response_model=StatsOut)
async def enroll(body: EnrollIn, store: Store) -> StatsOut:
    await store.enroll_in_path(body.path_slug)
    return _stats_out(store)


@router.post("/courses/access", response_model=CourseProgressOut)
async def record_course_access(body: CourseAccessIn, store: Store) -> CourseProgressOut:
    await store.record_course_access(
        body.path_slug,
        body.course_id,
        body.course_title,
        body.total_modules,
        path_title=body.path_title,
        module_ids=body.module_ids,
        current_module_id=body.current_module_id,
    )
    entry = store.snapshot().course_progress[course_key(body.path_slug, body.course_id)]
    return CourseProgressOut.from_entry(entry)


@router.post("/modules/complete", response_model=CourseProgressOut | None)
async def record_module_complete(
    body: ModuleCompleteIn, store: Store
) -> CourseProgressOut | None:
    await store.record_module_complete(
        body.path_slug,
        body.course_id,
        body.module_id,
        module_title=body.module_title,
        skills=body.skills,
    )
    entry = store.snapshot().course_progress.get(
        course_key(body.path_slug, body.course_id)
    )
    return CourseProgressOut.from_entry(entry) if entry is not None else None


@router.post("/tasks", response_model=TaskOut, status_code=status.HTTP_201_CREATED)
async def add_task(body: TaskIn, store: Store) -> TaskOut:
    task = Task(
        id=body.id,
        title=body.title,
        course_title=body.course_title,
        path_slug=body.path_slug,
        course_id=body.course_id,
        due_date=body.due_date,
        type=body.type,
    )
    await store.add_task(task)
    return _task_out(task, store.clock.now())


@router.post("/tasks/{task_id}/submit", response_model=TaskOut | None)
async def submit_task(task_id: str, store: Store) -> TaskOut | None:
    await store.record_task_submitted(task_id)
    task = store.snapshot().find_task(task_id)
    return _task_out(task, store.clock.now()) if task is not None else None


@router.post(
    "/mandatory",
    response_model=MandatoryCourseOut,
    status_code=status.HTTP_201_CREATED,
)
async def assign_mandatory_course(
    body: MandatoryCourseIn, store: Store
) -> MandatoryCourseOut:
    await store.assign_mandatory_course(
        MandatoryCourseEntry(
            path_slug=body.path_slug,
            path_title=body.path_title,
            course_id=body.course_id,
            course_title=body.course_title,
            due_date=body.due_date,
        )
    )
    key = course_key(body.path_slug, body.course_id)
    entry = next(m for m in store.snapshot().mandatory_courses if m.key == key)
    return MandatoryCourseOut(
        path_slug=entry.path_slug,
        path_title=entry.path_title,
        course_id=entry.course_id,
        course_title=entry.course_title,
        due_date=entry.due_date,
        completed=entry.completed,
        overdue=entry.overdue(store.clock.now()),
    )


@router.delete("/session", status_code=status.HTTP_204_NO_CONTENT)
async def close_session(
    learner_id: Annotated[str, Depends(require_learner)],
    registry: Annotated[SessionRegistry, Depends(get_registry)],
) -> None:
    await registry.close(learner_id)
