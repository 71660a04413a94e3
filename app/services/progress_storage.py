"""Durable per-learner storage for progress state.

STORAGE CONTRACT
-----------------
The store persists one JSON blob per learner through a tiny key-value
interface (get / set / remove).  Two implementations:

  InMemoryProgressStorage  tests and local dev; lost on restart
  RedisProgressStorage     shared across API instances, no TTL

Both are async: the Redis backend uses redis.asyncio, so a slow Redis
never blocks the event loop.
Keys are ``learner-progress:{learner}`` where the learner id is stripped
and lowercased, so "Ada@Example.com " and "ada@example.com" share state.

THE DOCUMENT
-------------
The blob is validated by the pydantic models below on the way in.  Only
primary fields are written: ``progress``, ``course_completed`` and
``overdue`` are derived on read and have no place in the document.

Missing fields take their defaults, so an older document written before
a field existed still loads.  Anything else that goes wrong (invalid
JSON, a validation error, the backend being unreachable) discards the
blob and yields an empty state.  A learner sees "no data yet"; nobody
sees a stack trace.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.core.metrics import PROGRESS_STATE_LOADS
from app.models.progress import (
    ActivityEntry,
    ActivityType,
    Certificate,
    CourseProgressEntry,
    MandatoryCourseEntry,
    ProgressState,
    Task,
    TaskStatus,
    TaskType,
)

logger = logging.getLogger(__name__)

STORAGE_KEY_BASE = "learner-progress"


def storage_key(learner_id: str) -> str:
    return f"{STORAGE_KEY_BASE}:{learner_id.strip().lower()}"


# ---------------------------------------------------------------------------
# Storage backends
# ---------------------------------------------------------------------------


@runtime_checkable
class ProgressStorage(Protocol):
    async def get(self, key: str) -> str | None:
        """Return the stored blob, or None when absent."""
        ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


class InMemoryProgressStorage:
    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str) -> None:
        self._store[key] = value

    async def remove(self, key: str) -> None:
        self._store.pop(key, None)


class RedisProgressStorage:
    """Redis-backed storage.  Expects a redis.asyncio client with
    decode_responses=True, as built by app.db.redis."""

    _PREFIX = "progress:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> str | None:
        return await self._redis.get(f"{self._PREFIX}{key}")

    async def set(self, key: str, value: str) -> None:
        await self._redis.set(f"{self._PREFIX}{key}", value)

    async def remove(self, key: str) -> None:
        await self._redis.delete(f"{self._PREFIX}{key}")


# ---------------------------------------------------------------------------
# Persisted document
# ---------------------------------------------------------------------------


class _Doc(BaseModel):
    model_config = ConfigDict(extra="ignore")


class CourseProgressDoc(_Doc):
    path_slug: str
    course_id: str
    course_title: str
    total_modules: int = Field(default=0, ge=0)
    path_title: str | None = None
    module_ids: list[str] = []
    completed_module_ids: list[str] = []
    current_module_id: str | None = None
    last_accessed_at: datetime | None = None


class MandatoryCourseDoc(_Doc):
    path_slug: str
    path_title: str
    course_id: str
    course_title: str
    due_date: date
    completed: bool = False


class TaskDoc(_Doc):
    id: str
    title: str
    course_title: str
    path_slug: str
    course_id: str
    due_date: date
    type: TaskType = "assignment"
    status: TaskStatus = "pending"


class ActivityDoc(_Doc):
    id: str
    type: ActivityType
    title: str
    timestamp: datetime
    subtitle: str | None = None
    path_slug: str | None = None
    course_id: str | None = None


class CertificateDoc(_Doc):
    path_slug: str
    course_id: str
    course_title: str
    earned_at: date
    path_title: str | None = None


class ProgressDocument(_Doc):
    course_progress: dict[str, CourseProgressDoc] = {}
    mandatory_courses: list[MandatoryCourseDoc] = []
    tasks: list[TaskDoc] = []
    activity_log: list[ActivityDoc] = []
    certificates: list[CertificateDoc] = []
    enrolled_path_slugs: list[str] = []
    skills_gained: list[str] = []
    total_learning_hours: float = Field(default=0.0, ge=0)

    @classmethod
    def from_state(cls, state: ProgressState) -> ProgressDocument:
        return cls(
            course_progress={
                key: CourseProgressDoc(
                    path_slug=e.path_slug,
                    course_id=e.course_id,
                    course_title=e.course_title,
                    total_modules=e.total_modules,
                    path_title=e.path_title,
                    module_ids=list(e.module_ids),
                    completed_module_ids=list(e.completed_module_ids),
                    current_module_id=e.current_module_id,
                    last_accessed_at=e.last_accessed_at,
                )
                for key, e in state.course_progress.items()
            },
            mandatory_courses=[
                MandatoryCourseDoc(
                    path_slug=m.path_slug,
                    path_title=m.path_title,
                    course_id=m.course_id,
                    course_title=m.course_title,
                    due_date=m.due_date,
                    completed=m.completed,
                )
                for m in state.mandatory_courses
            ],
            tasks=[
                TaskDoc(
                    id=t.id,
                    title=t.title,
                    course_title=t.course_title,
                    path_slug=t.path_slug,
                    course_id=t.course_id,
                    due_date=t.due_date,
                    type=t.type,
                    status=t.status,
                )
                for t in state.tasks
            ],
            activity_log=[
                ActivityDoc(
                    id=a.id,
                    type=a.type,
                    title=a.title,
                    timestamp=a.timestamp,
                    subtitle=a.subtitle,
                    path_slug=a.path_slug,
                    course_id=a.course_id,
                )
                for a in state.activity_log
            ],
            certificates=[
                CertificateDoc(
                    path_slug=c.path_slug,
                    course_id=c.course_id,
                    course_title=c.course_title,
                    earned_at=c.earned_at,
                    path_title=c.path_title,
                )
                for c in state.certificates
            ],
            enrolled_path_slugs=list(state.enrolled_path_slugs),
            skills_gained=list(state.skills_gained),
            total_learning_hours=state.total_learning_hours,
        )

    def to_state(self) -> ProgressState:
        courses: dict[str, CourseProgressEntry] = {}
        for doc in self.course_progress.values():
            entry = CourseProgressEntry(
                path_slug=doc.path_slug,
                course_id=doc.course_id,
                course_title=doc.course_title,
                total_modules=doc.total_modules,
                path_title=doc.path_title,
                module_ids=tuple(dict.fromkeys(doc.module_ids)),
                completed_module_ids=tuple(dict.fromkeys(doc.completed_module_ids)),
                current_module_id=doc.current_module_id,
                last_accessed_at=doc.last_accessed_at,
            )
            # Re-key from the entry itself; a hand-edited key must not split a course.
            courses[entry.key] = entry

        return ProgressState(
            course_progress=courses,
            mandatory_courses=tuple(
                MandatoryCourseEntry(**m.model_dump()) for m in self.mandatory_courses
            ),
            tasks=tuple(Task(**t.model_dump()) for t in self.tasks),
            activity_log=tuple(
                sorted(
                    (ActivityEntry(**a.model_dump()) for a in self.activity_log),
                    key=lambda a: a.timestamp,
                    reverse=True,
                )
            ),
            certificates=tuple(Certificate(**c.model_dump()) for c in self.certificates),
            enrolled_path_slugs=tuple(dict.fromkeys(self.enrolled_path_slugs)),
            skills_gained=tuple(dict.fromkeys(self.skills_gained)),
            total_learning_hours=self.total_learning_hours,
        )


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def dump_state(state: ProgressState) -> str:
    return ProgressDocument.from_state(state).model_dump_json()


async def load_state(storage: ProgressStorage, key: str) -> ProgressState:
    """Read and validate the blob at ``key``.  Never raises."""
    try:
        raw = await storage.get(key)
    except Exception:
        logger.exception("Progress storage read failed for key=%s", key)
        PROGRESS_STATE_LOADS.labels(result="error").inc()
        return ProgressState()

    if raw is None:
        PROGRESS_STATE_LOADS.labels(result="missing").inc()
        return ProgressState()

    try:
        state = ProgressDocument.model_validate_json(raw).to_state()
    except (ValidationError, ValueError, TypeError) as e:
        logger.warning("Discarding corrupt progress state key=%s: %s", key, e)
        PROGRESS_STATE_LOADS.labels(result="corrupt").inc()
        return ProgressState()

    PROGRESS_STATE_LOADS.labels(result="ok").inc()
    return state


async def save_state(storage: ProgressStorage, key: str, state: ProgressState) -> None:
    """Write the blob.  A failed write is logged; in-memory state stays current."""
    try:
        await storage.set(key, dump_state(state))
    except Exception:
        logger.exception("Progress storage write failed for key=%s", key)
