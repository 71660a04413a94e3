"""Backend learner-dashboard aggregate: fetch, poll, reconcile.

LOCAL WINS
-----------
The backend keeps its own aggregate (readiness, enrolled/completed
counts, most recent course) computed from the relational tables.  The
local store is usually ahead of it: a module completion shows up here the
moment it happens, and on the backend only after the write lands.

So the rule is simple, not transactional:

  local store has any course entries  ->  show local values
  otherwise, an aggregate has arrived ->  show the aggregate
  otherwise                           ->  zeros ("no data yet")

The aggregate is read-only to us; nothing here writes back.

POLLING
--------
DashboardPoller refreshes the aggregate every DASHBOARD_POLL_SECONDS on
an asyncio task.  A failed fetch keeps the previous value and waits for
the next tick.  stop() cancels the task; the SessionRegistry calls it
when a learner's session closes and on application shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.core.metrics import DASHBOARD_FETCHES
from app.services.progress_store import ProgressStore

logger = logging.getLogger(__name__)

LEARNER_HEADER = "X-Learner-Id"


class AggregateCourse(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    course_id: str = Field(alias="courseId")
    course_title: str = Field(alias="courseTitle")
    path_slug: str = Field(default="", alias="pathSlug")
    progress: int = 0
    course_completed: bool = Field(default=False, alias="courseCompleted")


class DashboardAggregate(BaseModel):
    """The subset of GET /learner/dashboard this service reads."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    readiness_score: int = Field(default=0, alias="readinessScore", ge=0, le=100)
    total_enrolled: int = Field(default=0, alias="totalEnrolled", ge=0)
    completed_courses: int = Field(default=0, alias="completedCourses", ge=0)
    most_recent_course: AggregateCourse | None = Field(
        default=None, alias="mostRecentCourse"
    )


class DashboardClient:
    """Thin httpx wrapper around the backend dashboard endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

    async def fetch(self, learner_id: str) -> DashboardAggregate | None:
        """Return the aggregate, or None on any failure."""
        try:
            resp = await self._client.get(
                "/learner/dashboard", headers={LEARNER_HEADER: learner_id}
            )
            resp.raise_for_status()
            aggregate = DashboardAggregate.model_validate_json(resp.content)
        except (httpx.HTTPError, ValidationError) as e:
            logger.warning(
                "Dashboard aggregate fetch failed: %s",
                e,
                extra={"learner_id": learner_id},
            )
            DASHBOARD_FETCHES.labels(result="error").inc()
            return None

        DASHBOARD_FETCHES.labels(result="ok").inc()
        return aggregate

    async def aclose(self) -> None:
        await self._client.aclose()


class DashboardPoller:
    def __init__(
        self, client: DashboardClient, learner_id: str, *, interval: float = 10.0
    ) -> None:
        self._client = client
        self._learner_id = learner_id
        self._interval = interval
        self._task: asyncio.Task[None] | None = None
        self.latest: DashboardAggregate | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> DashboardAggregate | None:
        """Fetch once.  Never raises; a failed poll keeps the previous aggregate."""
        try:
            aggregate = await self._client.fetch(self._learner_id)
        except Exception:
            # fetch() handles transport errors; this covers the rest (a
            # header that cannot be encoded, a broken transport, ...).
            logger.exception(
                "Dashboard poll failed", extra={"learner_id": self._learner_id}
            )
            DASHBOARD_FETCHES.labels(result="error").inc()
            return self.latest
        if aggregate is not None:
            self.latest = aggregate
        return self.latest

    async def _run(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug("Dashboard poller started for %s", self._learner_id)

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception(
                "Dashboard poller ended with an error",
                extra={"learner_id": self._learner_id},
            )
        logger.debug("Dashboard poller stopped for %s", self._learner_id)


@dataclass(frozen=True, slots=True)
class DashboardView:
    source: Literal["local", "backend", "empty"]
    readiness_score: int
    total_enrolled: int
    completed_courses: int
    most_recent_course_id: str | None
    most_recent_course_title: str | None


def reconcile(
    store: ProgressStore, aggregate: DashboardAggregate | None
) -> DashboardView:
    state = store.snapshot()
    if state.course_progress:
        stats = store.get_dashboard_stats()
        recent = store.get_most_recent_course()
        return DashboardView(
            source="local",
            readiness_score=store.get_readiness_score().score,
            total_enrolled=stats.enrolled,
            completed_courses=stats.completed,
            most_recent_course_id=recent.course_id if recent else None,
            most_recent_course_title=recent.course_title if recent else None,
        )

    if aggregate is not None:
        recent_course = aggregate.most_recent_course
        return DashboardView(
            source="backend",
            readiness_score=aggregate.readiness_score,
            total_enrolled=aggregate.total_enrolled,
            completed_courses=aggregate.completed_courses,
            most_recent_course_id=recent_course.course_id if recent_course else None,
            most_recent_course_title=(
                recent_course.course_title if recent_course else None
            ),
        )

    return DashboardView(
        source="empty",
        readiness_score=0,
        total_enrolled=0,
        completed_courses=0,
        most_recent_course_id=None,
        most_recent_course_title=None,
    )
