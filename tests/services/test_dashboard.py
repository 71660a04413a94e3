"""Dashboard aggregate client, poller and local-wins reconciliation.

The backend is replaced with httpx.MockTransport so no network is used.
Async code runs under asyncio.run() inside plain sync tests.
"""

from __future__ import annotations

import asyncio

import httpx
from prometheus_client import REGISTRY

from app.services.dashboard import (
    LEARNER_HEADER,
    DashboardAggregate,
    DashboardClient,
    DashboardPoller,
    reconcile,
)
from app.services.progress_store import ProgressStore
from tests.conftest import LEARNER, open_course

AGGREGATE = {
    "readinessScore": 64,
    "totalEnrolled": 3,
    "completedCourses": 1,
    "mostRecentCourse": {
        "courseId": "sql-101",
        "courseTitle": "SQL Basics",
        "pathSlug": "data",
        "progress": 40,
    },
    "certificates": [],
}


def _fetches(result: str) -> float:
    value = REGISTRY.get_sample_value(
        "dashboard_fetches_total", labels={"result": result}
    )
    return value if value is not None else 0.0


def _client(handler) -> DashboardClient:
    return DashboardClient("http://backend.test", transport=httpx.MockTransport(handler))


# ---- DashboardClient ----


def test_fetch_parses_aggregate_and_sends_learner_header() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=AGGREGATE)

    async def run() -> DashboardAggregate | None:
        client = _client(handler)
        try:
            return await client.fetch(LEARNER)
        finally:
            await client.aclose()

    before = _fetches("ok")
    aggregate = asyncio.run(run())

    assert aggregate is not None
    assert aggregate.readiness_score == 64
    assert aggregate.total_enrolled == 3
    assert aggregate.most_recent_course is not None
    assert aggregate.most_recent_course.course_title == "SQL Basics"
    assert seen[0].url.path == "/learner/dashboard"
    assert seen[0].headers[LEARNER_HEADER] == LEARNER
    assert _fetches("ok") - before == 1


def test_fetch_returns_none_on_http_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "down"})

    async def run():
        client = _client(handler)
        try:
            return await client.fetch(LEARNER)
        finally:
            await client.aclose()

    before = _fetches("error")
    assert asyncio.run(run()) is None
    assert _fetches("error") - before == 1


def test_fetch_returns_none_on_connection_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async def run():
        client = _client(handler)
        try:
            return await client.fetch(LEARNER)
        finally:
            await client.aclose()

    assert asyncio.run(run()) is None


def test_fetch_returns_none_on_invalid_payload() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"readinessScore": 400})

    async def run():
        client = _client(handler)
        try:
            return await client.fetch(LEARNER)
        finally:
            await client.aclose()

    assert asyncio.run(run()) is None


# ---- DashboardPoller ----


def test_poll_once_keeps_last_good_value() -> None:
    responses = [httpx.Response(200, json=AGGREGATE), httpx.Response(500)]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    async def run():
        client = _client(handler)
        poller = DashboardPoller(client, LEARNER)
        first = await poller.poll_once()
        second = await poller.poll_once()
        await client.aclose()
        return first, second

    first, second = asyncio.run(run())
    assert first is not None
    assert second is first


def test_poller_runs_until_stopped() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(200, json=AGGREGATE)

    async def run():
        client = _client(handler)
        poller = DashboardPoller(client, LEARNER, interval=0.01)
        poller.start()
        poller.start()  # second start is a no-op
        assert poller.running
        for _ in range(100):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
        await poller.stop()
        stopped_at = len(calls)
        await asyncio.sleep(0.05)
        await client.aclose()
        return poller, stopped_at

    poller, stopped_at = asyncio.run(run())
    assert stopped_at >= 2
    assert len(calls) == stopped_at
    assert not poller.running
    assert poller.latest is not None


def test_poll_once_survives_unexpected_errors() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) == 1:
            return httpx.Response(200, json=AGGREGATE)
        raise RuntimeError("transport bug")

    async def run():
        client = _client(handler)
        poller = DashboardPoller(client, LEARNER)
        first = await poller.poll_once()
        before = _fetches("error")
        second = await poller.poll_once()
        errors = _fetches("error") - before
        await client.aclose()
        return first, second, errors

    first, second, errors = asyncio.run(run())
    assert first is not None
    assert second is first
    assert errors == 1


def test_poller_with_non_ascii_learner_keeps_running() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=AGGREGATE)

    async def run():
        client = _client(handler)
        poller = DashboardPoller(client, "josé@example.com", interval=0.01)
        poller.start()
        await asyncio.sleep(0.05)
        running = poller.running
        await poller.stop()
        await client.aclose()
        return running, poller.running

    running_before_stop, running_after_stop = asyncio.run(run())
    assert running_before_stop is True
    assert running_after_stop is False


def test_stop_without_start_is_harmless() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=AGGREGATE)

    async def run():
        client = _client(handler)
        await DashboardPoller(client, LEARNER).stop()
        await client.aclose()

    asyncio.run(run())


# ---- reconcile ----


def test_reconcile_prefers_local_store(store: ProgressStore) -> None:
    asyncio.run(open_course(store, total_modules=1, module_ids=("m1",)))
    asyncio.run(store.record_module_complete("web", "html-101", "m1"))

    view = reconcile(store, DashboardAggregate.model_validate(AGGREGATE))

    assert view.source == "local"
    assert view.total_enrolled == 1
    assert view.completed_courses == 1
    assert view.readiness_score == 100
    assert view.most_recent_course_id == "html-101"


def test_reconcile_falls_back_to_backend(store: ProgressStore) -> None:
    asyncio.run(store.enroll_in_path("web"))  # no course entries yet
    view = reconcile(store, DashboardAggregate.model_validate(AGGREGATE))
    assert view.source == "backend"
    assert view.readiness_score == 64
    assert view.total_enrolled == 3
    assert view.most_recent_course_id == "sql-101"


def test_reconcile_with_nothing_is_empty(store: ProgressStore) -> None:
    view = reconcile(store, None)
    assert view.source == "empty"
    assert view.readiness_score == 0
    assert view.most_recent_course_title is None
