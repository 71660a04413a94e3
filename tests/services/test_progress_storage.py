"""Persistence of progress state: key normalisation, round trips and
recovery from bad blobs.

Load results are counted in ``progress_state_loads_total``; like the
middleware tests we assert on deltas because the registry is global.
"""

from __future__ import annotations

import json
from datetime import timedelta

import pytest
import redis as redis_lib
import redis.asyncio as aioredis
from prometheus_client import REGISTRY

from app.db.redis import build_progress_storage, create_redis_client, ping
from app.models.progress import MandatoryCourseEntry, ProgressState, Task
from app.services.progress_storage import (
    InMemoryProgressStorage,
    ProgressStorage,
    RedisProgressStorage,
    dump_state,
    load_state,
    save_state,
    storage_key,
)
from app.services.progress_store import ProgressStore
from tests.conftest import LEARNER, NOW, make_settings, open_course, run


def _loads(result: str) -> float:
    value = REGISTRY.get_sample_value(
        "progress_state_loads_total", labels={"result": result}
    )
    return value if value is not None else 0.0


class _BrokenStorage:
    async def get(self, key: str) -> str | None:
        raise ConnectionError("storage offline")

    async def set(self, key: str, value: str) -> None:
        raise ConnectionError("storage offline")

    async def remove(self, key: str) -> None:
        raise ConnectionError("storage offline")


class _DictRedis:
    """Just enough of redis.asyncio.Redis for RedisProgressStorage."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def get(self, name: str) -> str | None:
        return self.data.get(name)

    async def set(self, name: str, value: str) -> None:
        self.data[name] = value

    async def delete(self, name: str) -> None:
        self.data.pop(name, None)


def _populated_store(storage: ProgressStorage, clock) -> ProgressStore:
    store = run(ProgressStore.open(LEARNER, storage, clock=clock))
    run(open_course(store, total_modules=2))
    run(store.record_module_complete("web", "html-101", "m1", module_title="Intro"))
    clock.advance(hours=1)
    run(store.record_module_complete("web", "html-101", "m2", skills=["HTML"]))
    quiz = Task(
        id="quiz-1",
        title="Quiz 1",
        course_title="HTML",
        path_slug="web",
        course_id="html-101",
        due_date=NOW.date() + timedelta(days=2),
        type="quiz",
    )
    run(store.add_task(quiz))
    css = MandatoryCourseEntry(
        path_slug="web",
        path_title="Web Development",
        course_id="css-101",
        course_title="CSS",
        due_date=NOW.date() - timedelta(days=1),
    )
    run(store.assign_mandatory_course(css))
    return store


def test_storage_key_is_normalised() -> None:
    assert storage_key("  Ada@Example.COM ") == "learner-progress:ada@example.com"
    assert storage_key("ada@example.com") == storage_key("ADA@example.com")


def test_missing_blob_loads_default_state(storage: InMemoryProgressStorage) -> None:
    before = _loads("missing")
    assert run(load_state(storage, storage_key(LEARNER))) == ProgressState()
    assert _loads("missing") - before == 1


@pytest.mark.parametrize(
    "blob",
    [
        "{not json",
        "[]",
        json.dumps({"course_progress": {"x": {"course_id": "no-path"}}}),
        json.dumps({"total_learning_hours": -4}),
        json.dumps({"activity_log": [{"id": "a", "type": "teleported", "title": "t",
                                      "timestamp": "2026-03-11T10:00:00Z"}]}),
    ],
)
def test_corrupt_blob_loads_default_state(
    storage: InMemoryProgressStorage, blob: str
) -> None:
    key = storage_key(LEARNER)
    run(storage.set(key, blob))
    before = _loads("corrupt")
    assert run(load_state(storage, key)) == ProgressState()
    assert _loads("corrupt") - before == 1


def test_unreachable_storage_loads_default_state() -> None:
    before = _loads("error")
    assert run(load_state(_BrokenStorage(), storage_key(LEARNER))) == ProgressState()
    assert _loads("error") - before == 1


def test_failed_write_keeps_in_memory_state(clock) -> None:
    store = run(ProgressStore.open(LEARNER, _BrokenStorage(), clock=clock))
    run(store.enroll_in_path("web"))
    assert store.snapshot().enrolled_path_slugs == ("web",)


def test_older_document_without_new_fields_still_loads(
    storage: InMemoryProgressStorage,
) -> None:
    key = storage_key(LEARNER)
    run(storage.set(key, json.dumps({"enrolled_path_slugs": ["web"]})))
    state = run(load_state(storage, key))
    assert state.enrolled_path_slugs == ("web",)
    assert state.tasks == ()
    assert state.total_learning_hours == 0.0


def test_round_trip_preserves_state(storage: InMemoryProgressStorage, clock) -> None:
    store = _populated_store(storage, clock)
    reloaded = run(load_state(storage, storage_key(LEARNER)))
    assert reloaded == store.snapshot()


def test_derived_fields_are_not_persisted(
    storage: InMemoryProgressStorage, clock
) -> None:
    store = _populated_store(storage, clock)
    doc = json.loads(dump_state(store.snapshot()))
    course = doc["course_progress"]["web/html-101"]
    assert "progress" not in course
    assert "course_completed" not in course
    assert "overdue" not in doc["mandatory_courses"][0]
    assert doc["tasks"][0]["status"] == "pending"


def test_document_is_rekeyed_from_entries(storage: InMemoryProgressStorage) -> None:
    key = storage_key(LEARNER)
    blob = json.dumps(
        {
            "course_progress": {
                "stale-key": {
                    "path_slug": "web",
                    "course_id": "html-101",
                    "course_title": "HTML",
                    "total_modules": 2,
                    "completed_module_ids": ["m1", "m1"],
                }
            }
        }
    )
    run(storage.set(key, blob))
    state = run(load_state(storage, key))
    assert list(state.course_progress) == ["web/html-101"]
    assert state.course_progress["web/html-101"].completed_module_ids == ("m1",)


def test_activity_is_loaded_newest_first(storage: InMemoryProgressStorage) -> None:
    key = storage_key(LEARNER)
    entries = [
        {"id": "old", "type": "course_accessed", "title": "A",
         "timestamp": "2026-03-09T08:00:00Z"},
        {"id": "new", "type": "module_completed", "title": "B",
         "timestamp": "2026-03-11T08:00:00Z"},
    ]
    run(storage.set(key, json.dumps({"activity_log": entries})))
    state = run(load_state(storage, key))
    assert [a.id for a in state.activity_log] == ["new", "old"]


def test_redis_storage_prefixes_keys(clock) -> None:
    redis = _DictRedis()
    storage = RedisProgressStorage(redis)
    store = run(ProgressStore.open(LEARNER, storage, clock=clock))
    run(store.enroll_in_path("web"))

    assert list(redis.data) == ["progress:learner-progress:ada@example.com"]
    assert run(load_state(storage, storage_key(LEARNER))).enrolled_path_slugs == ("web",)

    run(storage.remove(storage_key(LEARNER)))
    assert redis.data == {}


def test_save_then_load_with_plain_helpers(storage: InMemoryProgressStorage) -> None:
    key = storage_key(LEARNER)
    state = ProgressState(enrolled_path_slugs=("web", "data"), skills_gained=("SQL",))
    run(save_state(storage, key, state))
    assert run(load_state(storage, key)) == state


# ---- connection helpers ----


class _PingingRedis(_DictRedis):
    def __init__(self, healthy: bool) -> None:
        super().__init__()
        self.healthy = healthy

    async def ping(self) -> bool:
        if not self.healthy:
            raise redis_lib.ConnectionError("down")
        return True


def test_build_progress_storage_picks_backend() -> None:
    assert isinstance(build_progress_storage(None), InMemoryProgressStorage)
    assert isinstance(build_progress_storage(_DictRedis()), RedisProgressStorage)


def test_create_redis_client_needs_url() -> None:
    assert create_redis_client(make_settings()) is None


def test_create_redis_client_is_asyncio_client() -> None:
    client = create_redis_client(make_settings(redis_url="redis://localhost:6379/0"))
    assert isinstance(client, aioredis.Redis)
    # from_url does not connect, so closing needs no server
    run(client.aclose())


def test_ping_reports_redis_health() -> None:
    assert run(ping(None)) == "not_configured"
    assert run(ping(_PingingRedis(healthy=True))) == "ok"
    assert run(ping(_PingingRedis(healthy=False))) == "degraded"
