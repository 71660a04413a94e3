from __future__ import annotations

import asyncio
import sys
from collections.abc import Coroutine, Iterator
from datetime import UTC, datetime
from typing import Any, TypeVar
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure repo root is on sys.path so `import app` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.core.clock import FixedClock  # noqa: E402
from app.core.config import Settings  # noqa: E402
from app.main import create_app  # noqa: E402
from app.services.progress_storage import InMemoryProgressStorage  # noqa: E402
from app.services.progress_store import ProgressStore  # noqa: E402

# A Wednesday, mid-morning UTC.
NOW = datetime(2026, 3, 11, 10, 0, tzinfo=UTC)
LEARNER = "ada@example.com"

T = TypeVar("T")


def run(coro: Coroutine[Any, Any, T]) -> T:
    """Drive one coroutine to completion from a sync test."""
    return asyncio.run(coro)


def make_settings(**overrides) -> Settings:
    values = {
        "app_env": "test",
        "log_level": "info",
        "log_json": False,
        "port": 8000,
        "redis_url": None,
        "dashboard_api_url": None,
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def storage() -> InMemoryProgressStorage:
    return InMemoryProgressStorage()


@pytest.fixture
def store(storage: InMemoryProgressStorage, clock: FixedClock) -> ProgressStore:
    return run(ProgressStore.open(LEARNER, storage, clock=clock))


@pytest.fixture
def client(storage: InMemoryProgressStorage, clock: FixedClock) -> Iterator[TestClient]:
    app = create_app(make_settings(), storage=storage, clock=clock)
    with TestClient(app) as c:
        yield c


def learner_headers(learner: str = LEARNER) -> dict[str, str]:
    return {"X-Learner-Id": learner}


async def open_course(
    store: ProgressStore,
    course_id: str = "html-101",
    total_modules: int = 4,
    *,
    path_slug: str = "web",
    module_ids: tuple[str, ...] | None = None,
) -> None:
    """Helper: access a course whose modules are m1..mN."""
    ids = module_ids if module_ids is not None else tuple(
        f"m{i}" for i in range(1, total_modules + 1)
    )
    await store.record_course_access(
        path_slug,
        course_id,
        f"Course {course_id}",
        total_modules,
        path_title="Web Development",
        module_ids=ids,
    )
