"""Demo: walk one learner through a course using FastAPI TestClient.

Uses in-memory storage, so nothing is written to Redis.

Run with:
    python scripts/demo_learner_flow.py
"""

from __future__ import annotations

from datetime import date, timedelta

from fastapi.testclient import TestClient

from app.core.config import SETTINGS
from app.main import create_app
from app.services.progress_storage import InMemoryProgressStorage

LEARNER = {"X-Learner-Id": "demo@example.com"}
MODULES = ["intro", "elements", "forms"]


def main() -> None:
    app = create_app(SETTINGS, storage=InMemoryProgressStorage())
    with TestClient(app) as client:
        # ── Step 1: open a course ───────────────────────────────────────
        r = client.post(
            "/v1/progress/courses/access",
            json={
                "path_slug": "web",
                "path_title": "Web Development",
                "course_id": "html-101",
                "course_title": "HTML Foundations",
                "total_modules": len(MODULES),
                "module_ids": MODULES,
            },
            headers=LEARNER,
        )
        print(f"1. access html-101          → {r.status_code}  progress={r.json()['progress']}%")

        # ── Step 2: a deadline and a quiz ───────────────────────────────
        today = date.today()
        client.post(
            "/v1/progress/mandatory",
            json={
                "path_slug": "web",
                "path_title": "Web Development",
                "course_id": "html-101",
                "course_title": "HTML Foundations",
                "due_date": (today + timedelta(days=14)).isoformat(),
            },
            headers=LEARNER,
        )
        client.post(
            "/v1/progress/tasks",
            json={
                "id": "quiz-html-1",
                "title": "Elements quiz",
                "course_title": "HTML Foundations",
                "path_slug": "web",
                "course_id": "html-101",
                "due_date": (today + timedelta(days=1)).isoformat(),
                "type": "quiz",
            },
            headers=LEARNER,
        )
        r = client.get("/v1/progress/readiness", headers=LEARNER)
        print(f"2. readiness before         → {r.json()['score']} ({r.json()['status']})")

        # ── Step 3: work through the modules ────────────────────────────
        for i, module_id in enumerate(MODULES, start=3):
            r = client.post(
                "/v1/progress/modules/complete",
                json={
                    "path_slug": "web",
                    "course_id": "html-101",
                    "module_id": module_id,
                    "skills": ["HTML"],
                },
                headers=LEARNER,
            )
            print(f"{i}. complete {module_id:<16} → progress={r.json()['progress']}%")

        # ── Step 4: submit the quiz, read the dashboard ─────────────────
        client.post("/v1/progress/tasks/quiz-html-1/submit", headers=LEARNER)
        state = client.get("/v1/progress/state", headers=LEARNER).json()
        readiness = client.get("/v1/progress/readiness", headers=LEARNER).json()
        stats = client.get("/v1/progress/stats", headers=LEARNER).json()
        print(f"   certificates             → {[c['course_id'] for c in state['certificates']]}")
        print(f"   readiness after          → {readiness['score']} ({readiness['status']})")
        print(f"   stats                    → {stats}")


if __name__ == "__main__":
    main()
