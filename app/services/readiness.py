"""Readiness score: a 0-100 estimate of how prepared a learner is.

THE FORMULA
------------
Three axes, fixed weights:

  50%  course completion     completed courses / tracked courses
  30%  pending work          100 - pending-task penalty
  20%  mandatory deadlines   100 - overdue-mandatory penalty

The penalties are linear and capped at the full axis:

  pending penalty = min(100, 20 * pending tasks)           5 tasks -> full
  overdue penalty = min(100, 50 * overdue mandatory)       2 courses -> full

An overdue mandatory course costs 50 points on its axis where a pending
task costs 20: missing a required deadline is the stronger signal.
Tasks that are themselves past due are neither "pending" here nor
"overdue mandatory"; the two kinds of overdue are tracked separately.

The weighted sum is rounded half-up and clamped to [0, 100], then the
status is read off the integer score:

  score >= 70        On Track
  40 <= score < 70   Needs Attention
  score < 40         At Risk

EMPTY STATE
------------
No courses, no tasks, no mandatory courses:
  0 * 0.5 + 100 * 0.3 + 100 * 0.2 = 50  ->  Needs Attention
A learner who has not started anything is not "on track" yet.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from app.models.progress import ProgressState, round_half_up
from app.services.schedule import is_task_overdue

# Weights in percent; the sum is done in integers so .5 cases round exactly.
COURSE_WEIGHT = 50
PENDING_WEIGHT = 30
OVERDUE_WEIGHT = 20

PENDING_PENALTY_PER_TASK = 20
OVERDUE_PENALTY_PER_COURSE = 50

ON_TRACK_THRESHOLD = 70
NEEDS_ATTENTION_THRESHOLD = 40


class ReadinessStatus(StrEnum):
    ON_TRACK = "On Track"
    NEEDS_ATTENTION = "Needs Attention"
    AT_RISK = "At Risk"


@dataclass(frozen=True, slots=True)
class Readiness:
    score: int
    status: ReadinessStatus
    mandatory_complete: int
    mandatory_total: int
    course_completion: int
    mandatory_pct: int
    pending_tasks: int
    overdue_mandatory: int


def classify(score: int) -> ReadinessStatus:
    if score >= ON_TRACK_THRESHOLD:
        return ReadinessStatus.ON_TRACK
    if score >= NEEDS_ATTENTION_THRESHOLD:
        return ReadinessStatus.NEEDS_ATTENTION
    return ReadinessStatus.AT_RISK


def compute_readiness(state: ProgressState, now: datetime) -> Readiness:
    """Derive the readiness score from a snapshot.  Does not touch ``state``."""
    entries = list(state.course_progress.values())
    completed_courses = sum(1 for e in entries if e.course_completed)
    course_completion = (
        round_half_up(100 * completed_courses / len(entries)) if entries else 0
    )

    mandatory_total = len(state.mandatory_courses)
    mandatory_complete = sum(1 for m in state.mandatory_courses if m.completed)
    mandatory_pct = (
        round_half_up(100 * mandatory_complete / mandatory_total)
        if mandatory_total
        else 100
    )
    overdue_mandatory = sum(1 for m in state.mandatory_courses if m.overdue(now))

    pending_tasks = sum(
        1
        for t in state.tasks
        if t.status == "pending" and not is_task_overdue(t, now)
    )

    pending_penalty = min(100, PENDING_PENALTY_PER_TASK * pending_tasks)
    overdue_penalty = min(100, OVERDUE_PENALTY_PER_COURSE * overdue_mandatory)

    weighted = (
        COURSE_WEIGHT * course_completion
        + PENDING_WEIGHT * (100 - pending_penalty)
        + OVERDUE_WEIGHT * (100 - overdue_penalty)
    )
    score = max(0, min(100, (weighted + 50) // 100))

    return Readiness(
        score=score,
        status=classify(score),
        mandatory_complete=mandatory_complete,
        mandatory_total=mandatory_total,
        course_completion=course_completion,
        mandatory_pct=mandatory_pct,
        pending_tasks=pending_tasks,
        overdue_mandatory=overdue_mandatory,
    )
