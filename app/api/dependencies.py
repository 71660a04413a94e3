"""FastAPI dependencies for the progress API.

Authentication is not this service's job: an upstream identity layer
authenticates the user and forwards the learner's identity (their email)
in the X-Learner-Id header.  These dependencies turn that header into the
learner's session from the SessionRegistry on app.state.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from app.services.dashboard import LEARNER_HEADER
from app.services.progress_store import ProgressStore
from app.services.sessions import LearnerSession, SessionRegistry

logger = logging.getLogger(__name__)


def require_learner(
    x_learner_id: Annotated[str | None, Header()] = None,
) -> str:
    learner_id = (x_learner_id or "").strip().lower()
    if not learner_id:
        logger.warning("Request without %s rejected", LEARNER_HEADER)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing learner identity",
        )
    return learner_id


async def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions


async def get_session(
    learner_id: Annotated[str, Depends(require_learner)],
    registry: Annotated[SessionRegistry, Depends(get_registry)],
) -> LearnerSession:
    return await registry.open(learner_id)


async def get_store(
    session: Annotated[LearnerSession, Depends(get_session)],
) -> ProgressStore:
    return session.store
