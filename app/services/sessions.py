"""Learner sessions: one ProgressStore (and optional poller) per learner.

Sessions are opened lazily by the first request that names a learner and
closed by DELETE /v1/progress/session.  Clients that simply go away never
send that DELETE, so every request stamps ``last_seen`` and a sweeper
task started by the lifespan hook closes sessions idle for longer than
SESSION_IDLE_SECONDS.  Closing a session only drops in-process state;
the learner's document stays in storage and is loaded again next time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from app.core.clock import Clock, SystemClock
from app.services.dashboard import DashboardClient, DashboardPoller
from app.services.progress_storage import ProgressStorage
from app.services.progress_store import DEFAULT_ACTIVITY_LOG_LIMIT, ProgressStore

logger = logging.getLogger(__name__)

DEFAULT_IDLE_SECONDS = 1800


@dataclass(slots=True)
class LearnerSession:
    store: ProgressStore
    last_seen: datetime
    poller: DashboardPoller | None = None


class SessionRegistry:
    def __init__(
        self,
        storage: ProgressStorage,
        *,
        clock: Clock | None = None,
        dashboard_client: DashboardClient | None = None,
        poll_seconds: float = 10.0,
        activity_log_limit: int = DEFAULT_ACTIVITY_LOG_LIMIT,
        idle_seconds: float = DEFAULT_IDLE_SECONDS,
    ) -> None:
        self._storage = storage
        self._clock = clock or SystemClock()
        self._dashboard_client = dashboard_client
        self._poll_seconds = poll_seconds
        self._activity_log_limit = activity_log_limit
        self._idle = timedelta(seconds=idle_seconds)
        self._sessions: dict[str, LearnerSession] = {}
        self._sweeper: asyncio.Task[None] | None = None

    @staticmethod
    def _normalize(learner_id: str) -> str:
        return learner_id.strip().lower()

    def __contains__(self, learner_id: str) -> bool:
        return self._normalize(learner_id) in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    async def open(self, learner_id: str) -> LearnerSession:
        """Return the learner's session, creating it on first use.

        The session is registered before its state is loaded, so two
        concurrent first requests share one store; the store's lock makes
        the second wait for the load.
        """
        key = self._normalize(learner_id)
        session = self._sessions.get(key)
        if session is None:
            store = ProgressStore(
                key,
                self._storage,
                clock=self._clock,
                activity_log_limit=self._activity_log_limit,
            )
            poller = None
            if self._dashboard_client is not None:
                poller = DashboardPoller(
                    self._dashboard_client, key, interval=self._poll_seconds
                )
                poller.start()
            session = LearnerSession(
                store=store, last_seen=self._clock.now(), poller=poller
            )
            self._sessions[key] = session
            logger.info("Learner session opened", extra={"learner_id": key})

        session.last_seen = self._clock.now()
        await session.store.load()
        return session

    async def close(self, learner_id: str) -> bool:
        key = self._normalize(learner_id)
        session = self._sessions.pop(key, None)
        if session is None:
            return False
        if session.poller is not None:
            await session.poller.stop()
        logger.info("Learner session closed", extra={"learner_id": key})
        return True

    async def evict_idle(self) -> int:
        """Close every session not seen for longer than the idle timeout."""
        cutoff = self._clock.now() - self._idle
        idle = [key for key, s in self._sessions.items() if s.last_seen < cutoff]
        for key in idle:
            await self.close(key)
        if idle:
            logger.info("Evicted %d idle learner sessions", len(idle))
        return len(idle)

    async def _sweep(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.evict_idle()
            except Exception:
                logger.exception("Idle session sweep failed")

    def start_sweeper(self, interval: float | None = None) -> None:
        """Run evict_idle() periodically on the current event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        if interval is None:
            interval = max(1.0, self._idle.total_seconds() / 4)
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep(interval))

    async def close_all(self) -> None:
        try:
            if self._sweeper is not None:
                self._sweeper.cancel()
                try:
                    await self._sweeper
                except asyncio.CancelledError:
                    pass
                self._sweeper = None
            for learner_id in list(self._sessions):
                await self.close(learner_id)
        finally:
            if self._dashboard_client is not None:
                await self._dashboard_client.aclose()
