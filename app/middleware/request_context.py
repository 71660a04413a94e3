"""Request context middleware: request IDs and learner IDs on every log line.

Concurrent requests interleave their log lines.  Tagging each line with
the request ID (and, for progress calls, the learner it acts for) makes
one request's story readable again:

  INFO   [req-abc learner=ada@example.com] Certificate earned for web/html-101
  WARNING [req-xyz learner=bob@example.com] Dashboard aggregate fetch failed

The IDs live in ContextVars, not thread-locals: under asyncio many
requests share one thread, and each task gets its own copy of a
ContextVar.  A logging filter on the root logger copies them onto every
LogRecord, where _JsonFormatter picks them up.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.services.dashboard import LEARNER_HEADER

logger = logging.getLogger(__name__)

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")
learner_id_var: ContextVar[str] = ContextVar("learner_id", default="-")


class _RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get("-")  # type: ignore[attr-defined]
        if getattr(record, "learner_id", None) is None:
            record.learner_id = learner_id_var.get("-")  # type: ignore[attr-defined]
        return True


def install_log_filter() -> None:
    """Attach the context filter to the root logger's handlers (idempotent).

    Handler-level rather than logger-level, so records propagated from
    child loggers are tagged too.
    """
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, _RequestContextFilter) for f in handler.filters):
            handler.addFilter(_RequestContextFilter())


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assign a request ID, remember the learner, time and log the request.

    Reads X-Request-ID if the caller sent one, otherwise generates a UUID,
    and echoes it back on the response.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        req_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request_id_var.set(req_id)
        learner_id_var.set(
            (request.headers.get(LEARNER_HEADER) or "-").strip().lower() or "-"
        )

        start = time.monotonic()
        response = await call_next(request)
        duration_ms = round((time.monotonic() - start) * 1000, 1)

        logger.info(
            "%s %s → %d (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            extra={
                "request_id": req_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )

        response.headers["X-Request-ID"] = req_id
        return response
