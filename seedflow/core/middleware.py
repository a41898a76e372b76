"""Request middleware for correlation and logging."""

import re
import time
import uuid
from collections.abc import Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from seedflow.core.logging import get_logger, request_id_ctx, run_id_ctx

logger = get_logger(__name__)

_RUN_PATH = re.compile(r"^/orchestrator/runs/(?P<run_id>[0-9a-f]{32})(?:/|$)")


def run_id_from_path(path: str) -> str | None:
    """Run id addressed by an orchestrator route, if any."""
    match = _RUN_PATH.match(path)
    return match.group("run_id") if match else None


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag every log line of a request with its request id.

    Requests that act on a single run (resume, rollback, override) also bind
    the run id, so operator actions line up with the run's pipeline logs.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        path = str(request.url.path)
        run_id = run_id_from_path(path)
        request_token = request_id_ctx.set(request_id)
        run_token = run_id_ctx.set(run_id) if run_id else None
        started = time.perf_counter()

        try:
            logger.info(
                "http.request_started",
                method=request.method,
                path=path,
                query=str(request.url.query) if request.url.query else None,
            )
            response = await call_next(request)
            logger.info(
                "http.request_completed",
                method=request.method,
                path=path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            response.headers["X-Request-ID"] = request_id
            if run_id:
                response.headers["X-Run-ID"] = run_id
            return response
        finally:
            if run_token is not None:
                run_id_ctx.reset(run_token)
            request_id_ctx.reset(request_token)
