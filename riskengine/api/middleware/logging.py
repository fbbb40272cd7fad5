"""Structured JSON logging middleware."""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

logger = structlog.get_logger()


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """Logs one ``http_request`` event per request and echoes ``X-Request-ID``.

    Requests slower than ``slow_request_ms`` are logged at warning level.
    """

    def __init__(self, app: ASGIApp, slow_request_ms: float = 2000.0) -> None:
        super().__init__(app)
        self.slow_request_ms = slow_request_ms

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        fields = {"request_id": request_id, "method": request.method, "path": request.url.path}

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("http_request_failed", duration_ms=_elapsed_ms(start_time), **fields)
            raise

        duration_ms = _elapsed_ms(start_time)
        log = logger.warning if duration_ms > self.slow_request_ms else logger.info
        log("http_request", status_code=response.status_code, duration_ms=duration_ms, **fields)

        response.headers["X-Request-ID"] = request_id
        return response


def _elapsed_ms(start_time: float) -> float:
    return round((time.perf_counter() - start_time) * 1000, 2)
