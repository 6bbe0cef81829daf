"""Request id propagation and HTTP metrics."""

from __future__ import annotations

import uuid
from time import perf_counter

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY

REQUEST_ID_HEADER = "X-Request-ID"


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        started = perf_counter()
        response = await call_next(request)
        elapsed = perf_counter() - started

        labels = {
            "method": request.method,
            "path": _route_template(request),
            "status": str(response.status_code),
        }
        REQUEST_COUNT.labels(**labels).inc()
        REQUEST_LATENCY.labels(**labels).observe(elapsed)
        if response.status_code >= 500:
            REQUEST_ERRORS.labels(**labels).inc()

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
