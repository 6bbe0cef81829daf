"""CORS headers for the JSON API.

Every ``/api`` response carries the same permissive header set, including
error responses and the ``OPTIONS`` preflight short-circuit. With no
configured origins the allow-origin header is still sent, empty.
"""

from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.config import settings

API_PREFIX = "/api"
ALLOWED_METHODS = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
PREFLIGHT_MAX_AGE = "86400"


def _configured_origins() -> list[str]:
    return [origin.strip() for origin in settings.allowed_origins.split(",") if origin.strip()]


def resolve_allowed_origin(origin: str | None) -> str:
    configured = _configured_origins()
    if not configured:
        return ""
    if "*" in configured:
        return "*"
    if origin and origin in configured:
        return origin
    return configured[0]


def cors_headers(request: Request) -> dict[str, str]:
    if not request.url.path.startswith(API_PREFIX):
        return {}
    headers = {
        "Access-Control-Allow-Methods": ALLOWED_METHODS,
        "Access-Control-Allow-Headers": "*",
    }
    allowed = resolve_allowed_origin(request.headers.get("origin"))
    headers["Access-Control-Allow-Origin"] = allowed
    if allowed and allowed != "*":
        headers["Vary"] = "Origin"
    return headers


class ApiCorsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        headers = cors_headers(request)
        if not headers:
            return await call_next(request)
        if request.method == "OPTIONS":
            return Response(
                status_code=204,
                headers={**headers, "Access-Control-Max-Age": PREFLIGHT_MAX_AGE},
            )
        response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response
