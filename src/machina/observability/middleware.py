"""HTTP middleware for correlation IDs and request metrics.

``RequestIdMiddleware`` accepts a well-formed ``X-Request-ID`` or mints one,
binds it together with the caller's ``X-Tenant-ID`` for the duration of the
request, and echoes the request ID on the response.

``MetricsMiddleware`` counts requests per route template
(``/api/v1/deployments/{deployment_id}``), never per concrete URL.
"""

from __future__ import annotations

import re
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from .logging import request_id_ctx, tenant_id_ctx
from .metrics import HTTP_REQUESTS_TOTAL

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9-]{8,128}$")


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        supplied = request.headers.get("x-request-id", "")
        request_id = supplied if _REQUEST_ID_RE.match(supplied) else uuid.uuid4().hex
        request.state.request_id = request_id

        tokens = [
            (request_id_ctx, request_id_ctx.set(request_id)),
            (tenant_id_ctx, tenant_id_ctx.set(request.headers.get("x-tenant-id") or None)),
        ]
        try:
            response = await call_next(request)
        finally:
            for var, token in reversed(tokens):
                var.reset(token)

        response.headers["X-Request-ID"] = request_id
        return response


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            HTTP_REQUESTS_TOTAL.labels(
                method=request.method,
                path=_route_template(request),
                status=status,
            ).inc()
