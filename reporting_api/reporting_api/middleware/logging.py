"""Access logging for the reporting API.

One ``reporting_api.access`` record per request, emitted after the
response (or the failure) with the caller's tenant, role and auth method
once authentication has resolved them.  Credential-bearing headers are
masked before they reach the record.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from reporting_core.tenancy.identity import TenantIdentity

logger = logging.getLogger("reporting_api.access")

CORRELATION_HEADER = "X-Correlation-ID"

_MASKED_HEADERS: frozenset[str] = frozenset({"authorization", "cookie", "cf-access-client-id", "x-tenant-id"})


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def access_payload(
    request: Request,
    *,
    status_code: int,
    duration_ms: float,
    correlation_id: str,
) -> dict[str, Any]:
    """The ``request`` mapping attached to each access record."""
    identity = getattr(request.state, "identity", None)
    caller: dict[str, Any] = {"tenant_id": "anonymous", "role": None, "auth_method": None}
    if isinstance(identity, TenantIdentity):
        caller = {
            "tenant_id": identity.session_tenant_value,
            "role": identity.role.value,
            "auth_method": identity.auth_method.value,
        }
    return {
        "method": request.method,
        "path": request.url.path,
        "query": request.url.query or None,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "client": request.client.host if request.client else None,
        "correlation_id": correlation_id,
        **caller,
        "headers": {
            name: "***" if name.lower() in _MASKED_HEADERS else value for name, value in request.headers.items()
        },
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with a correlation id and write its access record.

    The id comes from the incoming ``X-Correlation-ID`` header, or a new
    UUID-4, and is echoed on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            payload = access_payload(
                request,
                status_code=status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                correlation_id=correlation_id,
            )
            logger.log(_level_for(status_code), "request completed", extra={"request": payload})
