"""Credential resolution ahead of every non-public handler.

The :class:`~reporting_api.auth.resolver.CredentialResolver` kept on
``app.state`` turns the request's headers into a
:class:`~reporting_core.tenancy.identity.TenantIdentity`.  The identity
together with its tenant value and rate-limit key are placed on
``request.state``; a request that resolves to nothing gets the 401
envelope and never reaches a router.
"""

from __future__ import annotations

import logging

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from reporting_api.errors import error_response
from reporting_api.middleware.rate_limit import limit_key

logger = logging.getLogger(__name__)

PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/",
        "/health",
        "/ready",
        "/api/v1",
        "/api/v1/health",
        "/api/v1/auth/login",
        "/openapi.json",
        "/favicon.ico",
    }
)
_DOC_PREFIXES: tuple[str, ...] = ("/docs", "/redoc")


def is_public(request: Request) -> bool:
    path = request.url.path
    return request.method == "OPTIONS" or path in PUBLIC_PATHS or path.startswith(_DOC_PREFIXES)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if is_public(request):
            return await call_next(request)

        resolver = getattr(request.app.state, "credential_resolver", None)
        if resolver is None:
            logger.error("Credential resolver missing on app.state; rejecting %s", request.url.path)
            return error_response(503, detail="Authentication is unavailable")

        identity = await resolver.resolve(request)
        if identity is None:
            return error_response(401, detail="Valid credentials required")

        request.state.identity = identity
        request.state.tenant_id = identity.session_tenant_value
        request.state.rate_limit_key = limit_key(identity)
        return await call_next(request)
