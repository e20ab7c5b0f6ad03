"""Session endpoints: password sign-in, the current user and logout.

``/auth/login`` is public and issues the session token.  ``/auth/me``
and ``/auth/logout`` require an interactive session; service-token and
dev-header identities are rejected with 403.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from reporting_api.dependencies import (
    ScopedSessionDep,
    SessionFactoryDep,
    SessionIdentityDep,
    SessionStoreDep,
    TokenManagerDep,
)
from reporting_api.security import TokenError, hash_token_id
from reporting_api.services.directory_service import SessionService
from reporting_api.services.user_service import AccountError, LoginService
from reporting_core.tenancy.guard import tenant_scope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    email: str = ""
    password: str = ""


def _bearer_token(request: Request) -> str:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Bearer token required")
    return token.strip()


@router.post("/login")
async def login(
    body: LoginRequest,
    request: Request,
    session_factory: SessionFactoryDep,
    store: SessionStoreDep,
    tokens: TokenManagerDep,
) -> dict[str, Any]:
    """Exchange email and password for a session token."""
    if not body.email.strip() or not body.password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    async with session_factory() as session:
        try:
            identity = await LoginService(session).authenticate(body.email, body.password)
        except AccountError as exc:
            # Keep the failed-attempt counter.
            await session.commit()
            raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
        await session.commit()

    async with tenant_scope(session_factory, identity) as scoped:
        sessions = SessionService(scoped, store)
        issued = await sessions.open_session(
            tokens,
            identity,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
        user = await sessions.current_user(identity.principal_id or "")

    return {"token": issued.token, "expires_at": issued.expires_at, "user": user or identity.to_public_dict()}


@router.get("/me")
async def current_user(
    identity: SessionIdentityDep,
    scoped: ScopedSessionDep,
    store: SessionStoreDep,
) -> dict[str, Any]:
    """Profile of the signed-in user, falling back to the token claims."""
    user = None
    if identity.principal_id is not None:
        user = await SessionService(scoped, store).current_user(identity.principal_id)
    if user is None:
        return {"user": identity.to_public_dict()}
    return {"user": user}


@router.post("/logout")
async def logout(
    request: Request,
    identity: SessionIdentityDep,
    scoped: ScopedSessionDep,
    store: SessionStoreDep,
    tokens: TokenManagerDep,
) -> dict[str, Any]:
    """Invalidate the presented session token immediately."""
    try:
        claims = tokens.decode(_bearer_token(request))
    except TokenError as exc:
        raise HTTPException(status_code=401, detail="Invalid session token") from exc
    await SessionService(scoped, store).logout(hash_token_id(claims["jti"]))
    logger.info("Logout principal=%s", identity.principal_id)
    return {"message": "Logged out"}
