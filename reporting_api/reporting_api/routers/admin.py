"""Platform administration: users, tenant directory and session revocation.

Every route requires a platform administrator authenticated by session.
The authorization dependency is declared before the scoped session so a
rejected caller never opens a transaction.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from reporting_api.dependencies import AdminIdentityDep, ScopedSessionDep, SessionStoreDep
from reporting_api.pagination import PaginationDep
from reporting_api.services.directory_service import DirectoryService, SessionService
from reporting_api.services.user_service import AccountError, UserAdminService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class UserCreate(BaseModel):
    email: str
    display_name: str
    role: str
    tenant_id: str
    customer_name: str | None = None
    password: str | None = None


class UserUpdate(BaseModel):
    display_name: str | None = None
    role: str | None = None
    tenant_id: str | None = None
    customer_name: str | None = None
    is_active: bool | None = None


class PasswordReset(BaseModel):
    new_password: str


def _account_failure(exc: AccountError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/users")
async def list_users(
    admin: AdminIdentityDep,
    scoped: ScopedSessionDep,
    store: SessionStoreDep,
    pagination: PaginationDep,
    search: str | None = Query(None, description="Substring of email or display name"),
    role: str | None = Query(None),
    active: str | None = Query(None, description="true or false"),
) -> dict[str, Any]:
    active_flag = {"true": True, "false": False}.get((active or "").lower())
    return await UserAdminService(scoped.session, store).list_users(
        pagination, search=search, role=role, active=active_flag
    )


@router.post("/users", status_code=201)
async def create_user(
    body: UserCreate,
    admin: AdminIdentityDep,
    scoped: ScopedSessionDep,
    store: SessionStoreDep,
) -> dict[str, Any]:
    try:
        user = await UserAdminService(scoped.session, store).create_user(**body.model_dump())
    except AccountError as exc:
        raise _account_failure(exc) from exc
    logger.info("User %s created by %s", user["id"], admin.principal_email or admin.principal_id)
    return {"user": user}


@router.get("/users/{user_id}")
async def get_user(
    user_id: str,
    admin: AdminIdentityDep,
    scoped: ScopedSessionDep,
    store: SessionStoreDep,
) -> dict[str, Any]:
    user = await UserAdminService(scoped.session, store).get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {"user": user}


@router.put("/users/{user_id}")
async def update_user(
    user_id: str,
    body: UserUpdate,
    admin: AdminIdentityDep,
    scoped: ScopedSessionDep,
    store: SessionStoreDep,
) -> dict[str, Any]:
    try:
        user = await UserAdminService(scoped.session, store).update_user(
            user_id, body.model_dump(exclude_unset=True)
        )
    except AccountError as exc:
        raise _account_failure(exc) from exc
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {"user": user}


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: str,
    admin: AdminIdentityDep,
    scoped: ScopedSessionDep,
    store: SessionStoreDep,
) -> dict[str, Any]:
    if user_id == admin.principal_id:
        raise HTTPException(status_code=400, detail="Cannot delete your own account")
    deleted = await UserAdminService(scoped.session, store).delete_user(user_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("User %s deleted by %s", user_id, admin.principal_email or admin.principal_id)
    return {"message": "User deleted", "user_id": user_id}


@router.post("/users/{user_id}/reset-password")
async def reset_password(
    user_id: str,
    body: PasswordReset,
    admin: AdminIdentityDep,
    scoped: ScopedSessionDep,
    store: SessionStoreDep,
) -> dict[str, Any]:
    try:
        updated = await UserAdminService(scoped.session, store).set_password(user_id, body.new_password)
    except AccountError as exc:
        raise _account_failure(exc) from exc
    if not updated:
        raise HTTPException(status_code=404, detail="User not found")
    return {"message": "Password reset", "user_id": user_id}


# ---------------------------------------------------------------------------
# Tenants and sessions
# ---------------------------------------------------------------------------


@router.get("/tenants")
async def list_tenants(admin: AdminIdentityDep, scoped: ScopedSessionDep) -> dict[str, Any]:
    return {"tenants": await DirectoryService(scoped).all_tenants()}


@router.get("/sessions")
async def list_sessions(
    admin: AdminIdentityDep,
    scoped: ScopedSessionDep,
    store: SessionStoreDep,
    pagination: PaginationDep,
) -> dict[str, Any]:
    return await SessionService(scoped, store).list_active(pagination)


@router.delete("/sessions/{session_id}")
async def revoke_session(
    session_id: int,
    admin: AdminIdentityDep,
    scoped: ScopedSessionDep,
    store: SessionStoreDep,
) -> dict[str, Any]:
    revoked = await SessionService(scoped, store).revoke(session_id)
    if not revoked:
        raise HTTPException(status_code=404, detail="Session not found")
    logger.info("Session %d revoked by %s", session_id, admin.principal_email or admin.principal_id)
    return {"message": "Session revoked", "session_id": session_id}
