"""Tests for session token signing and verification."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import jwt
import pytest
from reporting_api.security import SessionTokenManager, TokenError, hash_token_id
from reporting_core.state.session_store import session_marker_key
from reporting_core.tenancy.identity import AuthMethod, Role, TenantIdentity

SECRET = "unit-test-secret"


@pytest.fixture()
def manager() -> SessionTokenManager:
    return SessionTokenManager(SECRET, ttl=timedelta(hours=1))


class TestEncodeDecode:
    def test_claims(self, manager, customer_user):
        token, jti, expires_at = manager.encode(customer_user)
        claims = manager.decode(token)
        assert claims["sub"] == "u-acme"
        assert claims["jti"] == jti
        assert claims["role"] == "customer"
        assert claims["tenant_id"] == "T1"
        assert claims["customer_name"] == "Acme"
        assert claims["exp"] == int(expires_at.timestamp())

    def test_admin_role_claim(self, manager, admin_user):
        token, _, _ = manager.encode(admin_user)
        assert manager.decode(token)["role"] == "admin"

    def test_customer_claim_only_for_customers(self, manager, tenant_user):
        token, _, _ = manager.encode(tenant_user)
        assert "customer_name" not in manager.decode(token)

    def test_service_identity_cannot_get_session(self, manager):
        identity = TenantIdentity(tenant_id="T1", role=Role.TENANT, auth_method=AuthMethod.SERVICE_TOKEN)
        with pytest.raises(ValueError, match="principal"):
            manager.encode(identity)

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            SessionTokenManager("")


class TestVerificationFailures:
    def test_expired(self, manager, tenant_user):
        token, _, _ = manager.encode(tenant_user, now=datetime.now(UTC) - timedelta(hours=2))
        with pytest.raises(TokenError, match="expired"):
            manager.decode(token)

    def test_wrong_secret(self, tenant_user):
        token, _, _ = SessionTokenManager("other").encode(tenant_user)
        with pytest.raises(TokenError):
            SessionTokenManager(SECRET).decode(token)

    def test_missing_claims(self):
        token = jwt.encode({"sub": "u-1", "exp": datetime.now(UTC) + timedelta(hours=1)}, SECRET, algorithm="HS256")
        with pytest.raises(TokenError):
            SessionTokenManager(SECRET).decode(token)

    def test_error_message_excludes_token(self, manager):
        with pytest.raises(TokenError) as excinfo:
            manager.decode("garbage.token.value")
        assert "garbage" not in str(excinfo.value)

    def test_token_error_is_permission_error(self):
        assert issubclass(TokenError, PermissionError)


class TestIssuance:
    @pytest.mark.asyncio
    async def test_issue_writes_marker(self, manager, session_store, tenant_user):
        issued = await manager.issue(session_store, tenant_user)
        marker = await session_store.get(session_marker_key(issued.token_hash))
        assert marker is not None
        assert marker["user_id"] == "u-t1"
        assert issued.token_hash == hash_token_id(issued.jti)

    @pytest.mark.asyncio
    async def test_revoke_deletes_marker(self, manager, session_store, tenant_user):
        issued = await manager.issue(session_store, tenant_user)
        await manager.revoke(session_store, issued.jti)
        assert await session_store.get(session_marker_key(issued.token_hash)) is None


def test_hash_token_id_stable():
    assert hash_token_id("abc") == hash_token_id("abc")
    assert hash_token_id("abc") != hash_token_id("abd")
    assert "abc" not in hash_token_id("abc")
