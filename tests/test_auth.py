"""Tests for tenant token handling."""
from datetime import timedelta

import pytest
from fastapi import HTTPException
from jose import jwt

from payledger.core.auth import create_access_token, decode_tenant_id, require_admin_tenant
from payledger.core.config import settings


class TestTenantTokens:
    """Tenant id travels in the sub claim."""

    def test_token_round_trip(self):
        token = create_access_token("tenant-42")

        assert decode_tenant_id(token) == "tenant-42"

    def test_expired_token_rejected(self):
        token = create_access_token("tenant-42", expires_delta=timedelta(minutes=-5))

        with pytest.raises(HTTPException) as exc_info:
            decode_tenant_id(token)
        assert exc_info.value.status_code == 401

    def test_wrong_secret_rejected(self):
        token = jwt.encode({"sub": "tenant-42"}, "some-other-secret", algorithm=settings.JWT_ALGORITHM)

        with pytest.raises(HTTPException):
            decode_tenant_id(token)

    def test_token_without_tenant_rejected(self):
        token = jwt.encode({"foo": "bar"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

        with pytest.raises(HTTPException) as exc_info:
            decode_tenant_id(token)
        assert exc_info.value.status_code == 401


class TestAdminTenant:

    @pytest.mark.asyncio
    async def test_non_admin_forbidden(self, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_TENANT_IDS", ["ops"])

        with pytest.raises(HTTPException) as exc_info:
            await require_admin_tenant("tenant-1")
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_admin_allowed(self, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_TENANT_IDS", ["ops"])

        assert await require_admin_tenant("ops") == "ops"
