"""Auth service tests."""

import pytest
from datetime import timedelta
from fastapi import HTTPException
from httpx import AsyncClient

from returnflow.schemas import Role
from returnflow.services.auth import create_access_token, decode_token, token_for

from conftest import ADMIN, CUSTOMER, auth_headers


class TestJWT:
    def test_token_for_carries_role(self):
        payload = decode_token(token_for("wh-1", Role.WAREHOUSE))
        assert payload["sub"] == "wh-1"
        assert payload["role"] == "warehouse"
        assert "exp" in payload
        assert "iat" in payload

    def test_role_given_as_text(self):
        assert decode_token(token_for("agent-1", "agent"))["role"] == "agent"

    def test_unknown_role_rejected(self):
        with pytest.raises(ValueError):
            token_for("x", "superuser")

    def test_custom_expiry(self):
        token = create_access_token({"sub": "cust-1"}, expires_delta=timedelta(minutes=5))
        payload = decode_token(token)
        assert payload["exp"] - payload["iat"] <= 300 + 1

    def test_invalid_token_raises(self):
        with pytest.raises(HTTPException) as exc_info:
            decode_token("invalid.token.here")
        assert exc_info.value.status_code == 401

    def test_expired_token_raises(self):
        token = token_for("cust-1", Role.CUSTOMER, expires_delta=timedelta(minutes=-1))
        with pytest.raises(HTTPException) as exc_info:
            decode_token(token)
        assert exc_info.value.status_code == 401


class TestAccessControl:
    @pytest.mark.asyncio
    async def test_missing_token(self, client: AsyncClient):
        resp = await client.get("/api/v1/returns/")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_token_without_role(self, client: AsyncClient):
        token = create_access_token({"sub": "cust-1"})
        resp = await client.get("/api/v1/returns/", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_role(self, client: AsyncClient):
        resp = await client.get("/api/v1/admin/returns/", headers=auth_headers(CUSTOMER))
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_right_role(self, client: AsyncClient):
        resp = await client.get("/api/v1/admin/returns/", headers=auth_headers(ADMIN))
        assert resp.status_code == 200
        assert resp.json() == []

    @pytest.mark.asyncio
    async def test_policies_are_public(self, client: AsyncClient):
        resp = await client.get("/api/v1/returns/policies")
        assert resp.status_code == 200
        assert resp.json()["return_window_days"] == 7
