"""
Tests for the surfaces used by other backends and by auditors:

- Application wiring (the app imports and mounts every router)
- API keys (creation, listing, ``x-api-key`` authenticated endpoints)
- Service secret self-check
- Persisted audit log queries and export
"""

import json
from uuid import UUID, uuid4

import pytest
from httpx import AsyncClient

from auth.strategies import UuidLoginRequest


async def _create_service(client: AsyncClient, headers: dict, name: str = "Billing") -> dict:
    response = await client.post(
        "/api/services",
        json={"name": name, "url": f"https://{name.lower()}.example.com"},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


async def _create_key(client: AsyncClient, headers: dict, name: str = "billing-backend") -> dict:
    response = await client.post("/api/keys", json={"name": name}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


async def _member_headers(client: AsyncClient) -> dict:
    response = await client.post(
        "/api/auth/register", json={"email": "member@example.com", "password": "member-pw"}
    )
    assert response.status_code == 201, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


class TestAppWiring:

    def test_routes_mounted(self):
        from main import app

        paths = {route.path for route in app.routes}
        assert {
            "/api/auth/uuid-login",
            "/api/auth/verify-token",
            "/api/auth/verify",
            "/api/services/verify-secret",
            "/api/keys",
            "/api/users/{user_id}",
            "/api/admin/audit-logs",
            "/api/admin/audit-logs/export/json",
        } <= paths

    def test_uuid_login_request_parses_uuid(self):
        value = uuid4()
        assert UuidLoginRequest(uuid=str(value)).uuid == value
        assert isinstance(UuidLoginRequest(uuid=str(value)).uuid, UUID)
        assert UuidLoginRequest().uuid is None


# ──────────────────────────────────────────────────────────────────────────────
# API KEYS
# ──────────────────────────────────────────────────────────────────────────────


class TestApiKeys:

    @pytest.mark.asyncio
    async def test_create_shows_key_once(self, async_client: AsyncClient, admin_headers: dict):
        created = await _create_key(async_client, admin_headers)
        assert created["key"].startswith("ak_")
        assert len(created["key"]) == 51
        assert created["key_preview"] != created["key"]
        assert created["last_used_at"] is None

        listed = await async_client.get("/api/keys", headers=admin_headers)
        assert listed.status_code == 200
        assert [k["id"] for k in listed.json()] == [created["id"]]
        assert "key" not in listed.json()[0]
        assert created["key"] not in listed.text

    @pytest.mark.asyncio
    async def test_non_admin_cannot_create(self, async_client: AsyncClient, admin_headers: dict):
        response = await async_client.post(
            "/api/keys", json={"name": "x"}, headers=await _member_headers(async_client)
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self, async_client: AsyncClient, admin_headers: dict):
        response = await async_client.post("/api/keys", json={"name": "  "}, headers=admin_headers)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_verify_credentials(self, async_client: AsyncClient, admin_headers: dict):
        key = (await _create_key(async_client, admin_headers))["key"]

        response = await async_client.post(
            "/api/auth/verify",
            json={"email": "admin@example.com", "password": "admin-password"},
            headers={"x-api-key": key},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["email"] == "admin@example.com"
        assert data["user_id"]
        assert "token" not in data

        listed = await async_client.get("/api/keys", headers=admin_headers)
        assert listed.json()[0]["last_used_at"] is not None

    @pytest.mark.asyncio
    async def test_verify_wrong_password(self, async_client: AsyncClient, admin_headers: dict):
        key = (await _create_key(async_client, admin_headers))["key"]
        for email, password in (
            ("admin@example.com", "wrong-password"),
            ("nobody@example.com", "admin-password"),
        ):
            response = await async_client.post(
                "/api/auth/verify",
                json={"email": email, "password": password},
                headers={"x-api-key": key},
            )
            assert response.status_code == 200
            assert response.json() == {"valid": False, "user_id": None, "email": None}

    @pytest.mark.asyncio
    async def test_verify_requires_key(self, async_client: AsyncClient, admin_headers: dict):
        key = (await _create_key(async_client, admin_headers))["key"]
        body = {"email": "admin@example.com", "password": "admin-password"}

        missing = await async_client.post("/api/auth/verify", json=body)
        assert missing.status_code == 401

        wrong = await async_client.post(
            "/api/auth/verify", json=body, headers={"x-api-key": "ak_" + "0" * 48}
        )
        assert wrong.status_code == 401

        unprefixed = await async_client.post(
            "/api/auth/verify", json=body, headers={"x-api-key": key[3:]}
        )
        assert unprefixed.status_code == 401

    @pytest.mark.asyncio
    async def test_user_directory(self, async_client: AsyncClient, admin_headers: dict):
        key = (await _create_key(async_client, admin_headers))["key"]
        me = await async_client.get("/api/auth/me", headers=admin_headers)
        user_id = me.json()["id"]

        response = await async_client.get(
            f"/api/users/{user_id}", headers={"x-api-key": key}
        )
        assert response.status_code == 200
        assert response.json()["email"] == "admin@example.com"
        assert "password_hash" not in response.json()

        unknown = await async_client.get("/api/users/nope", headers={"x-api-key": key})
        assert unknown.status_code == 404

    @pytest.mark.asyncio
    async def test_user_directory_requires_key(
        self, async_client: AsyncClient, admin_headers: dict
    ):
        me = await async_client.get("/api/auth/me", headers=admin_headers)
        # A hub bearer token is not an API key
        response = await async_client.get(
            f"/api/users/{me.json()['id']}", headers=admin_headers
        )
        assert response.status_code == 401


# ──────────────────────────────────────────────────────────────────────────────
# SERVICE SECRET SELF-CHECK
# ──────────────────────────────────────────────────────────────────────────────


class TestVerifySecret:

    @pytest.mark.asyncio
    async def test_current_secret_accepted(self, async_client: AsyncClient, admin_headers: dict):
        service = await _create_service(async_client, admin_headers)
        secret = (
            await async_client.post(
                f"/api/services/{service['id']}/rotate-secret", headers=admin_headers
            )
        ).json()["secret"]

        response = await async_client.post(
            "/api/services/verify-secret",
            json={"serviceId": service["id"], "secret": secret},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["service"]["id"] == service["id"]
        assert secret not in response.text

    @pytest.mark.asyncio
    async def test_rotated_out_secret_rejected(
        self, async_client: AsyncClient, admin_headers: dict
    ):
        service = await _create_service(async_client, admin_headers)
        rotate = f"/api/services/{service['id']}/rotate-secret"
        old = (await async_client.post(rotate, headers=admin_headers)).json()["secret"]
        await async_client.post(rotate, headers=admin_headers)

        response = await async_client.post(
            "/api/services/verify-secret",
            json={"service_id": service["id"], "secret": old},
        )
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_service_credentials"
        assert old not in response.text

    @pytest.mark.asyncio
    async def test_service_without_secret(self, async_client: AsyncClient, admin_headers: dict):
        service = await _create_service(async_client, admin_headers)
        response = await async_client.post(
            "/api/services/verify-secret",
            json={"service_id": service["id"], "secret": "sk_guess"},
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_service(self, async_client: AsyncClient):
        response = await async_client.post(
            "/api/services/verify-secret", json={"service_id": "nope", "secret": "sk_guess"}
        )
        assert response.status_code == 404


# ──────────────────────────────────────────────────────────────────────────────
# AUDIT LOG
# ──────────────────────────────────────────────────────────────────────────────


class TestAuditLogs:

    @pytest.mark.asyncio
    async def test_events_are_listed_newest_first(
        self, async_client: AsyncClient, admin_headers: dict
    ):
        service = await _create_service(async_client, admin_headers)
        rotated = await async_client.post(
            f"/api/services/{service['id']}/rotate-secret", headers=admin_headers
        )

        response = await async_client.get("/api/admin/audit-logs", headers=admin_headers)
        assert response.status_code == 200
        page = response.json()
        actions = [item["action"] for item in page["items"]]
        assert actions[:3] == ["ROTATE_SECRET", "CREATE", "REGISTER"]
        assert page["total"] == len(page["items"])
        assert rotated.json()["secret"] not in response.text

        rotation = page["items"][0]
        assert rotation["resource_id"] == service["id"]
        assert rotation["actor"].startswith("user:")
        assert rotation["details"] == {"secret_preview": rotated.json()["secret_preview"]}

    @pytest.mark.asyncio
    async def test_filter_and_paginate(self, async_client: AsyncClient, admin_headers: dict):
        for name in ("One", "Two", "Three"):
            await _create_service(async_client, admin_headers, name)

        response = await async_client.get(
            "/api/admin/audit-logs",
            params={"action": "create", "skip": 1, "limit": 1},
            headers=admin_headers,
        )
        page = response.json()
        assert page["total"] == 3
        assert page["skip"] == 1
        assert [i["details"]["name"] for i in page["items"]] == ["Two"]

    @pytest.mark.asyncio
    async def test_failures_are_warnings(self, async_client: AsyncClient, admin_headers: dict):
        await async_client.post(
            "/api/auth/login", json={"email": "admin@example.com", "password": "wrong-pw"}
        )
        await async_client.post(
            "/api/services/verify-secret", json={"service_id": "nope", "secret": "x"}
        )
        response = await async_client.get(
            "/api/admin/audit-logs", params={"severity": "warning"}, headers=admin_headers
        )
        items = response.json()["items"]
        assert [i["action"] for i in items] == ["LOGIN_FAILED"]
        assert items[0]["status"] == "failure"
        assert "wrong-pw" not in response.text

    @pytest.mark.asyncio
    async def test_detail(self, async_client: AsyncClient, admin_headers: dict):
        page = (await async_client.get("/api/admin/audit-logs", headers=admin_headers)).json()
        entry = page["items"][0]

        response = await async_client.get(
            f"/api/admin/audit-logs/{entry['id']}", headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json() == entry

        missing = await async_client.get("/api/admin/audit-logs/999999", headers=admin_headers)
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_export_json(self, async_client: AsyncClient, admin_headers: dict):
        await _create_service(async_client, admin_headers)
        response = await async_client.get(
            "/api/admin/audit-logs/export/json",
            params={"resource": "Service"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/json")
        disposition = response.headers["content-disposition"]
        assert disposition.startswith("attachment; filename=audit-logs_")
        assert disposition.endswith(".json")

        events = json.loads(response.content)
        assert [e["action"] for e in events] == ["CREATE"]

    @pytest.mark.asyncio
    async def test_bad_severity(self, async_client: AsyncClient, admin_headers: dict):
        response = await async_client.get(
            "/api/admin/audit-logs", params={"severity": "fatal"}, headers=admin_headers
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_non_admin_forbidden(self, async_client: AsyncClient, admin_headers: dict):
        headers = await _member_headers(async_client)
        for path in ("/api/admin/audit-logs", "/api/admin/audit-logs/export/json"):
            response = await async_client.get(path, headers=headers)
            assert response.status_code == 403
