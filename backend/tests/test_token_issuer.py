"""
Tests for service-scoped token issuance.
"""

from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import pytest
from jose import jwt

from auth import secret_vault, token_issuer
from auth.errors import ServiceNotConfigured
from config import settings
from models import Service, User


class TestRedirectTarget:

    def test_no_redirect_uri(self):
        assert token_issuer.build_redirect_target(None, "tok", "u1") is None
        assert token_issuer.build_redirect_target("", "tok", "u1") is None

    def test_plain_uri_gets_query(self):
        target = token_issuer.build_redirect_target("https://app.example.com/cb", "tok", "u1")
        assert target == "https://app.example.com/cb?token=tok&user_id=u1"

    def test_existing_query_is_extended(self):
        target = token_issuer.build_redirect_target(
            "https://app.example.com/cb?next=/home", "tok", "u1"
        )
        assert target == "https://app.example.com/cb?next=/home&token=tok&user_id=u1"

    def test_trailing_question_mark(self):
        target = token_issuer.build_redirect_target("https://app.example.com/cb?", "tok", "u1")
        assert target == "https://app.example.com/cb?token=tok&user_id=u1"

    def test_fragment_stays_last(self):
        target = token_issuer.build_redirect_target(
            "https://app.example.com/cb#/dashboard", "tok", "u1"
        )
        assert target == "https://app.example.com/cb?token=tok&user_id=u1#/dashboard"

    def test_token_is_url_encoded(self):
        target = token_issuer.build_redirect_target("https://app.example.com/cb", "a+b/c", "u1")
        query = parse_qs(urlsplit(target).query)
        assert query["token"] == ["a+b/c"]


class TestIssue:

    @pytest.mark.asyncio
    async def test_claims(self, db, helpdesk):
        issued = await token_issuer.issue(db, helpdesk.user.id, helpdesk.service.id)

        secret = await secret_vault.get_signing_secret(db, helpdesk.service.id)
        claims = jwt.decode(
            issued.token,
            secret,
            algorithms=[settings.JWT_ALGORITHM],
            audience=helpdesk.service.id,
        )
        assert claims["sub"] == helpdesk.user.id
        assert claims["aud"] == helpdesk.service.id
        assert claims["roles"] == [helpdesk.agent.id]
        assert claims["type"] == "access"
        assert claims["email"] == "agent@example.com"
        assert claims["rbac_model"] == helpdesk.model.id
        assert claims["exp"] - claims["iat"] == settings.TOKEN_EXPIRATION_MINUTES * 60

        assert issued.service_id == helpdesk.service.id
        assert issued.roles == [helpdesk.agent.id]
        assert issued.expires_in == settings.TOKEN_EXPIRATION_MINUTES * 60
        assert issued.redirect_target is None

    @pytest.mark.asyncio
    async def test_secret_generated_on_first_issue(self, db):
        user = User(role="user")
        service = Service(name="Wiki", url="https://wiki.example.com")
        db.add_all([user, service])
        await db.commit()
        assert await secret_vault.get_signing_secret(db, service.id) is None

        issued = await token_issuer.issue(db, user.id, service.id)

        secret = await secret_vault.get_signing_secret(db, service.id)
        assert secret is not None
        claims = jwt.decode(
            issued.token, secret, algorithms=[settings.JWT_ALGORITHM], audience=service.id
        )
        # No roles on an unbound service; identity only
        assert claims["roles"] == []
        assert claims["rbac_model"] is None

    @pytest.mark.asyncio
    async def test_same_secret_across_issues(self, db, helpdesk):
        await token_issuer.issue(db, helpdesk.user.id, helpdesk.service.id)
        first = await secret_vault.get_signing_secret(db, helpdesk.service.id)
        await token_issuer.issue(db, helpdesk.user.id, helpdesk.service.id)
        assert await secret_vault.get_signing_secret(db, helpdesk.service.id) == first

    @pytest.mark.asyncio
    async def test_redirect_target(self, db, helpdesk):
        issued = await token_issuer.issue(
            db,
            helpdesk.user.id,
            helpdesk.service.id,
            redirect_uri="https://helpdesk.example.com/callback?state=abc",
        )
        query = parse_qs(urlsplit(issued.redirect_target).query)
        assert query == {
            "state": ["abc"],
            "token": [issued.token],
            "user_id": [helpdesk.user.id],
        }

    @pytest.mark.asyncio
    async def test_custom_lifetime(self, db, helpdesk):
        issued = await token_issuer.issue(
            db, helpdesk.user.id, helpdesk.service.id, expires_delta=timedelta(minutes=5)
        )
        assert issued.expires_in == 300

    @pytest.mark.asyncio
    async def test_unknown_service(self, db, helpdesk):
        with pytest.raises(ServiceNotConfigured):
            await token_issuer.issue(db, helpdesk.user.id, "no-such-service")

    @pytest.mark.asyncio
    async def test_undecryptable_secret(self, db, helpdesk, monkeypatch):
        await secret_vault.ensure_secret(db, helpdesk.service.id)
        monkeypatch.setattr(settings, "SECRET_ENCRYPTION_KEY", "rotated-master-key")
        with pytest.raises(ServiceNotConfigured):
            await token_issuer.issue(db, helpdesk.user.id, helpdesk.service.id)
