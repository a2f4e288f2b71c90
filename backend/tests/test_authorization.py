"""
Tests for token verification and permission checks.

Covers:
- Audience isolation between services
- Expiry and malformed tokens
- Secret rotation invalidates earlier tokens
- Permissions follow the current RBAC graph, not the token
"""

from datetime import timedelta

import pytest

from auth import rbac_store, secret_vault, token_issuer
from auth.authorization import authorize, effective_permissions, verify_token
from auth.errors import TokenExpired, TokenMalformed, TokenWrongAudience
from models import Service


async def _second_service(db, name="Chat") -> Service:
    service = Service(name=name, url="https://chat.example.com")
    db.add(service)
    await db.commit()
    return service


class TestVerifyToken:

    @pytest.mark.asyncio
    async def test_valid_token(self, db, helpdesk):
        issued = await token_issuer.issue(db, helpdesk.user.id, helpdesk.service.id)
        claims = await verify_token(db, issued.token, helpdesk.service.id)
        assert claims["sub"] == helpdesk.user.id
        assert claims["roles"] == [helpdesk.agent.id]

    @pytest.mark.asyncio
    async def test_token_for_other_service_rejected(self, db, helpdesk):
        chat = await _second_service(db)
        issued = await token_issuer.issue(db, helpdesk.user.id, chat.id)

        with pytest.raises(TokenWrongAudience):
            await verify_token(db, issued.token, helpdesk.service.id)

    @pytest.mark.asyncio
    async def test_token_signed_with_other_services_secret(self, db, helpdesk):
        """A token naming Helpdesk but signed with Chat's secret fails the signature."""
        chat = await _second_service(db)
        await secret_vault.ensure_secret(db, helpdesk.service.id)
        chat_secret = await secret_vault.ensure_secret(db, chat.id)

        forged = token_issuer.sign_token(
            chat_secret, helpdesk.user.id, helpdesk.service.id, [helpdesk.lead.id]
        )
        with pytest.raises(TokenMalformed):
            await verify_token(db, forged, helpdesk.service.id)

    @pytest.mark.asyncio
    async def test_audience_list_including_service(self, db, helpdesk):
        secret = await secret_vault.ensure_secret(db, helpdesk.service.id)
        token = token_issuer.sign_token(
            secret,
            helpdesk.user.id,
            helpdesk.service.id,
            [helpdesk.agent.id],
            extra_claims={"aud": ["other-service", helpdesk.service.id]},
        )
        claims = await verify_token(db, token, helpdesk.service.id)
        assert claims["sub"] == helpdesk.user.id

    @pytest.mark.asyncio
    async def test_audience_list_without_service(self, db, helpdesk):
        secret = await secret_vault.ensure_secret(db, helpdesk.service.id)
        token = token_issuer.sign_token(
            secret,
            helpdesk.user.id,
            helpdesk.service.id,
            [],
            extra_claims={"aud": ["other-service", "third-service"]},
        )
        with pytest.raises(TokenWrongAudience):
            await verify_token(db, token, helpdesk.service.id)

    @pytest.mark.asyncio
    async def test_expired_token(self, db, helpdesk):
        issued = await token_issuer.issue(
            db,
            helpdesk.user.id,
            helpdesk.service.id,
            expires_delta=timedelta(seconds=-30),
        )
        with pytest.raises(TokenExpired) as exc_info:
            await verify_token(db, issued.token, helpdesk.service.id)
        assert exc_info.value.reason == "expired"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c"])
    async def test_garbage_token(self, db, helpdesk, token):
        await secret_vault.ensure_secret(db, helpdesk.service.id)
        with pytest.raises(TokenMalformed):
            await verify_token(db, token, helpdesk.service.id)

    @pytest.mark.asyncio
    async def test_unknown_service(self, db, helpdesk):
        issued = await token_issuer.issue(db, helpdesk.user.id, helpdesk.service.id)
        with pytest.raises(TokenWrongAudience):
            await verify_token(db, issued.token, "no-such-service")

    @pytest.mark.asyncio
    async def test_service_without_secret(self, db, helpdesk):
        chat = await _second_service(db)
        secret = await secret_vault.ensure_secret(db, helpdesk.service.id)
        unaddressed = token_issuer.sign_token(secret, helpdesk.user.id, chat.id, [])
        with pytest.raises(TokenMalformed):
            await verify_token(db, unaddressed, chat.id)

    @pytest.mark.asyncio
    async def test_rotation_invalidates_tokens(self, db, helpdesk):
        before = await token_issuer.issue(db, helpdesk.user.id, helpdesk.service.id)
        await secret_vault.rotate(db, helpdesk.service.id)

        with pytest.raises(TokenMalformed):
            await verify_token(db, before.token, helpdesk.service.id)

        after = await token_issuer.issue(db, helpdesk.user.id, helpdesk.service.id)
        claims = await verify_token(db, after.token, helpdesk.service.id)
        assert claims["sub"] == helpdesk.user.id


class TestAuthorize:

    @pytest.mark.asyncio
    async def test_granted_and_denied(self, db, helpdesk):
        issued = await token_issuer.issue(db, helpdesk.user.id, helpdesk.service.id)
        assert await authorize(db, issued.token, helpdesk.service.id, "ticket.read")
        assert not await authorize(db, issued.token, helpdesk.service.id, "ticket.close")

    @pytest.mark.asyncio
    async def test_invalid_token_is_denied(self, db, helpdesk):
        await secret_vault.ensure_secret(db, helpdesk.service.id)
        assert not await authorize(db, "garbage", helpdesk.service.id, "ticket.read")

    @pytest.mark.asyncio
    async def test_cross_service_token_is_denied(self, db, helpdesk):
        chat = await _second_service(db)
        await rbac_store.bind_model(db, chat.id, helpdesk.model.id)
        await rbac_store.assign_role(db, helpdesk.user.id, chat.id, helpdesk.lead.id)

        chat_token = await token_issuer.issue(db, helpdesk.user.id, chat.id)
        assert await authorize(db, chat_token.token, chat.id, "ticket.close")
        assert not await authorize(db, chat_token.token, helpdesk.service.id, "ticket.read")

    @pytest.mark.asyncio
    async def test_role_edit_applies_to_existing_token(self, db, helpdesk):
        issued = await token_issuer.issue(db, helpdesk.user.id, helpdesk.service.id)
        assert not await authorize(db, issued.token, helpdesk.service.id, "ticket.close")

        await rbac_store.add_role_permission(db, helpdesk.agent.id, helpdesk.close.id)
        assert await authorize(db, issued.token, helpdesk.service.id, "ticket.close")

        await rbac_store.remove_role_permission(db, helpdesk.agent.id, helpdesk.read.id)
        assert not await authorize(db, issued.token, helpdesk.service.id, "ticket.read")

    @pytest.mark.asyncio
    async def test_revoked_role_no_longer_grants(self, db, helpdesk):
        issued = await token_issuer.issue(db, helpdesk.user.id, helpdesk.service.id)
        await rbac_store.unassign_role_triple(
            db, helpdesk.user.id, helpdesk.service.id, helpdesk.agent.id
        )
        assert not await authorize(db, issued.token, helpdesk.service.id, "ticket.read")

    @pytest.mark.asyncio
    async def test_role_granted_after_issue_not_in_token(self, db, helpdesk):
        """Only roles named in the token count; newer grants need a new token."""
        issued = await token_issuer.issue(db, helpdesk.user.id, helpdesk.service.id)
        await rbac_store.assign_role(
            db, helpdesk.user.id, helpdesk.service.id, helpdesk.lead.id
        )

        claims = await verify_token(db, issued.token, helpdesk.service.id)
        assert await effective_permissions(db, claims, helpdesk.service.id) == {"ticket.read"}

        fresh = await token_issuer.issue(db, helpdesk.user.id, helpdesk.service.id)
        claims = await verify_token(db, fresh.token, helpdesk.service.id)
        assert await effective_permissions(db, claims, helpdesk.service.id) == {
            "ticket.read",
            "ticket.close",
        }
