"""
Tests for the RBAC graph store.

Covers:
- Model / role / permission CRUD and name uniqueness
- Same-model checks on role-permission edges
- One bound model per service
- Role assignment uniqueness and model checks
- Permission resolution, including the Support/Agent scenario
- Transactional model deletion
"""

import pytest
from sqlalchemy import func, select

from auth import rbac_store
from auth.errors import Conflict, InvalidReference, NotFound
from models import (
    Permission,
    Role,
    RolePermission,
    Service,
    ServiceRbacModel,
    User,
    UserServiceRole,
)


async def _count(db, model) -> int:
    return await db.scalar(select(func.count()).select_from(model))


@pytest.fixture
def make_user(db):
    async def _make(email=None):
        user = User(email=email, role="user")
        db.add(user)
        await db.commit()
        await db.refresh(user)
        return user
    return _make


@pytest.fixture
def make_service(db):
    async def _make(name="Helpdesk"):
        service = Service(name=name, url=f"https://{name.lower()}.example.com")
        db.add(service)
        await db.commit()
        await db.refresh(service)
        return service
    return _make


@pytest.fixture
def support_model(db):
    """RBAC model "Support": Agent → ticket.read; Lead → ticket.read, ticket.close."""
    async def _make():
        model = await rbac_store.create_model(db, "Support", "Helpdesk roles", None)
        agent = await rbac_store.create_role(db, model.id, "Agent")
        lead = await rbac_store.create_role(db, model.id, "Lead")
        read = await rbac_store.create_permission(db, model.id, "ticket.read")
        close = await rbac_store.create_permission(db, model.id, "ticket.close")
        await rbac_store.add_role_permission(db, agent.id, read.id)
        await rbac_store.add_role_permission(db, lead.id, read.id)
        await rbac_store.add_role_permission(db, lead.id, close.id)
        return model, agent, lead, read, close
    return _make


class TestModelsRolesPermissions:

    @pytest.mark.asyncio
    async def test_create_and_list(self, db):
        model = await rbac_store.create_model(db, "Support", "", None)
        await rbac_store.create_role(db, model.id, "Agent")
        await rbac_store.create_permission(db, model.id, "ticket.read")

        assert [m.name for m in await rbac_store.list_models(db)] == ["Support"]
        assert [r.name for r in await rbac_store.list_roles(db, model.id)] == ["Agent"]
        assert [p.name for p in await rbac_store.list_permissions(db, model.id)] == [
            "ticket.read"
        ]

    @pytest.mark.asyncio
    async def test_duplicate_role_name_conflicts(self, db):
        model = await rbac_store.create_model(db, "Support", "", None)
        await rbac_store.create_role(db, model.id, "Agent")
        with pytest.raises(Conflict):
            await rbac_store.create_role(db, model.id, "Agent")

    @pytest.mark.asyncio
    async def test_same_role_name_in_two_models(self, db):
        first = await rbac_store.create_model(db, "Support", "", None)
        second = await rbac_store.create_model(db, "Sales", "", None)
        await rbac_store.create_role(db, first.id, "Agent")
        await rbac_store.create_role(db, second.id, "Agent")

    @pytest.mark.asyncio
    async def test_rename_into_existing_name_conflicts(self, db):
        model = await rbac_store.create_model(db, "Support", "", None)
        await rbac_store.create_permission(db, model.id, "ticket.read")
        other = await rbac_store.create_permission(db, model.id, "ticket.write")
        with pytest.raises(Conflict):
            await rbac_store.update_permission(db, other.id, name="ticket.read")

    @pytest.mark.asyncio
    async def test_role_in_unknown_model(self, db):
        with pytest.raises(NotFound):
            await rbac_store.create_role(db, "missing", "Agent")


class TestEdges:

    @pytest.mark.asyncio
    async def test_cross_model_edge_rejected(self, db):
        support = await rbac_store.create_model(db, "Support", "", None)
        sales = await rbac_store.create_model(db, "Sales", "", None)
        agent = await rbac_store.create_role(db, support.id, "Agent")
        quote = await rbac_store.create_permission(db, sales.id, "quote.create")

        with pytest.raises(InvalidReference):
            await rbac_store.add_role_permission(db, agent.id, quote.id)
        assert await _count(db, RolePermission) == 0

    @pytest.mark.asyncio
    async def test_duplicate_edge_is_noop(self, db, support_model):
        _, agent, _, read, _ = await support_model()
        edges = await _count(db, RolePermission)
        await rbac_store.add_role_permission(db, agent.id, read.id)
        assert await _count(db, RolePermission) == edges

    @pytest.mark.asyncio
    async def test_set_role_permissions_replaces(self, db, support_model):
        _, _, lead, read, close = await support_model()
        result = await rbac_store.set_role_permissions(db, lead.id, [close.id])
        assert [p.name for p in result] == ["ticket.close"]
        assert [p.name for p in await rbac_store.list_role_permissions(db, lead.id)] == [
            "ticket.close"
        ]

    @pytest.mark.asyncio
    async def test_set_role_permissions_cross_model_leaves_edges(self, db, support_model):
        _, _, lead, _, _ = await support_model()
        sales = await rbac_store.create_model(db, "Sales", "", None)
        quote = await rbac_store.create_permission(db, sales.id, "quote.create")

        with pytest.raises(InvalidReference):
            await rbac_store.set_role_permissions(db, lead.id, [quote.id])
        names = [p.name for p in await rbac_store.list_role_permissions(db, lead.id)]
        assert names == ["ticket.close", "ticket.read"]

    @pytest.mark.asyncio
    async def test_role_permission_mappings(self, db, support_model):
        model, *_ = await support_model()
        mappings = await rbac_store.list_role_permission_mappings(db, model.id)
        by_role = {m["role_name"]: [p["name"] for p in m["permissions"]] for m in mappings}
        assert by_role == {
            "Agent": ["ticket.read"],
            "Lead": ["ticket.close", "ticket.read"],
        }

    @pytest.mark.asyncio
    async def test_export(self, db, support_model):
        model, *_ = await support_model()
        exported = await rbac_store.export_model(db, model.id)
        assert exported["name"] == "Support"
        assert {p["name"] for p in exported["permissions"]} == {"ticket.read", "ticket.close"}
        assert {r["name"] for r in exported["roles"]} == {"Agent", "Lead"}


class TestBinding:

    @pytest.mark.asyncio
    async def test_bind_and_rebind_same_model(self, db, make_service, support_model):
        service = await make_service()
        model, *_ = await support_model()

        await rbac_store.bind_model(db, service.id, model.id)
        await rbac_store.bind_model(db, service.id, model.id)

        assert (await rbac_store.get_bound_model(db, service.id)).id == model.id
        assert await _count(db, ServiceRbacModel) == 1

    @pytest.mark.asyncio
    async def test_bind_different_model_conflicts(self, db, make_service, support_model):
        service = await make_service()
        model, *_ = await support_model()
        other = await rbac_store.create_model(db, "Sales", "", None)
        await rbac_store.bind_model(db, service.id, model.id)

        with pytest.raises(Conflict) as exc_info:
            await rbac_store.bind_model(db, service.id, other.id)
        assert exc_info.value.details["bound_model_id"] == model.id
        assert (await rbac_store.get_bound_model(db, service.id)).id == model.id

    @pytest.mark.asyncio
    async def test_unbind_then_bind_other(self, db, make_service, support_model):
        service = await make_service()
        model, *_ = await support_model()
        other = await rbac_store.create_model(db, "Sales", "", None)
        await rbac_store.bind_model(db, service.id, model.id)

        assert await rbac_store.unbind_model(db, service.id) is True
        await rbac_store.bind_model(db, service.id, other.id)
        assert (await rbac_store.get_bound_model(db, service.id)).id == other.id

    @pytest.mark.asyncio
    async def test_one_model_many_services(self, db, make_service, support_model):
        model, *_ = await support_model()
        first = await make_service("Helpdesk")
        second = await make_service("Chat")
        await rbac_store.bind_model(db, first.id, model.id)
        await rbac_store.bind_model(db, second.id, model.id)

        services = await rbac_store.list_model_services(db, model.id)
        assert {s.name for s in services} == {"Helpdesk", "Chat"}

    @pytest.mark.asyncio
    async def test_bind_unknown_model(self, db, make_service):
        service = await make_service()
        with pytest.raises(InvalidReference):
            await rbac_store.bind_model(db, service.id, "missing")


class TestAssignments:

    @pytest.mark.asyncio
    async def test_support_scenario(self, db, make_user, make_service, support_model):
        user = await make_user("u@example.com")
        service = await make_service()
        model, agent, *_ = await support_model()
        await rbac_store.bind_model(db, service.id, model.id)

        assignment = await rbac_store.assign_role(db, user.id, service.id, agent.id)
        assert await rbac_store.resolve_permissions(db, user.id, service.id) == {"ticket.read"}

        await rbac_store.unassign_role(db, assignment.id)
        assert await rbac_store.resolve_permissions(db, user.id, service.id) == set()

    @pytest.mark.asyncio
    async def test_reassign_is_conflict_without_new_row(
        self, db, make_user, make_service, support_model
    ):
        user = await make_user()
        service = await make_service()
        model, agent, *_ = await support_model()
        await rbac_store.bind_model(db, service.id, model.id)
        first = await rbac_store.assign_role(db, user.id, service.id, agent.id)

        with pytest.raises(Conflict) as exc_info:
            await rbac_store.assign_role(db, user.id, service.id, agent.id)
        assert exc_info.value.details["assignment_id"] == first.id
        assert await _count(db, UserServiceRole) == 1

    @pytest.mark.asyncio
    async def test_multiple_roles_union(self, db, make_user, make_service, support_model):
        user = await make_user()
        service = await make_service()
        model, agent, lead, *_ = await support_model()
        await rbac_store.bind_model(db, service.id, model.id)
        await rbac_store.assign_role(db, user.id, service.id, agent.id)
        lead_grant = await rbac_store.assign_role(db, user.id, service.id, lead.id)

        assert await rbac_store.resolve_permissions(db, user.id, service.id) == {
            "ticket.read",
            "ticket.close",
        }

        # ticket.read is still granted by Agent; only ticket.close goes away
        await rbac_store.unassign_role(db, lead_grant.id)
        assert await rbac_store.resolve_permissions(db, user.id, service.id) == {"ticket.read"}

    @pytest.mark.asyncio
    async def test_same_role_on_two_services(self, db, make_user, make_service, support_model):
        user = await make_user()
        first = await make_service("Helpdesk")
        second = await make_service("Chat")
        model, agent, *_ = await support_model()
        await rbac_store.bind_model(db, first.id, model.id)
        await rbac_store.bind_model(db, second.id, model.id)

        await rbac_store.assign_role(db, user.id, first.id, agent.id)
        await rbac_store.assign_role(db, user.id, second.id, agent.id)
        await rbac_store.unassign_role_triple(db, user.id, first.id, agent.id)

        assert await rbac_store.resolve_permissions(db, user.id, first.id) == set()
        assert await rbac_store.resolve_permissions(db, user.id, second.id) == {"ticket.read"}

    @pytest.mark.asyncio
    async def test_role_from_other_model_rejected(
        self, db, make_user, make_service, support_model
    ):
        user = await make_user()
        service = await make_service()
        model, *_ = await support_model()
        sales = await rbac_store.create_model(db, "Sales", "", None)
        rep = await rbac_store.create_role(db, sales.id, "Rep")
        await rbac_store.bind_model(db, service.id, model.id)

        with pytest.raises(InvalidReference):
            await rbac_store.assign_role(db, user.id, service.id, rep.id)

    @pytest.mark.asyncio
    async def test_assign_on_unbound_service_rejected(
        self, db, make_user, make_service, support_model
    ):
        user = await make_user()
        service = await make_service()
        _, agent, *_ = await support_model()
        with pytest.raises(InvalidReference):
            await rbac_store.assign_role(db, user.id, service.id, agent.id)

    @pytest.mark.asyncio
    async def test_assign_unknown_user(self, db, make_service, support_model):
        service = await make_service()
        model, agent, *_ = await support_model()
        await rbac_store.bind_model(db, service.id, model.id)
        with pytest.raises(InvalidReference):
            await rbac_store.assign_role(db, "nobody", service.id, agent.id)

    @pytest.mark.asyncio
    async def test_no_roles_is_empty_set(self, db, make_user, make_service):
        user = await make_user()
        service = await make_service()
        assert await rbac_store.resolve_permissions(db, user.id, service.id) == set()

    @pytest.mark.asyncio
    async def test_role_edit_shows_up_immediately(
        self, db, make_user, make_service, support_model
    ):
        user = await make_user()
        service = await make_service()
        model, agent, _, _, close = await support_model()
        await rbac_store.bind_model(db, service.id, model.id)
        await rbac_store.assign_role(db, user.id, service.id, agent.id)

        await rbac_store.add_role_permission(db, agent.id, close.id)
        assert "ticket.close" in await rbac_store.resolve_permissions(db, user.id, service.id)

    @pytest.mark.asyncio
    async def test_unbind_removes_assignments(
        self, db, make_user, make_service, support_model
    ):
        user = await make_user()
        service = await make_service()
        model, agent, *_ = await support_model()
        await rbac_store.bind_model(db, service.id, model.id)
        await rbac_store.assign_role(db, user.id, service.id, agent.id)

        await rbac_store.unbind_model(db, service.id)
        assert await rbac_store.list_assignments(db, service_id=service.id) == []
        assert await rbac_store.resolve_permissions(db, user.id, service.id) == set()


class TestDeleteModel:

    @pytest.mark.asyncio
    async def test_cascade(self, db, make_user, make_service, support_model):
        user = await make_user()
        service = await make_service()
        model, agent, *_ = await support_model()
        await rbac_store.bind_model(db, service.id, model.id)
        await rbac_store.assign_role(db, user.id, service.id, agent.id)

        await rbac_store.delete_model(db, model.id)

        assert await _count(db, Role) == 0
        assert await _count(db, Permission) == 0
        assert await _count(db, RolePermission) == 0
        assert await _count(db, ServiceRbacModel) == 0
        assert await _count(db, UserServiceRole) == 0
        assert await rbac_store.get_bound_model(db, service.id) is None
        # Unrelated rows survive
        assert await db.get(Service, service.id) is not None
        assert await db.get(User, user.id) is not None

    @pytest.mark.asyncio
    async def test_failed_delete_leaves_everything(self, db, support_model, monkeypatch):
        model, *_ = await support_model()
        model_id = model.id
        roles_before = await _count(db, Role)
        edges_before = await _count(db, RolePermission)

        original_execute = db.execute
        calls = {"n": 0}

        async def failing_execute(statement, *args, **kwargs):
            calls["n"] += 1
            # Fail after edges and assignments have been deleted
            if calls["n"] == 3:
                raise RuntimeError("storage failure")
            return await original_execute(statement, *args, **kwargs)

        monkeypatch.setattr(db, "execute", failing_execute)
        with pytest.raises(RuntimeError):
            await rbac_store.delete_model(db, model_id)
        monkeypatch.setattr(db, "execute", original_execute)

        assert await _count(db, Role) == roles_before
        assert await _count(db, RolePermission) == edges_before
        assert (await rbac_store.get_model(db, model_id)).name == "Support"

    @pytest.mark.asyncio
    async def test_delete_unknown_model(self, db):
        with pytest.raises(NotFound):
            await rbac_store.delete_model(db, "missing")
