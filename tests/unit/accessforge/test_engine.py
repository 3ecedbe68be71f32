# -*- coding: utf-8 -*-
"""Location: ./tests/unit/accessforge/test_engine.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Tests for the AccessControlEngine facade: wiring, end-to-end decisions and
cache management.
"""

# Third-Party
import pytest

# First-Party
from accessforge import AccessControlEngine
from accessforge.cache.decision_cache import MemoryDecisionCache
from accessforge.config import Settings
from accessforge.models import (
    FieldPermissionSet,
    Organization,
    PolicyCreate,
    PolicyEffect,
    ResourceContext,
    ResourceCriteria,
    RoleAssignment,
    SubjectCriteria,
    User,
)
from accessforge.ports import PolicyStore
from accessforge.services.field_audit import ACCESS_DENIED_EVENT, FIELD_ACCESS_EVENT, MemoryAuditSink, SENSITIVE_ACCESS_EVENT
from accessforge.stores.memory import InMemoryAttributeRepository, InMemoryOrganizationHierarchy, InMemoryPolicyRepository, InMemoryRoleDirectory


class ReadOnlyStore(PolicyStore):
    """Policy source without write support."""

    def __init__(self, policies):
        self._policies = list(policies)

    async def find_applicable_policies(self, organization_id, roles=None, user_id=None, resource_type=None):
        return [p for p in self._policies if p.organization_id == organization_id]

    async def find_by_organization(self, organization_id):
        return [p for p in self._policies if p.organization_id == organization_id]


@pytest.fixture
def sink():
    return MemoryAuditSink()


@pytest.fixture
def engine(make_policy, settings, sink):
    policies = [
        make_policy("users read products", field_permissions={"product": FieldPermissionSet(readable=["id", "name", "price"], denied=["costPrice"])}),
        make_policy("managers update products", actions=["read", "update"], roles=["manager"]),
        make_policy("group-wide order access", actions=["read"], types=["order"], organization_id="holding"),
    ]
    return AccessControlEngine(
        InMemoryPolicyRepository(policies),
        hierarchy=InMemoryOrganizationHierarchy([Organization(id="holding", name="Holding"), Organization(id="org-1", name="Org 1", parent_id="holding")]),
        role_directory=InMemoryRoleDirectory([RoleAssignment(user_id="u-manager", organization_id="org-1", role_name="manager")]),
        cache=MemoryDecisionCache(),
        audit_sink=sink,
        attribute_repository=InMemoryAttributeRepository(),
        settings=settings,
    )


# ===========================================================================
# Decisions
# ===========================================================================


class TestDecisions:
    @pytest.mark.asyncio
    async def test_evaluate(self, engine, make_context):
        assert (await engine.evaluate(make_context())).allowed is True
        assert (await engine.evaluate(make_context(action="update"))).allowed is False
        assert (await engine.evaluate(make_context(action="update", roles=["manager"]))).allowed is True

    @pytest.mark.asyncio
    async def test_hierarchy(self, engine, make_context):
        direct = await engine.evaluate(make_context(resource_type="order"))
        inherited = await engine.evaluate_with_hierarchy(make_context(resource_type="order"))

        assert direct.allowed is False
        assert inherited.allowed is True
        assert inherited.reasons[-1] == "Allowed by inherited policy from organization: Holding"

    @pytest.mark.asyncio
    async def test_batch(self, engine, make_context):
        results = await engine.batch_evaluate([make_context(), make_context(action="delete")])
        assert [r.allowed for r in results] == [True, False]

    @pytest.mark.asyncio
    async def test_effective_policies(self, engine):
        policies = await engine.get_effective_policies("org-1", resource_type="order")
        assert [p.name for p in policies] == ["group-wide order access"]

    @pytest.mark.asyncio
    async def test_cross_organization_denied_without_target_policy(self, engine, make_context):
        result = await engine.evaluate_cross_organization(make_context(), "org-9")
        assert result.allowed is False


# ===========================================================================
# Abilities and fields
# ===========================================================================


class TestAbilitiesAndFields:
    @pytest.mark.asyncio
    async def test_compile_ability_uses_role_directory(self, engine):
        ability = await engine.compile_ability(User(id="u-manager"), "org-1")
        assert ability.can("update", "product", {"organizationId": "org-1"})

    @pytest.mark.asyncio
    async def test_can_with_fields_then_filter(self, engine, sink):
        result = await engine.can_with_fields(User(id="u1"), "read", ResourceContext(type="product", attributes={"organizationId": "org-1"}), "org-1")
        permissions = FieldPermissionSet(readable=result.readable_fields, denied=result.denied_fields)

        filtered = engine.filter_for_read(
            {"id": "p-1", "name": "Pen", "price": 2, "costPrice": 1},
            permissions,
            resource_type="product",
            user_id="u1",
            organization_id="org-1",
        )

        assert filtered == {"id": "p-1", "name": "Pen", "price": 2}
        assert sink.names() == [FIELD_ACCESS_EVENT, ACCESS_DENIED_EVENT]

    def test_filter_for_write_and_field_checks(self, engine, sink):
        permissions = FieldPermissionSet(writable=["name"], denied=["ssn"])

        assert engine.filter_for_write({"name": "Ada", "ssn": "1"}, permissions) == {"name": "Ada"}
        assert [c.allowed for c in engine.can_read_fields(permissions, ["name", "ssn"])] == [True, False]
        assert sink.events == []

    def test_sensitive_access_audited(self, engine, sink):
        engine.filter_for_read({"id": "c-1", "ssn": "1"}, None, resource_type="customer", user_id="u1")
        assert sink.names() == [SENSITIVE_ACCESS_EVENT, FIELD_ACCESS_EVENT]


# ===========================================================================
# Management and cache
# ===========================================================================


class TestManagementAndCache:
    @pytest.mark.asyncio
    async def test_policy_changes_visible_immediately(self, engine, make_context):
        context = make_context(action="export")
        assert (await engine.evaluate(context)).allowed is False
        await engine.evaluator.wait_for_pending_writes()

        await engine.policies.create(
            PolicyCreate(
                name="users export",
                effect=PolicyEffect.ALLOW,
                subjects=SubjectCriteria(roles=["user"]),
                resources=ResourceCriteria(types=["product"]),
                actions=["export"],
                organization_id="org-1",
            )
        )

        result = await engine.evaluate(context)
        assert result.allowed is True
        assert result.from_cache is False

    @pytest.mark.asyncio
    async def test_warm_up_uses_assigned_roles(self, engine, make_context):
        warmed = await engine.warm_up_user_cache("u-manager", "org-1", [{"resource": "product", "action": "update"}])

        result = await engine.evaluate(make_context(subject_id="u-manager", roles=["manager"], action="update"))

        assert warmed == 1
        assert (result.allowed, result.from_cache) == (True, True)

    @pytest.mark.asyncio
    async def test_invalidate_and_stats(self, engine, make_context):
        await engine.evaluate(make_context())
        await engine.evaluator.wait_for_pending_writes()

        assert engine.get_cache_stats()["size"] == 1
        assert await engine.invalidate_user("user-1", "org-1") == 1

        await engine.evaluate(make_context())
        await engine.evaluator.wait_for_pending_writes()
        assert await engine.clear_cache() == 1
        assert engine.get_cache_stats()["enabled"] is True

    @pytest.mark.asyncio
    async def test_attribute_service_available(self, engine):
        assert await engine.attributes.seed_system_attributes() == 14


class TestConstruction:
    def test_read_only_store_has_no_management(self, make_policy, settings):
        engine = AccessControlEngine(ReadOnlyStore([make_policy("p")]), settings=settings)
        assert engine.policies is None
        assert engine.attributes is None

    @pytest.mark.asyncio
    async def test_from_settings_without_cache(self, make_policy, make_context):
        engine = AccessControlEngine.from_settings(InMemoryPolicyRepository([make_policy("p")]), settings=Settings(_env_file=None, decision_cache_enabled=False))

        first = await engine.evaluate(make_context())
        second = await engine.evaluate(make_context())

        assert (first.allowed, second.from_cache) == (True, False)
        assert engine.get_cache_stats() == {"enabled": False, "backend": None}

    @pytest.mark.asyncio
    async def test_from_database(self, settings, make_context):
        engine = AccessControlEngine.from_database("sqlite:///:memory:", settings=settings)

        policy = await engine.policies.create(
            PolicyCreate(
                name="users read",
                effect=PolicyEffect.ALLOW,
                subjects=SubjectCriteria(roles=["user"]),
                resources=ResourceCriteria(types=["product"]),
                actions=["read"],
                organization_id="org-1",
            )
        )

        assert (await engine.evaluate(make_context())).allowed is True
        assert (await engine.policies.get(policy.id)).name == "users read"
        assert await engine.attributes.seed_system_attributes() == 14
