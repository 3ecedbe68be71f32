# -*- coding: utf-8 -*-
"""Location: ./tests/unit/accessforge/services/test_ability_compiler.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Unit tests for ability compilation, role resolution and field-aware checks.
"""

# Standard
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

# Third-Party
import pytest

# First-Party
from accessforge.models import (
    CompileOptions,
    EnvironmentContext,
    FieldPermissionSet,
    Membership,
    PolicyConditions,
    ResourceContext,
    RoleAssignment,
    User,
    utc_now,
)
from accessforge.ports import PolicyStore, StoreError
from accessforge.services.ability_compiler import Ability, AbilityCompiler
from accessforge.stores.memory import InMemoryPolicyRepository, InMemoryRoleDirectory

ORG = "org-1"
OWN = {"organizationId": ORG}


@pytest.fixture
def compiler_for(settings):
    def _build(*policies, assignments=()):
        return AbilityCompiler(InMemoryPolicyRepository(policies), InMemoryRoleDirectory(assignments), settings=settings)

    return _build


def _assign(role, priority=0, **kwargs):
    return RoleAssignment(user_id="u1", organization_id=ORG, role_name=role, priority=priority, **kwargs)


# ===========================================================================
# Compilation
# ===========================================================================


class TestCompile:
    @pytest.mark.asyncio
    async def test_super_admin_can_do_anything(self, compiler_for):
        ability = await compiler_for().compile(User(id="root", metadata={"isSuperAdmin": True}), ORG)

        assert ability.can("delete", "organization", {"id": ORG})
        assert ability.can("approve", "invoice", {"organizationId": "org-2"})

    @pytest.mark.asyncio
    async def test_super_admin_flag_must_be_true(self, compiler_for):
        ability = await compiler_for().compile(User(id="u1", metadata={"isSuperAdmin": "yes"}), ORG)
        assert ability.cannot("delete", "product", OWN)

    @pytest.mark.asyncio
    async def test_rules_scoped_to_organization(self, compiler_for, make_policy):
        ability = await compiler_for(make_policy("read products")).compile(User(id="u1"), ORG)

        assert ability.can("read", "product", OWN)
        assert ability.cannot("read", "product", {"organizationId": "org-2"})
        assert ability.can("read", "Product")
        assert ability.cannot("update", "product", OWN)

    @pytest.mark.asyncio
    async def test_resource_attribute_variables_resolved_for_user(self, compiler_for, make_policy):
        policy = make_policy("own orders", actions=["update"], types=["order"], resource_attributes={"ownerId": "${subject.id}"})
        ability = await compiler_for(policy).compile(User(id="u1"), ORG)

        assert ability.rules[0].conditions == {"organizationId": ORG, "ownerId": "u1"}
        assert ability.can("update", "order", {**OWN, "ownerId": "u1"})
        assert ability.cannot("update", "order", {**OWN, "ownerId": "u2"})
        assert ability.can("update", "order")

    @pytest.mark.asyncio
    async def test_denial_overrides_grant(self, compiler_for, make_policy):
        ability = await compiler_for(
            make_policy("all product actions", actions=["*"]),
            make_policy("no deletes", effect="deny", actions=["delete"]),
        ).compile(User(id="u1"), ORG)

        assert ability.rules[0].action == "manage"
        assert ability.can("update", "product", OWN)
        assert ability.cannot("delete", "product", OWN)
        # conditional denials do not apply to type-level checks
        assert ability.can("delete", "product")

    @pytest.mark.asyncio
    async def test_empty_type_list_means_all(self, compiler_for, make_policy):
        ability = await compiler_for(make_policy("read anything", types=[])).compile(User(id="u1"), ORG)
        assert ability.rules[0].resource_type == "all"
        assert ability.can("read", "invoice", OWN)

    @pytest.mark.asyncio
    async def test_field_permissions_union_with_denied_winning(self, compiler_for, make_policy):
        ability = await compiler_for(
            make_policy("catalog", field_permissions={"product": FieldPermissionSet(readable=["id", "name"], writable=["name"])}),
            make_policy("pricing", field_permissions={"product": FieldPermissionSet(readable=["price", "costPrice"], denied=["costPrice"])}),
        ).compile(User(id="u1"), ORG)

        permissions = ability.field_permissions_for("PRODUCT")
        assert permissions.readable == ["id", "name", "price", "costPrice"]
        assert permissions.effective_readable == ["id", "name", "price"]
        assert permissions.is_denied("costPrice")

    @pytest.mark.asyncio
    async def test_field_permissions_for_other_types_ignored(self, compiler_for, make_policy):
        ability = await compiler_for(make_policy("catalog", field_permissions={"order": FieldPermissionSet(readable=["id"])})).compile(User(id="u1"), ORG)
        assert ability.field_permissions == {}

    @pytest.mark.asyncio
    async def test_options_filter_field_permissions(self, compiler_for, make_policy):
        compiler = compiler_for(
            make_policy(
                "mixed",
                types=["product", "order"],
                field_permissions={"product": FieldPermissionSet(readable=["id"]), "order": FieldPermissionSet(readable=["total"])},
            )
        )

        only_orders = await compiler.compile(User(id="u1"), ORG, CompileOptions(resource_type="order"))
        without = await compiler.compile(User(id="u1"), ORG, CompileOptions(include_field_permissions=False))

        assert list(only_orders.field_permissions) == ["order"]
        assert without.field_permissions == {}

    @pytest.mark.asyncio
    async def test_environment_conditions_checked_at_query_time(self, compiler_for, make_policy):
        policy = make_policy("office only", conditions=PolicyConditions(ip_addresses=["10.0.0.0/8"]))
        ability = await compiler_for(policy).compile(User(id="u1"), ORG)

        assert ability.can("read", "product", OWN, EnvironmentContext(ip_address="10.1.2.3"))
        assert ability.cannot("read", "product", OWN, EnvironmentContext(ip_address="192.168.1.1"))
        assert ability.cannot("read", "product", OWN)

    @pytest.mark.asyncio
    async def test_policies_for_other_subjects_grant_nothing(self, compiler_for, make_policy):
        ability = await compiler_for(make_policy("finance only", types=["invoice"], subject_attributes={"department": "finance"})).compile(
            User(id="u1", attributes={"department": "sales"}), ORG
        )

        assert ability.rules == []
        assert ability.cannot("read", "invoice")
        assert ability.cannot("read", "product", OWN)

    @pytest.mark.asyncio
    async def test_ip_limited_denial_applies_without_client_ip(self, compiler_for, make_policy):
        ability = await compiler_for(
            make_policy("read products"),
            make_policy("block guest network", effect="deny", conditions=PolicyConditions(ip_addresses=["192.168.100.0/24"])),
        ).compile(User(id="u1"), ORG)

        assert ability.cannot("read", "product", OWN)
        assert ability.cannot("read", "product", OWN, EnvironmentContext(ip_address="192.168.100.4"))
        assert ability.can("read", "product", OWN, EnvironmentContext(ip_address="10.0.0.1"))

    @pytest.mark.asyncio
    async def test_serialization_round_trip(self, compiler_for, make_policy):
        ability = await compiler_for(
            make_policy("read products", field_permissions={"product": FieldPermissionSet(readable=["id"])}),
        ).compile(User(id="u1"), ORG)

        data = ability.to_dict()
        restored = Ability.from_dict(data)

        assert data["rules"][0]["resourceType"] == "product"
        assert restored.can("read", "product", OWN)
        assert restored.field_permissions_for("product").readable == ["id"]


# ===========================================================================
# Roles
# ===========================================================================


class TestResolveRoles:
    @pytest.mark.asyncio
    async def test_effective_assignments_by_priority(self, compiler_for):
        now = utc_now()
        compiler = compiler_for(
            assignments=[
                _assign("manager", priority=1),
                _assign("admin", priority=10),
                _assign("owner", priority=50, valid_to=now - timedelta(days=1)),
                _assign("auditor", priority=40, valid_from=now + timedelta(days=1)),
                _assign("billing", priority=30, is_active=False),
                RoleAssignment(user_id="u1", organization_id="org-2", role_name="admin", priority=99),
            ]
        )

        assert await compiler.resolve_roles(User(id="u1"), ORG) == ["admin", "manager"]

    @pytest.mark.asyncio
    async def test_membership_fallback(self, compiler_for):
        user = User(id="u1", memberships=[Membership(organization_id="org-2", role="admin"), Membership(organization_id=ORG, role="manager")])
        assert await compiler_for().resolve_roles(user, ORG) == ["manager"]

    @pytest.mark.asyncio
    async def test_default_role(self, settings):
        compiler = AbilityCompiler(InMemoryPolicyRepository(), settings=settings)
        assert await compiler.resolve_roles(User(id="u1"), ORG) == ["user"]

    @pytest.mark.asyncio
    async def test_assigned_roles_select_policies(self, compiler_for, make_policy):
        compiler = compiler_for(make_policy("managers update", actions=["update"], roles=["manager"]), assignments=[_assign("manager")])
        ability = await compiler.compile(User(id="u1"), ORG)
        assert ability.can("update", "product", OWN)


class TestRoleDefaults:
    @pytest.mark.asyncio
    async def test_admin(self, compiler_for):
        ability = await compiler_for(assignments=[_assign("admin")]).compile(User(id="u1"), ORG)

        assert ability.can("update", "product", OWN)
        assert ability.cannot("update", "product", {"organizationId": "org-2"})
        assert ability.cannot("delete", "organization", {**OWN, "id": ORG})
        assert ability.can("delete", "organization", {**OWN, "id": "child-org"})

    @pytest.mark.asyncio
    async def test_manager(self, compiler_for):
        ability = await compiler_for(assignments=[_assign("manager")]).compile(User(id="u1"), ORG)

        assert ability.can("approve", "order", OWN)
        assert ability.can("create", "customer", OWN)
        assert ability.can("read", "user", OWN)
        assert ability.cannot("delete", "product", OWN)
        assert ability.cannot("update", "user", OWN)

    @pytest.mark.asyncio
    async def test_user(self, compiler_for):
        ability = await compiler_for().compile(User(id="u1"), ORG)

        assert ability.can("read", "product", OWN)
        assert ability.can("read", "order", {**OWN, "ownerId": "u1"})
        assert ability.cannot("read", "order", {**OWN, "ownerId": "u2"})
        assert ability.can("create", "order", {**OWN, "ownerId": "u1"})
        assert ability.cannot("update", "product", OWN)
        assert ability.can("read", "user", {"id": "u1"})
        assert ability.cannot("read", "user", {"id": "u2"})

    def test_unknown_role_gets_user_defaults(self):
        assert AbilityCompiler.role_defaults(["auditor"], "u1", ORG) == AbilityCompiler.role_defaults(["user"], "u1", ORG)

    def test_most_privileged_role_wins(self):
        rules = AbilityCompiler.role_defaults(["user", "admin"], "u1", ORG)
        assert rules[0].action == "manage"


# ===========================================================================
# can_with_fields
# ===========================================================================


class TestCanWithFields:
    @pytest.mark.asyncio
    async def test_allowed_reports_effective_fields(self, compiler_for, make_policy):
        compiler = compiler_for(
            make_policy(
                "catalog",
                field_permissions={"product": FieldPermissionSet(readable=["id", "name", "costPrice"], writable=["name", "costPrice"], denied=["costPrice"])},
            )
        )

        result = await compiler.can_with_fields(User(id="u1"), "read", ResourceContext(type="product", id="p-1", attributes=OWN), ORG)

        assert result.allowed is True
        assert result.readable_fields == ["id", "name"]
        assert result.writable_fields == ["name"]
        assert result.denied_fields == ["costPrice"]

    @pytest.mark.asyncio
    async def test_allowed_without_field_permissions(self, compiler_for, make_policy):
        result = await compiler_for(make_policy("catalog")).can_with_fields(User(id="u1"), "read", ResourceContext(type="product", attributes=OWN), ORG)
        assert result.allowed is True
        assert result.readable_fields is None

    @pytest.mark.asyncio
    async def test_type_only_resource_is_type_level_check(self, compiler_for, make_policy):
        compiler = compiler_for(make_policy("catalog", field_permissions={"product": FieldPermissionSet(readable=["id", "name"])}))

        result = await compiler.can_with_fields(User(id="u1"), "read", ResourceContext(type="product"), ORG)

        assert result.allowed is True
        assert result.readable_fields == ["id", "name"]

    @pytest.mark.asyncio
    async def test_subject_groups_and_attributes_respected(self, compiler_for, make_policy):
        policy = make_policy("finance reads invoices", types=["invoice"], subject_attributes={"department": "finance"})
        policy = policy.model_copy(update={"subjects": policy.subjects.model_copy(update={"groups": ["finance"]})})
        compiler = compiler_for(policy)
        invoice = ResourceContext(type="invoice", id="inv-1", attributes=OWN)

        outsider = await compiler.can_with_fields(User(id="u-out", attributes={"department": "sales"}), "read", invoice, ORG)
        wrong_group = await compiler.can_with_fields(User(id="u-mid", groups=["sales"], attributes={"department": "finance"}), "read", invoice, ORG)
        member = await compiler.can_with_fields(User(id="u-in", groups=["finance"], attributes={"department": "finance"}), "read", invoice, ORG)

        assert (outsider.allowed, wrong_group.allowed, member.allowed) == (False, False, True)

    @pytest.mark.asyncio
    async def test_denied_omits_fields(self, compiler_for, make_policy):
        compiler = compiler_for(make_policy("catalog", field_permissions={"product": FieldPermissionSet(readable=["id"])}))

        result = await compiler.can_with_fields(User(id="u1"), "delete", ResourceContext(type="product", attributes=OWN), ORG)

        assert result.allowed is False
        assert (result.readable_fields, result.writable_fields, result.denied_fields) == (None, None, None)

    @pytest.mark.asyncio
    async def test_store_failure_denies(self, settings, caplog):
        store = Mock(spec=PolicyStore)
        store.find_applicable_policies = AsyncMock(side_effect=StoreError("database is down"))
        compiler = AbilityCompiler(store, settings=settings)

        result = await compiler.can_with_fields(User(id="u1"), "read", ResourceContext(type="product", attributes=OWN), ORG)

        assert result.allowed is False
        assert "ability compilation failed" in caplog.text
