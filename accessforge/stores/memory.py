# -*- coding: utf-8 -*-
"""Location: ./accessforge/stores/memory.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

In-memory implementations of the engine's collaborator ports.

Used by tests and by applications that embed the engine and load policies
from their own configuration.  Stored models are copied on the way in and
out so callers cannot mutate stored state.

Examples:
    >>> import asyncio
    >>> from accessforge.models import Organization
    >>> orgs = InMemoryOrganizationHierarchy([
    ...     Organization(id="root", name="Root"),
    ...     Organization(id="eu", name="EU", parent_id="root"),
    ...     Organization(id="fr", name="France", parent_id="eu"),
    ... ])
    >>> [o.id for o in asyncio.run(orgs.get_ancestors("fr"))]
    ['eu', 'root']
"""

# Standard
import logging
from typing import Dict, Iterable, List, Optional

# First-Party
from accessforge.models import AttributeCategory, AttributeDefinition, Organization, Policy, PolicySet, RoleAssignment
from accessforge.ports import AttributeRepository, OrganizationHierarchy, PolicyRepository, RoleDirectory

logger = logging.getLogger(__name__)


def policy_may_apply(policy: Policy, roles: Optional[List[str]] = None, user_id: Optional[str] = None, resource_type: Optional[str] = None) -> bool:
    """Coarse pre-filter used by stores before the condition matcher runs.

    Only drops policies the matcher could never match for these inputs.

    Examples:
        >>> from accessforge.models import Policy, SubjectCriteria, ResourceCriteria
        >>> p = Policy(name="p", effect="allow", organization_id="o", actions=["read"],
        ...            subjects=SubjectCriteria(roles=["admin"]), resources=ResourceCriteria(types=["product"]))
        >>> policy_may_apply(p, roles=["admin"], resource_type="product")
        True
        >>> policy_may_apply(p, roles=["user"])
        False
        >>> policy_may_apply(p, resource_type="order")
        False
    """
    types = policy.resources.types
    if resource_type is not None and types and "*" not in types and resource_type not in types:
        return False
    policy_roles = policy.subjects.roles
    if roles is not None and policy_roles and "*" not in policy_roles and not set(policy_roles) & set(roles):
        return False
    users = policy.subjects.users
    if user_id is not None and users and "*" not in users and user_id not in users:
        return False
    return True


class InMemoryPolicyRepository(PolicyRepository):
    """Dictionary-backed policy and policy-set storage."""

    def __init__(self, policies: Iterable[Policy] = (), policy_sets: Iterable[PolicySet] = ()):
        self._policies: Dict[str, Policy] = {p.id: p.model_copy(deep=True) for p in policies}
        self._policy_sets: Dict[str, PolicySet] = {s.id: s.model_copy(deep=True) for s in policy_sets}

    async def find_applicable_policies(
        self,
        organization_id: str,
        roles: Optional[List[str]] = None,
        user_id: Optional[str] = None,
        resource_type: Optional[str] = None,
    ) -> List[Policy]:
        return [p.model_copy(deep=True) for p in self._policies.values() if p.organization_id == organization_id and p.is_active and policy_may_apply(p, roles, user_id, resource_type)]

    async def find_by_organization(self, organization_id: str) -> List[Policy]:
        return await self.list_by_organization(organization_id)

    async def get(self, policy_id: str) -> Optional[Policy]:
        policy = self._policies.get(policy_id)
        return policy.model_copy(deep=True) if policy is not None else None

    async def save(self, policy: Policy) -> Policy:
        self._policies[policy.id] = policy.model_copy(deep=True)
        return policy.model_copy(deep=True)

    async def list_by_organization(self, organization_id: str, include_inactive: bool = False) -> List[Policy]:
        return [p.model_copy(deep=True) for p in self._policies.values() if p.organization_id == organization_id and (include_inactive or p.is_active)]

    async def get_policy_set(self, policy_set_id: str) -> Optional[PolicySet]:
        policy_set = self._policy_sets.get(policy_set_id)
        return policy_set.model_copy(deep=True) if policy_set is not None else None

    async def save_policy_set(self, policy_set: PolicySet) -> PolicySet:
        self._policy_sets[policy_set.id] = policy_set.model_copy(deep=True)
        return policy_set.model_copy(deep=True)

    async def list_policy_sets(self, organization_id: str) -> List[PolicySet]:
        return [s.model_copy(deep=True) for s in self._policy_sets.values() if s.organization_id == organization_id]


class InMemoryOrganizationHierarchy(OrganizationHierarchy):
    """Organization tree held in a dictionary keyed by id."""

    def __init__(self, organizations: Iterable[Organization] = ()):
        self._organizations: Dict[str, Organization] = {o.id: o for o in organizations}

    def add(self, organization: Organization) -> None:
        """Add or replace an organization."""
        self._organizations[organization.id] = organization

    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        return self._organizations.get(organization_id)

    async def get_ancestors(self, organization_id: str) -> List[Organization]:
        ancestors: List[Organization] = []
        seen = {organization_id}
        current = self._organizations.get(organization_id)
        while current is not None and current.parent_id is not None:
            if current.parent_id in seen:
                logger.warning("Organization cycle detected at %s", current.parent_id)
                break
            seen.add(current.parent_id)
            current = self._organizations.get(current.parent_id)
            if current is not None:
                ancestors.append(current)
        return ancestors


class InMemoryRoleDirectory(RoleDirectory):
    """Role assignments held in a list."""

    def __init__(self, assignments: Iterable[RoleAssignment] = ()):
        self._assignments: List[RoleAssignment] = list(assignments)

    def add(self, assignment: RoleAssignment) -> None:
        """Record a role assignment."""
        self._assignments.append(assignment)

    async def get_role_assignments(self, user_id: str, organization_id: str) -> List[RoleAssignment]:
        return [a for a in self._assignments if a.user_id == user_id and a.organization_id == organization_id]


class InMemoryAttributeRepository(AttributeRepository):
    """Dictionary-backed attribute catalog."""

    def __init__(self, definitions: Iterable[AttributeDefinition] = ()):
        self._definitions: Dict[str, AttributeDefinition] = {d.id: d for d in definitions}

    async def resolve_definition(self, key: str, organization_id: Optional[str] = None) -> Optional[AttributeDefinition]:
        system = None
        for definition in self._definitions.values():
            if definition.key != key:
                continue
            if organization_id is not None and definition.organization_id == organization_id:
                return definition
            if definition.organization_id is None:
                system = definition
        return system

    async def get(self, attribute_id: str) -> Optional[AttributeDefinition]:
        return self._definitions.get(attribute_id)

    async def save(self, definition: AttributeDefinition) -> AttributeDefinition:
        self._definitions[definition.id] = definition
        return definition

    async def delete(self, attribute_id: str) -> bool:
        return self._definitions.pop(attribute_id, None) is not None

    async def list_definitions(self, category: Optional[AttributeCategory] = None, organization_id: Optional[str] = None) -> List[AttributeDefinition]:
        return [
            d
            for d in self._definitions.values()
            if (category is None or d.category == category) and (d.organization_id is None or d.organization_id == organization_id)
        ]
