# -*- coding: utf-8 -*-
"""Location: ./accessforge/stores/sql.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

SQLAlchemy implementations of the engine's collaborator ports.

Sessions are synchronous; every port method runs its query in a worker
thread via ``asyncio.to_thread`` so the event loop is never blocked.
Database failures surface as ``StoreError``.

Examples:
    >>> import asyncio
    >>> from accessforge.db import build_engine, build_session_factory, init_db
    >>> from accessforge.models import Organization
    >>> engine = build_engine("sqlite:///:memory:")
    >>> init_db(engine)
    >>> orgs = SqlOrganizationHierarchy(build_session_factory(engine))
    >>> asyncio.run(orgs.save(Organization(id="root", name="Root")))
    >>> asyncio.run(orgs.save(Organization(id="eu", name="EU", parent_id="root")))
    >>> [o.id for o in asyncio.run(orgs.get_ancestors("eu"))]
    ['root']
"""

# Standard
import asyncio
import logging
from typing import Any, Callable, List, Optional, TypeVar

# Third-Party
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

# First-Party
from accessforge.db import AttributeDefinitionRecord, OrganizationRecord, PolicyRecord, PolicySetRecord, RoleAssignmentRecord, session_scope
from accessforge.models import AttributeCategory, AttributeDefinition, AuditInfo, Organization, Policy, PolicySet, RoleAssignment
from accessforge.ports import AttributeRepository, OrganizationHierarchy, PolicyRepository, RoleDirectory, StoreError
from accessforge.stores.memory import policy_may_apply

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Record <-> model conversion
# ---------------------------------------------------------------------------


def _audit(record: Any) -> AuditInfo:
    return AuditInfo(created_at=record.created_at, updated_at=record.updated_at, created_by=record.created_by, updated_by=record.updated_by)


def policy_from_record(record: PolicyRecord) -> Policy:
    """Build a ``Policy`` from its row."""
    return Policy.model_validate(
        {
            "id": record.id,
            "name": record.name,
            "description": record.description,
            "effect": record.effect,
            "priority": record.priority,
            "subjects": record.subjects or {},
            "resources": record.resources or {},
            "actions": record.actions or [],
            "conditions": record.conditions,
            "organizationId": record.organization_id,
            "policySetId": record.policy_set_id,
            "isActive": record.is_active,
            "version": record.version,
            "fieldPermissions": record.field_permissions or {},
            "metadata": record.policy_metadata or {},
            "audit": _audit(record),
        }
    )


def policy_to_record(policy: Policy) -> PolicyRecord:
    """Build a row from a ``Policy``; JSON columns hold the camelCase form."""
    data = policy.model_dump(mode="json", by_alias=True)
    return PolicyRecord(
        id=policy.id,
        name=policy.name,
        description=policy.description,
        effect=policy.effect.value,
        priority=policy.priority,
        subjects=data["subjects"],
        resources=data["resources"],
        actions=list(policy.actions),
        conditions=data["conditions"],
        organization_id=policy.organization_id,
        policy_set_id=policy.policy_set_id,
        is_active=policy.is_active,
        version=policy.version,
        field_permissions=data["fieldPermissions"],
        policy_metadata=data["metadata"],
        created_at=policy.audit.created_at,
        updated_at=policy.audit.updated_at,
        created_by=policy.audit.created_by,
        updated_by=policy.audit.updated_by,
    )


def _policy_set_from_record(record: PolicySetRecord) -> PolicySet:
    return PolicySet(
        id=record.id,
        name=record.name,
        description=record.description,
        organization_id=record.organization_id,
        priority=record.priority,
        is_active=record.is_active,
        metadata=record.set_metadata or {},
        audit=_audit(record),
    )


def _policy_set_to_record(policy_set: PolicySet) -> PolicySetRecord:
    return PolicySetRecord(
        id=policy_set.id,
        name=policy_set.name,
        description=policy_set.description,
        organization_id=policy_set.organization_id,
        priority=policy_set.priority,
        is_active=policy_set.is_active,
        set_metadata=policy_set.model_dump(mode="json")["metadata"],
        created_at=policy_set.audit.created_at,
        updated_at=policy_set.audit.updated_at,
        created_by=policy_set.audit.created_by,
        updated_by=policy_set.audit.updated_by,
    )


def _definition_from_record(record: AttributeDefinitionRecord) -> AttributeDefinition:
    return AttributeDefinition.model_validate(
        {
            "id": record.id,
            "key": record.key,
            "name": record.name,
            "category": record.category,
            "valueType": record.value_type,
            "description": record.description,
            "validation": record.validation or {},
            "defaultValue": record.default_value,
            "organizationId": record.organization_id,
            "isSystem": record.is_system,
            "audit": _audit(record),
        }
    )


def _definition_to_record(definition: AttributeDefinition) -> AttributeDefinitionRecord:
    data = definition.model_dump(mode="json", by_alias=True)
    return AttributeDefinitionRecord(
        id=definition.id,
        key=definition.key,
        name=definition.name,
        category=definition.category.value,
        value_type=definition.value_type.value,
        description=definition.description,
        validation=data["validation"],
        default_value=data["defaultValue"],
        organization_id=definition.organization_id,
        is_system=definition.is_system,
        created_at=definition.audit.created_at,
        updated_at=definition.audit.updated_at,
        created_by=definition.audit.created_by,
        updated_by=definition.audit.updated_by,
    )


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class _SqlStore:
    """Shared session handling for the SQL stores.

    Args:
        session_factory: Factory returned by ``accessforge.db.build_session_factory``
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def _run(self, operation: Callable[[Session], T]) -> T:
        """Run ``operation`` in a committed session on a worker thread.

        Raises:
            StoreError: If the database raises
        """

        def _run_sync() -> T:
            with session_scope(self._session_factory) as db:
                return operation(db)

        try:
            return await asyncio.to_thread(_run_sync)
        except SQLAlchemyError as e:
            logger.error(f"{type(self).__name__} query failed: {e}")
            raise StoreError(f"Database error in {type(self).__name__}", cause=e) from e


class SqlPolicyRepository(_SqlStore, PolicyRepository):
    """Policies and policy sets stored in the ``policies`` and ``policy_sets`` tables."""

    async def find_applicable_policies(
        self,
        organization_id: str,
        roles: Optional[List[str]] = None,
        user_id: Optional[str] = None,
        resource_type: Optional[str] = None,
    ) -> List[Policy]:
        policies = await self.find_by_organization(organization_id)
        return [p for p in policies if policy_may_apply(p, roles, user_id, resource_type)]

    async def find_by_organization(self, organization_id: str) -> List[Policy]:
        return await self.list_by_organization(organization_id)

    async def get(self, policy_id: str) -> Optional[Policy]:
        def _get(db: Session) -> Optional[Policy]:
            record = db.get(PolicyRecord, policy_id)
            return policy_from_record(record) if record is not None else None

        return await self._run(_get)

    async def save(self, policy: Policy) -> Policy:
        def _save(db: Session) -> Policy:
            db.merge(policy_to_record(policy))
            return policy.model_copy(deep=True)

        return await self._run(_save)

    async def list_by_organization(self, organization_id: str, include_inactive: bool = False) -> List[Policy]:
        def _list(db: Session) -> List[Policy]:
            query = select(PolicyRecord).where(PolicyRecord.organization_id == organization_id)
            if not include_inactive:
                query = query.where(PolicyRecord.is_active.is_(True))
            return [policy_from_record(r) for r in db.execute(query).scalars().all()]

        return await self._run(_list)

    async def get_policy_set(self, policy_set_id: str) -> Optional[PolicySet]:
        def _get(db: Session) -> Optional[PolicySet]:
            record = db.get(PolicySetRecord, policy_set_id)
            return _policy_set_from_record(record) if record is not None else None

        return await self._run(_get)

    async def save_policy_set(self, policy_set: PolicySet) -> PolicySet:
        def _save(db: Session) -> PolicySet:
            db.merge(_policy_set_to_record(policy_set))
            return policy_set.model_copy(deep=True)

        return await self._run(_save)

    async def list_policy_sets(self, organization_id: str) -> List[PolicySet]:
        def _list(db: Session) -> List[PolicySet]:
            query = select(PolicySetRecord).where(PolicySetRecord.organization_id == organization_id)
            return [_policy_set_from_record(r) for r in db.execute(query).scalars().all()]

        return await self._run(_list)


class SqlOrganizationHierarchy(_SqlStore, OrganizationHierarchy):
    """Organization tree stored in the ``organizations`` table."""

    async def save(self, organization: Organization) -> None:
        """Insert or replace an organization."""

        def _save(db: Session) -> None:
            db.merge(OrganizationRecord(id=organization.id, name=organization.name, parent_id=organization.parent_id))

        await self._run(_save)

    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        def _get(db: Session) -> Optional[Organization]:
            record = db.get(OrganizationRecord, organization_id)
            return Organization(id=record.id, name=record.name, parent_id=record.parent_id) if record is not None else None

        return await self._run(_get)

    async def get_ancestors(self, organization_id: str) -> List[Organization]:
        def _ancestors(db: Session) -> List[Organization]:
            ancestors: List[Organization] = []
            seen = {organization_id}
            current = db.get(OrganizationRecord, organization_id)
            while current is not None and current.parent_id is not None:
                if current.parent_id in seen:
                    logger.warning("Organization cycle detected at %s", current.parent_id)
                    break
                seen.add(current.parent_id)
                current = db.get(OrganizationRecord, current.parent_id)
                if current is not None:
                    ancestors.append(Organization(id=current.id, name=current.name, parent_id=current.parent_id))
            return ancestors

        return await self._run(_ancestors)


class SqlRoleDirectory(_SqlStore, RoleDirectory):
    """Role assignments stored in the ``role_assignments`` table."""

    async def save(self, assignment: RoleAssignment) -> None:
        """Insert or replace a role assignment."""

        def _save(db: Session) -> None:
            db.merge(RoleAssignmentRecord(**assignment.model_dump()))

        await self._run(_save)

    async def get_role_assignments(self, user_id: str, organization_id: str) -> List[RoleAssignment]:
        def _list(db: Session) -> List[RoleAssignment]:
            query = select(RoleAssignmentRecord).where(RoleAssignmentRecord.user_id == user_id, RoleAssignmentRecord.organization_id == organization_id)
            return [RoleAssignment.model_validate(r) for r in db.execute(query).scalars().all()]

        return await self._run(_list)


class SqlAttributeRepository(_SqlStore, AttributeRepository):
    """Attribute definitions stored in the ``attribute_definitions`` table."""

    async def resolve_definition(self, key: str, organization_id: Optional[str] = None) -> Optional[AttributeDefinition]:
        def _resolve(db: Session) -> Optional[AttributeDefinition]:
            scope = AttributeDefinitionRecord.organization_id.is_(None)
            if organization_id is not None:
                scope = or_(scope, AttributeDefinitionRecord.organization_id == organization_id)
            records = db.execute(select(AttributeDefinitionRecord).where(AttributeDefinitionRecord.key == key, scope)).scalars().all()
            # Organization-scoped definitions shadow system-wide ones
            records = sorted(records, key=lambda r: r.organization_id is None)
            return _definition_from_record(records[0]) if records else None

        return await self._run(_resolve)

    async def get(self, attribute_id: str) -> Optional[AttributeDefinition]:
        def _get(db: Session) -> Optional[AttributeDefinition]:
            record = db.get(AttributeDefinitionRecord, attribute_id)
            return _definition_from_record(record) if record is not None else None

        return await self._run(_get)

    async def save(self, definition: AttributeDefinition) -> AttributeDefinition:
        def _save(db: Session) -> AttributeDefinition:
            db.merge(_definition_to_record(definition))
            return definition

        return await self._run(_save)

    async def delete(self, attribute_id: str) -> bool:
        def _delete(db: Session) -> bool:
            result = db.execute(delete(AttributeDefinitionRecord).where(AttributeDefinitionRecord.id == attribute_id))
            return result.rowcount > 0

        return await self._run(_delete)

    async def list_definitions(self, category: Optional[AttributeCategory] = None, organization_id: Optional[str] = None) -> List[AttributeDefinition]:
        def _list(db: Session) -> List[AttributeDefinition]:
            scope = AttributeDefinitionRecord.organization_id.is_(None)
            if organization_id is not None:
                scope = or_(scope, AttributeDefinitionRecord.organization_id == organization_id)
            query = select(AttributeDefinitionRecord).where(scope)
            if category is not None:
                query = query.where(AttributeDefinitionRecord.category == category.value)
            return [_definition_from_record(r) for r in db.execute(query).scalars().all()]

        return await self._run(_list)
