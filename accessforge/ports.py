# -*- coding: utf-8 -*-
"""Location: ./accessforge/ports.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Abstract collaborator interfaces the engine depends on.

Design notes
------------
* Every lookup is ``async``; stores may sit behind a database or network
  call and must never stall the event loop.
* The engine only *reads* through ``PolicyStore``, ``OrganizationHierarchy``,
  ``RoleDirectory`` and ``AttributeCatalog``.  The management services use
  the ``...Repository`` extensions, which add write operations.
* ``AuditSink.publish`` is synchronous and must not block: implementations
  hand the event to a queue or logger and return immediately.
* Exceptions are intentionally narrow so the evaluators can catch and
  handle them uniformly regardless of which backend raised them.
"""

from __future__ import annotations

# Standard
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

# First-Party
from accessforge.models import (
    AttributeCategory,
    AttributeDefinition,
    CacheEntry,
    EvaluationResult,
    Organization,
    Policy,
    PolicySet,
    RoleAssignment,
)

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class StoreError(Exception):
    """Raised when a backing store cannot serve a lookup (connection lost, bad data, …)."""

    def __init__(self, message: str, cause: Exception | None = None):
        self.cause = cause
        super().__init__(message)


class CacheError(Exception):
    """Raised by decision cache backends; callers degrade to evaluating without cache."""


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class PolicyStore(ABC):
    """Read interface over stored policies."""

    @abstractmethod
    async def find_applicable_policies(
        self,
        organization_id: str,
        roles: Optional[List[str]] = None,
        user_id: Optional[str] = None,
        resource_type: Optional[str] = None,
    ) -> List[Policy]:
        """Return active policies of an organization that may apply.

        A store may pre-filter, but must never drop a policy the condition
        matcher could match:

        * ``resource_type`` keeps policies whose resource types are empty,
          contain ``*`` or contain the type.
        * ``roles`` keeps policies whose subject roles are empty, contain
          ``*`` or intersect ``roles``.
        * ``user_id`` keeps policies whose subject users are empty, contain
          ``*`` or contain the user.

        Raises:
            StoreError: When the store is unavailable.
        """

    @abstractmethod
    async def find_by_organization(self, organization_id: str) -> List[Policy]:
        """Return every active policy of an organization.

        Raises:
            StoreError: When the store is unavailable.
        """


class PolicyRepository(PolicyStore):
    """Policy store with the write operations used by ``PolicyService``."""

    @abstractmethod
    async def get(self, policy_id: str) -> Optional[Policy]:
        """Return a policy (active or not) by id, or ``None``."""

    @abstractmethod
    async def save(self, policy: Policy) -> Policy:
        """Insert or replace a policy."""

    @abstractmethod
    async def list_by_organization(self, organization_id: str, include_inactive: bool = False) -> List[Policy]:
        """Return policies of an organization, optionally including deactivated ones."""

    @abstractmethod
    async def get_policy_set(self, policy_set_id: str) -> Optional[PolicySet]:
        """Return a policy set by id, or ``None``."""

    @abstractmethod
    async def save_policy_set(self, policy_set: PolicySet) -> PolicySet:
        """Insert or replace a policy set."""

    @abstractmethod
    async def list_policy_sets(self, organization_id: str) -> List[PolicySet]:
        """Return the policy sets of an organization."""


# ---------------------------------------------------------------------------
# Organizations and roles
# ---------------------------------------------------------------------------


class OrganizationHierarchy(ABC):
    """Organization tree lookups."""

    @abstractmethod
    async def get_ancestors(self, organization_id: str) -> List[Organization]:
        """Return the ancestors of an organization, nearest first.

        Raises:
            StoreError: When the hierarchy cannot be read.
        """

    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        """Return one organization, or ``None``.  Optional for providers."""
        return None


class RoleDirectory(ABC):
    """Role assignments of users within organizations."""

    @abstractmethod
    async def get_role_assignments(self, user_id: str, organization_id: str) -> List[RoleAssignment]:
        """Return every role assignment (including inactive/expired ones) of a user in an organization."""


# ---------------------------------------------------------------------------
# Attribute catalog
# ---------------------------------------------------------------------------


class AttributeCatalog(ABC):
    """Attribute definition lookups for write-path validation."""

    @abstractmethod
    async def resolve_definition(self, key: str, organization_id: Optional[str] = None) -> Optional[AttributeDefinition]:
        """Return the definition of ``key`` visible to an organization.

        Organization-scoped definitions shadow system-wide ones.
        """


class AttributeRepository(AttributeCatalog):
    """Attribute catalog with the write operations used by ``AttributeService``."""

    @abstractmethod
    async def get(self, attribute_id: str) -> Optional[AttributeDefinition]:
        """Return a definition by id, or ``None``."""

    @abstractmethod
    async def save(self, definition: AttributeDefinition) -> AttributeDefinition:
        """Insert or replace a definition."""

    @abstractmethod
    async def delete(self, attribute_id: str) -> bool:
        """Delete a definition.  Returns True if it existed."""

    @abstractmethod
    async def list_definitions(self, category: Optional[AttributeCategory] = None, organization_id: Optional[str] = None) -> List[AttributeDefinition]:
        """List system-wide definitions plus those scoped to ``organization_id``."""


# ---------------------------------------------------------------------------
# Decision cache
# ---------------------------------------------------------------------------


class DecisionCacheBackend(ABC):
    """Storage for evaluated decisions keyed by context fingerprint."""

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for ``key`` if present and not expired.

        Raises:
            CacheError: When the backend fails.
        """

    @abstractmethod
    async def set(self, key: str, value: EvaluationResult, ttl_seconds: int) -> None:
        """Store a decision for ``ttl_seconds``.

        Raises:
            CacheError: When the backend fails.
        """

    @abstractmethod
    async def invalidate_user(self, user_id: str, organization_id: Optional[str] = None) -> int:
        """Drop a user's decisions in one organization (or all organizations).  Returns the count removed."""

    @abstractmethod
    async def invalidate_organization(self, organization_id: str) -> int:
        """Drop every decision of an organization.  Returns the count removed."""

    @abstractmethod
    async def clear(self) -> int:
        """Drop every decision.  Returns the count removed."""

    @abstractmethod
    def stats(self) -> Dict[str, Any]:
        """Return hit/miss counters and sizing information."""


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditSink(ABC):
    """Fire-and-forget destination for audit events."""

    @abstractmethod
    def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        """Hand off an event without blocking the caller."""
