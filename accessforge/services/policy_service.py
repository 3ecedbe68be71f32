# -*- coding: utf-8 -*-
"""Location: ./accessforge/services/policy_service.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Policy Management Service.
This module provides creation, update, soft removal, cloning and testing of
ABAC policies, and grouping of policies into policy sets.

Every mutation invalidates the cached decisions of the affected
organization so a change is visible on the next evaluation.

Examples:
    >>> from unittest.mock import Mock
    >>> service = PolicyService(Mock())
    >>> service.__class__.__name__
    'PolicyService'
"""

# Standard
import logging
from typing import List, Optional

# Third-Party
from pydantic import ValidationError

# First-Party
from accessforge.config import get_settings, Settings
from accessforge.models import (
    AuditInfo,
    EvaluationContext,
    new_id,
    Policy,
    PolicyCreate,
    PolicySet,
    PolicyTestResult,
    PolicyUpdate,
    ResourceCriteria,
    SubjectCriteria,
    utc_now,
)
from accessforge.ports import PolicyRepository
from accessforge.services.condition_matcher import ConditionMatcher
from accessforge.services.policy_evaluator import PolicyEvaluator

logger = logging.getLogger(__name__)

# Fields whose change bumps the policy version
VERSIONED_FIELDS = frozenset({"effect", "subjects", "resources", "actions", "conditions"})
# Fields an update may explicitly clear
NULLABLE_FIELDS = frozenset({"description", "conditions", "policy_set_id"})


class PolicyError(Exception):
    """Base class for policy-related errors."""


class PolicyNotFoundError(PolicyError):
    """Raised when a requested policy is not found."""


class PolicySetNotFoundError(PolicyError):
    """Raised when a requested policy set is not found."""


class PolicyValidationError(PolicyError):
    """Raised when a policy fails structural validation.

    Examples:
        >>> err = PolicyValidationError("At least one action must be specified")
        >>> isinstance(err, PolicyError)
        True
        >>> str(err)
        'At least one action must be specified'
    """


class PolicyService:
    """Service for managing policies and policy sets.

    Attributes:
        repository: Policy persistence
        evaluator: Evaluator whose decision cache is invalidated on change
    """

    def __init__(
        self,
        repository: PolicyRepository,
        evaluator: Optional[PolicyEvaluator] = None,
        matcher: Optional[ConditionMatcher] = None,
        settings: Optional[Settings] = None,
    ):
        self.repository = repository
        self.evaluator = evaluator
        self._matcher = matcher or (evaluator.matcher if evaluator is not None else ConditionMatcher())
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(
        self,
        subjects: Optional[SubjectCriteria],
        resources: Optional[ResourceCriteria],
        actions: Optional[List[str]],
        priority: Optional[int],
    ) -> None:
        """Check the structural rules every stored policy must satisfy.

        Args:
            subjects: Subject criteria
            resources: Resource criteria
            actions: Actions
            priority: Priority, if given

        Raises:
            PolicyValidationError: On the first rule violated

        Examples:
            >>> from unittest.mock import Mock
            >>> from accessforge.config import Settings
            >>> svc = PolicyService(Mock(), settings=Settings())
            >>> svc.validate(SubjectCriteria(roles=["user"]), ResourceCriteria(types=["product"]), ["read"], 1001)
            Traceback (most recent call last):
                ...
            accessforge.services.policy_service.PolicyValidationError: Priority must be between 0 and 1000
        """
        if subjects is None or subjects.is_empty():
            raise PolicyValidationError("At least one subject criterion must be specified")
        if resources is None or resources.is_empty():
            raise PolicyValidationError("At least one resource criterion must be specified")
        if not actions:
            raise PolicyValidationError("At least one action must be specified")
        if priority is not None and not self._settings.priority_in_range(priority):
            raise PolicyValidationError(f"Priority must be between {self._settings.policy_priority_min} and {self._settings.policy_priority_max}")

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    async def create(self, data: PolicyCreate) -> Policy:
        """Create a policy (version 1, default priority when unset).

        Args:
            data: Policy input

        Returns:
            Policy: The stored policy

        Raises:
            PolicyValidationError: If the input is structurally invalid
            PolicySetNotFoundError: If ``policy_set_id`` names an unknown set
        """
        self.validate(data.subjects, data.resources, data.actions, data.priority)
        if data.policy_set_id is not None:
            await self._get_policy_set(data.policy_set_id)

        try:
            policy = Policy(
                name=data.name,
                description=data.description,
                effect=data.effect,
                priority=data.priority if data.priority is not None else self._settings.default_policy_priority,
                subjects=data.subjects,
                resources=data.resources,
                actions=list(data.actions),
                conditions=data.conditions,
                organization_id=data.organization_id,
                policy_set_id=data.policy_set_id,
                field_permissions=dict(data.field_permissions),
                metadata=dict(data.metadata),
                version=1,
                audit=AuditInfo(created_by=data.created_by, updated_by=data.created_by),
            )
        except ValidationError as e:
            raise PolicyValidationError(str(e)) from e

        saved = await self.repository.save(policy)
        logger.info(f"Created {saved.effect.value} policy '{saved.name}' ({saved.id}) in organization {saved.organization_id}")
        await self._invalidate(saved.organization_id)
        return saved

    async def get(self, policy_id: str) -> Policy:
        """Get a policy by id (active or not).

        Raises:
            PolicyNotFoundError: If no policy has this id
        """
        policy = await self.repository.get(policy_id)
        if policy is None:
            raise PolicyNotFoundError(f"Policy not found: {policy_id}")
        return policy

    async def list_by_organization(self, organization_id: str, include_inactive: bool = False) -> List[Policy]:
        """List an organization's policies ordered by priority (highest first)."""
        policies = await self.repository.list_by_organization(organization_id, include_inactive=include_inactive)
        return sorted(policies, key=lambda p: (-p.priority, p.name))

    async def update(self, policy_id: str, data: PolicyUpdate) -> Policy:
        """Apply a partial update.

        The merged policy is re-validated.  The version is incremented when
        the effect, subjects, resources, actions or conditions are set.

        Args:
            policy_id: Policy to update
            data: Fields to change (only explicitly set fields are applied)

        Returns:
            Policy: The stored policy

        Raises:
            PolicyNotFoundError: If no policy has this id
            PolicyValidationError: If the merged policy is invalid
            PolicySetNotFoundError: If ``policy_set_id`` names an unknown set
        """
        policy = await self.get(policy_id)
        updates = {
            name: getattr(data, name)
            for name in data.model_fields_set
            if name != "updated_by" and (getattr(data, name) is not None or name in NULLABLE_FIELDS)
        }
        changed = set(updates)

        merged = policy.model_copy(update=updates)
        self.validate(merged.subjects, merged.resources, merged.actions, merged.priority)
        if updates.get("policy_set_id") is not None:
            await self._get_policy_set(updates["policy_set_id"])

        version = policy.version + 1 if changed & VERSIONED_FIELDS else policy.version
        merged = merged.model_copy(
            update={
                "version": version,
                "audit": policy.audit.model_copy(update={"updated_at": utc_now(), "updated_by": data.updated_by}),
            }
        )
        saved = await self.repository.save(merged)
        logger.info(f"Updated policy {policy_id} (version {saved.version}) by {data.updated_by}")
        await self._invalidate(saved.organization_id)
        return saved

    async def remove(self, policy_id: str, removed_by: Optional[str] = None) -> Policy:
        """Soft-remove a policy by deactivating it.

        Raises:
            PolicyNotFoundError: If no policy has this id
        """
        policy = await self.get(policy_id)
        deactivated = policy.model_copy(
            update={
                "is_active": False,
                "audit": policy.audit.model_copy(update={"updated_at": utc_now(), "updated_by": removed_by}),
            }
        )
        saved = await self.repository.save(deactivated)
        logger.info(f"Deactivated policy {policy_id} by {removed_by}")
        await self._invalidate(saved.organization_id)
        return saved

    async def clone(self, policy_id: str, name: str, created_by: Optional[str] = None) -> Policy:
        """Copy a policy under a new id and name, starting again at version 1.

        Raises:
            PolicyNotFoundError: If no policy has this id
        """
        original = await self.get(policy_id)
        copy = original.model_copy(
            update={"id": new_id(), "name": name, "version": 1, "audit": AuditInfo(created_by=created_by, updated_by=created_by)},
            deep=True,
        )
        saved = await self.repository.save(copy)
        logger.info(f"Cloned policy {policy_id} as {saved.id} ('{name}')")
        await self._invalidate(saved.organization_id)
        return saved

    async def test_policy(self, policy_id: str, context: EvaluationContext) -> PolicyTestResult:
        """Test a single policy against a context without touching the cache.

        Args:
            policy_id: Policy to test
            context: Evaluation context

        Returns:
            PolicyTestResult: Whether it matches, its effect and why

        Raises:
            PolicyNotFoundError: If no policy has this id
        """
        policy = await self.get(policy_id)
        if not policy.is_active:
            return PolicyTestResult(matches=False, effect=policy.effect, reason="policy is inactive")
        matches, reason = self._matcher.explain(policy, context)
        return PolicyTestResult(matches=matches, effect=policy.effect, reason=reason)

    # ------------------------------------------------------------------
    # Policy sets
    # ------------------------------------------------------------------

    async def create_policy_set(self, name: str, organization_id: str, description: Optional[str] = None, priority: int = 100, created_by: Optional[str] = None) -> PolicySet:
        """Create a policy set in an organization."""
        policy_set = PolicySet(
            name=name,
            description=description,
            organization_id=organization_id,
            priority=priority,
            audit=AuditInfo(created_by=created_by, updated_by=created_by),
        )
        saved = await self.repository.save_policy_set(policy_set)
        logger.info(f"Created policy set '{name}' ({saved.id}) in organization {organization_id}")
        return saved

    async def list_policy_sets(self, organization_id: str) -> List[PolicySet]:
        """List the policy sets of an organization."""
        return await self.repository.list_policy_sets(organization_id)

    async def add_policy_to_set(self, policy_id: str, policy_set_id: str) -> Policy:
        """Attach a policy to a policy set of the same organization.

        Raises:
            PolicyNotFoundError: If no policy has this id
            PolicySetNotFoundError: If no policy set has this id
            PolicyValidationError: If the set belongs to another organization
        """
        policy = await self.get(policy_id)
        policy_set = await self._get_policy_set(policy_set_id)
        if policy_set.organization_id != policy.organization_id:
            raise PolicyValidationError("Policy and policy set must belong to the same organization")
        saved = await self.repository.save(policy.model_copy(update={"policy_set_id": policy_set.id}))
        logger.info(f"Added policy {policy_id} to set {policy_set_id}")
        await self._invalidate(saved.organization_id)
        return saved

    async def remove_policy_from_set(self, policy_id: str) -> Policy:
        """Detach a policy from its policy set.

        Raises:
            PolicyNotFoundError: If no policy has this id
        """
        policy = await self.get(policy_id)
        saved = await self.repository.save(policy.model_copy(update={"policy_set_id": None}))
        logger.info(f"Removed policy {policy_id} from its policy set")
        await self._invalidate(saved.organization_id)
        return saved

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_policy_set(self, policy_set_id: str) -> PolicySet:
        policy_set = await self.repository.get_policy_set(policy_set_id)
        if policy_set is None:
            raise PolicySetNotFoundError(f"Policy set not found: {policy_set_id}")
        return policy_set

    async def _invalidate(self, organization_id: str) -> None:
        if self.evaluator is not None:
            removed = await self.evaluator.clear_cache(organization_id)
            logger.debug(f"Invalidated {removed} cached decisions for organization {organization_id}")
