# -*- coding: utf-8 -*-
"""Location: ./accessforge/engine.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Access control engine: the single entry point for applications.

``AccessControlEngine`` wires the condition matcher, the policy evaluator
and its decision cache, the hierarchical evaluator, the ability compiler,
the field filter with its audit service, and (when the collaborators
support writes) the policy and attribute management services.

Lifecycle
---------
1. Build the collaborators (in-memory, SQL, or the application's own).
2. Instantiate the engine once, directly or through ``from_settings`` /
   ``from_database``, and share it between requests.
3. Call ``evaluate`` / ``evaluate_with_hierarchy`` on the hot path and
   ``compile_ability`` / ``filter_for_read`` when shaping responses.

Examples:
    >>> import asyncio
    >>> from accessforge.models import EvaluationContext, Policy, ResourceContext, ResourceCriteria, SubjectContext, SubjectCriteria
    >>> from accessforge.stores.memory import InMemoryPolicyRepository
    >>> store = InMemoryPolicyRepository([
    ...     Policy(name="read products", effect="allow", organization_id="org-1", actions=["read"],
    ...            subjects=SubjectCriteria(roles=["user"]), resources=ResourceCriteria(types=["product"])),
    ... ])
    >>> engine = AccessControlEngine(store)
    >>> ctx = EvaluationContext(subject=SubjectContext(id="u1", roles=["user"]),
    ...                         resource=ResourceContext(type="product"), action="read", organization_id="org-1")
    >>> asyncio.run(engine.evaluate(ctx)).allowed
    True
"""

# Standard
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

# First-Party
from accessforge.cache.decision_cache import build_cache_backend
from accessforge.config import get_settings, Settings
from accessforge.db import build_engine, build_session_factory, init_db
from accessforge.models import (
    CanWithFieldsResult,
    CompileOptions,
    EvaluationContext,
    EvaluationResult,
    FieldAccessCheck,
    FieldPermissionSet,
    Operation,
    Policy,
    ResourceContext,
    SubjectContext,
    User,
)
from accessforge.ports import AttributeRepository, AuditSink, DecisionCacheBackend, OrganizationHierarchy, PolicyRepository, PolicyStore, RoleDirectory
from accessforge.services.ability_compiler import Ability, AbilityCompiler
from accessforge.services.attribute_service import AttributeService
from accessforge.services.condition_matcher import ConditionMatcher
from accessforge.services.field_audit import FieldAuditService, LoggingAuditSink
from accessforge.services.field_filter import FieldFilterService
from accessforge.services.hierarchical_evaluator import HierarchicalEvaluator
from accessforge.services.policy_evaluator import PolicyEvaluator
from accessforge.services.policy_service import PolicyService
from accessforge.stores.memory import InMemoryOrganizationHierarchy
from accessforge.stores.sql import SqlAttributeRepository, SqlOrganizationHierarchy, SqlPolicyRepository, SqlRoleDirectory

logger = logging.getLogger(__name__)


class AccessControlEngine:
    """Facade over every decision, compilation and filtering operation.

    Args:
        policy_store: Policy source; a ``PolicyRepository`` also enables ``policies``
        hierarchy: Organization ancestor provider (defaults to a flat, empty tree)
        role_directory: Multi-role assignments used for abilities and warm-up
        cache: Decision cache back-end, or ``None`` to evaluate without cache
        audit_sink: Destination of field audit events (defaults to logging)
        attribute_repository: Attribute catalog; enables ``attributes`` when given
        matcher: Condition matcher shared by every component
        settings: Engine settings

    Attributes:
        policies: Policy management service, or ``None`` for a read-only store
        attributes: Attribute catalog service, or ``None`` without a repository
    """

    def __init__(
        self,
        policy_store: PolicyStore,
        hierarchy: Optional[OrganizationHierarchy] = None,
        role_directory: Optional[RoleDirectory] = None,
        cache: Optional[DecisionCacheBackend] = None,
        audit_sink: Optional[AuditSink] = None,
        attribute_repository: Optional[AttributeRepository] = None,
        matcher: Optional[ConditionMatcher] = None,
        settings: Optional[Settings] = None,
    ):
        self._settings = settings or get_settings()
        self._matcher = matcher or ConditionMatcher()
        self._store = policy_store
        self._roles = role_directory

        self._evaluator = PolicyEvaluator(policy_store, cache=cache, matcher=self._matcher, settings=self._settings)
        self._hierarchical = HierarchicalEvaluator(self._evaluator, hierarchy or InMemoryOrganizationHierarchy(), policy_store)
        self._compiler = AbilityCompiler(policy_store, role_directory=role_directory, matcher=self._matcher, settings=self._settings)
        self._audit = FieldAuditService(audit_sink or LoggingAuditSink(), settings=self._settings)
        self._filter = FieldFilterService(self._audit)

        self.policies: Optional[PolicyService] = None
        if isinstance(policy_store, PolicyRepository):
            self.policies = PolicyService(policy_store, evaluator=self._evaluator, matcher=self._matcher, settings=self._settings)
        self.attributes: Optional[AttributeService] = AttributeService(attribute_repository) if attribute_repository is not None else None

        logger.info(
            "AccessControlEngine initialized (cache=%s, hierarchy=%s, roles=%s)",
            type(cache).__name__ if cache is not None else "disabled",
            type(hierarchy).__name__ if hierarchy is not None else "flat",
            type(role_directory).__name__ if role_directory is not None else "memberships",
        )

    @classmethod
    def from_settings(
        cls,
        policy_store: PolicyStore,
        settings: Optional[Settings] = None,
        **kwargs: Any,
    ) -> "AccessControlEngine":
        """Build an engine whose decision cache is chosen from settings.

        Args:
            policy_store: Policy source
            settings: Engine settings (defaults to the process settings)
            **kwargs: Other constructor arguments

        Returns:
            AccessControlEngine: Configured engine
        """
        settings = settings or get_settings()
        return cls(policy_store, cache=build_cache_backend(settings), settings=settings, **kwargs)

    @classmethod
    def from_database(
        cls,
        database_url: Optional[str] = None,
        settings: Optional[Settings] = None,
        audit_sink: Optional[AuditSink] = None,
        matcher: Optional[ConditionMatcher] = None,
    ) -> "AccessControlEngine":
        """Build an engine backed by the SQL reference stores.

        Tables are created when missing.

        Args:
            database_url: Database URL (defaults to ``settings.database_url``)
            settings: Engine settings
            audit_sink: Destination of field audit events
            matcher: Condition matcher

        Returns:
            AccessControlEngine: Engine with SQL policy, hierarchy, role and attribute stores
        """
        settings = settings or get_settings()
        engine = build_engine(database_url or settings.database_url)
        init_db(engine)
        factory = build_session_factory(engine)
        return cls(
            SqlPolicyRepository(factory),
            hierarchy=SqlOrganizationHierarchy(factory),
            role_directory=SqlRoleDirectory(factory),
            cache=build_cache_backend(settings),
            audit_sink=audit_sink,
            attribute_repository=SqlAttributeRepository(factory),
            matcher=matcher,
            settings=settings,
        )

    @property
    def matcher(self) -> ConditionMatcher:
        """The shared condition matcher (register custom condition hooks here)."""
        return self._matcher

    @property
    def evaluator(self) -> PolicyEvaluator:
        """The single-organization policy evaluator."""
        return self._evaluator

    @property
    def audit(self) -> FieldAuditService:
        """The field audit service."""
        return self._audit

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    async def evaluate(self, context: EvaluationContext) -> EvaluationResult:
        """Decide a request in its own organization; never raises."""
        return await self._evaluator.evaluate(context)

    async def evaluate_with_hierarchy(self, context: EvaluationContext) -> EvaluationResult:
        """Decide a request, inheriting decisions from ancestor organizations."""
        return await self._hierarchical.evaluate_with_hierarchy(context)

    async def evaluate_cross_organization(self, context: EvaluationContext, target_organization_id: str) -> EvaluationResult:
        """Decide a request that reaches into another organization."""
        return await self._hierarchical.evaluate_cross_organization(context, target_organization_id)

    async def batch_evaluate(self, contexts: Sequence[EvaluationContext]) -> List[EvaluationResult]:
        """Decide many requests, results in input order."""
        return await self._evaluator.batch_evaluate(contexts)

    async def get_effective_policies(self, organization_id: str, resource_type: Optional[str] = None) -> List[Policy]:
        """Active policies of an organization followed by its ancestors'."""
        return await self._hierarchical.get_effective_policies(organization_id, resource_type)

    # ------------------------------------------------------------------
    # Abilities and fields
    # ------------------------------------------------------------------

    async def compile_ability(self, user: User, organization_id: str, options: Optional[CompileOptions] = None) -> Ability:
        """Compile the capabilities and field permissions of a user."""
        return await self._compiler.compile(user, organization_id, options)

    async def can_with_fields(self, user: User, action: str, resource: ResourceContext, organization_id: str) -> CanWithFieldsResult:
        """Check an action and report field permissions when allowed."""
        return await self._compiler.can_with_fields(user, action, resource, organization_id)

    def filter_for_read(self, data: Any, permissions: Optional[FieldPermissionSet], **audit: Any) -> Any:
        """Filter outbound data; ``resource_type`` (and request details) enable auditing."""
        return self._filter.filter_for_read(data, permissions, **audit)

    def filter_for_write(self, data: Any, permissions: Optional[FieldPermissionSet], **audit: Any) -> Any:
        """Filter an inbound payload; ``resource_type`` (and request details) enable auditing."""
        return self._filter.filter_for_write(data, permissions, **audit)

    def can_read_fields(self, permissions: Optional[FieldPermissionSet], fields: Iterable[str]) -> List[FieldAccessCheck]:
        """Per-field read checks."""
        return self._filter.can_read_fields(permissions, fields)

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    async def clear_cache(self, organization_id: Optional[str] = None) -> int:
        """Drop cached decisions of one organization, or all of them."""
        return await self._evaluator.clear_cache(organization_id)

    async def invalidate_user(self, user_id: str, organization_id: Optional[str] = None) -> int:
        """Drop cached decisions of a user."""
        return await self._evaluator.invalidate_user(user_id, organization_id)

    def get_cache_stats(self) -> Dict[str, Any]:
        """Decision cache statistics."""
        return self._evaluator.cache_stats()

    async def warm_up_user_cache(self, user_id: str, organization_id: str, operations: Sequence[Union[Operation, Dict[str, Any]]]) -> int:
        """Pre-compute a user's decisions for common operations.

        The user's effective roles in the organization are resolved first
        so warmed entries match the keys of real requests.

        Args:
            user_id: User to warm up
            organization_id: Organization
            operations: Resource type / action pairs

        Returns:
            int: Number of operations evaluated successfully
        """
        try:
            roles = await self._compiler.resolve_roles(User(id=user_id), organization_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Role lookup failed for cache warm-up of user {user_id}: {exc}")
            return 0
        return await self._evaluator.warm_up_user_cache(user_id, organization_id, operations, subject=SubjectContext(id=user_id, roles=roles))
