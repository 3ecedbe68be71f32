# -*- coding: utf-8 -*-
"""Location: ./accessforge/services/hierarchical_evaluator.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Hierarchical evaluator: policy inheritance along the organization tree.

State machine
-------------
1. Evaluate at the request's own organization.
2. Any deny there is terminal; so is an allow.
3. Otherwise walk the ancestors nearest-first.  Each ancestor is evaluated
   with ``organization_id`` set to the ancestor and the environment marked
   ``isInheritedPolicy=True`` / ``originalOrganizationId=<origin>``.  The
   first ancestor that denies or allows ends the walk.
4. No decision anywhere means deny.

Cross-organization access needs an allow on **both** sides: the source
organization (through its hierarchy) and then the target organization.
"""

# Standard
import logging
import time
from typing import Any, Dict, List, Optional

# First-Party
from accessforge.models import EvaluationContext, EvaluationResult, Organization, Policy
from accessforge.ports import OrganizationHierarchy, PolicyStore
from accessforge.services.policy_evaluator import EVALUATION_ERROR_REASON, PolicyEvaluator

logger = logging.getLogger(__name__)

NO_HIERARCHY_MATCH_REASON = "No matching policies found in hierarchy"
SOURCE_DENIED_REASON = "Cross-organization access denied by source organization"
TARGET_DENIED_REASON = "Cross-organization access denied by target organization"
CROSS_ORG_ALLOWED_REASON = "Cross-organization access allowed by both organizations"


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


def is_evaluation_error(result: EvaluationResult) -> bool:
    """Whether a result is the fail-closed outcome of an evaluation failure."""
    return not result.allowed and not result.matched_policies and not result.denied_policies and result.reasons == [EVALUATION_ERROR_REASON]


def _with_attributes(model: Any, extra: Dict[str, Any]) -> Any:
    """Copy a (frozen) context part with extra entries merged into ``attributes``."""
    return model.model_copy(update={"attributes": {**model.attributes, **extra}})


class HierarchicalEvaluator:
    """Evaluates contexts with organization-tree inheritance.

    Args:
        evaluator: Single-organization policy evaluator
        hierarchy: Organization ancestor provider
        policy_store: Policy source used for effective-policy listings
    """

    def __init__(self, evaluator: PolicyEvaluator, hierarchy: OrganizationHierarchy, policy_store: PolicyStore):
        self._evaluator = evaluator
        self._hierarchy = hierarchy
        self._store = policy_store

    async def evaluate_with_hierarchy(self, context: EvaluationContext) -> EvaluationResult:
        """Evaluate at the context's organization, then up its ancestor chain.

        Args:
            context: Evaluation context

        Returns:
            EvaluationResult: First explicit decision found, else a default deny
        """
        start = time.perf_counter()
        direct = await self._evaluator.evaluate(context)
        if direct.denied_policies or direct.allowed or is_evaluation_error(direct):
            return direct

        try:
            ancestors = await self._hierarchy.get_ancestors(context.organization_id)
        except Exception:  # noqa: BLE001
            logger.exception("ABAC: ancestor lookup failed for organization %s; failing closed", context.organization_id)
            return EvaluationResult.fail_closed(EVALUATION_ERROR_REASON, _elapsed_ms(start))

        for ancestor in ancestors:
            if ancestor.id == context.organization_id:
                continue
            result = await self._evaluator.evaluate(self._inherited_context(context, ancestor))
            if is_evaluation_error(result):
                return result
            if result.denied_policies:
                logger.info("ABAC: denied by inherited policy from %s (%s) for org %s", ancestor.name, ancestor.id, context.organization_id)
                return result.model_copy(
                    update={
                        "allowed": False,
                        "reasons": [*result.reasons, f"Denied by inherited policy from organization: {ancestor.name}"],
                        "evaluation_time": _elapsed_ms(start),
                    }
                )
            if result.allowed:
                logger.info("ABAC: allowed by inherited policy from %s (%s) for org %s", ancestor.name, ancestor.id, context.organization_id)
                return result.model_copy(
                    update={
                        "reasons": [*result.reasons, f"Allowed by inherited policy from organization: {ancestor.name}"],
                        "evaluation_time": _elapsed_ms(start),
                    }
                )

        return EvaluationResult(allowed=False, reasons=[NO_HIERARCHY_MATCH_REASON], evaluation_time=_elapsed_ms(start))

    async def evaluate_cross_organization(self, context: EvaluationContext, target_organization_id: str) -> EvaluationResult:
        """Evaluate an access that crosses from the context's organization into another.

        The source side sees ``resource.attributes.targetOrganizationId`` and
        ``environment.attributes.isCrossOrganizationAccess``; the target side
        additionally sees ``subject.attributes.sourceOrganizationId``.

        Args:
            context: Evaluation context in the source organization
            target_organization_id: Organization that owns the resource

        Returns:
            EvaluationResult: Allow only when both organizations allow
        """
        start = time.perf_counter()
        cross_context = context.model_copy(
            update={
                "resource": _with_attributes(context.resource, {"targetOrganizationId": target_organization_id}),
                "environment": _with_attributes(context.environment, {"isCrossOrganizationAccess": True}),
            }
        )

        source = await self.evaluate_with_hierarchy(cross_context)
        if not source.allowed:
            logger.info("ABAC: cross-org %s -> %s denied by source", context.organization_id, target_organization_id)
            return source.model_copy(update={"reasons": [*source.reasons, SOURCE_DENIED_REASON], "evaluation_time": _elapsed_ms(start)})

        target_context = cross_context.model_copy(
            update={
                "organization_id": target_organization_id,
                "subject": _with_attributes(context.subject, {"sourceOrganizationId": context.organization_id}),
            }
        )
        target = await self.evaluate_with_hierarchy(target_context)
        if not target.allowed:
            logger.info("ABAC: cross-org %s -> %s denied by target", context.organization_id, target_organization_id)
            return target.model_copy(update={"reasons": [*target.reasons, TARGET_DENIED_REASON], "evaluation_time": _elapsed_ms(start)})

        return EvaluationResult(
            allowed=True,
            matched_policies=[*source.matched_policies, *target.matched_policies],
            denied_policies=[],
            reasons=[CROSS_ORG_ALLOWED_REASON, *source.reasons, *target.reasons],
            evaluation_time=_elapsed_ms(start),
        )

    async def get_effective_policies(self, organization_id: str, resource_type: Optional[str] = None) -> List[Policy]:
        """Return the organization's active policies followed by its ancestors' (nearest first).

        Args:
            organization_id: Organization to inspect
            resource_type: Only keep policies that can apply to this type

        Returns:
            List[Policy]: Effective policies

        Raises:
            StoreError: When a store lookup fails
        """
        organization_ids = [organization_id]
        for ancestor in await self._hierarchy.get_ancestors(organization_id):
            if ancestor.id not in organization_ids:
                organization_ids.append(ancestor.id)

        policies: List[Policy] = []
        for org_id in organization_ids:
            for policy in await self._store.find_by_organization(org_id):
                if resource_type and policy.resources.types and "*" not in policy.resources.types and resource_type not in policy.resources.types:
                    continue
                policies.append(policy)
        return policies

    @staticmethod
    def _inherited_context(context: EvaluationContext, ancestor: Organization) -> EvaluationContext:
        return context.model_copy(
            update={
                "organization_id": ancestor.id,
                "environment": _with_attributes(
                    context.environment,
                    {"isInheritedPolicy": True, "originalOrganizationId": context.organization_id},
                ),
            }
        )
