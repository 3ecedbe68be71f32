# -*- coding: utf-8 -*-
"""Location: ./accessforge/services/policy_evaluator.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Policy evaluator: the decision hot path.

``evaluate()`` is called for every access check.  It:

1. Looks the context fingerprint up in the decision cache.
2. On a miss, fetches applicable policies from the policy store.
3. Matches each policy (priority descending, deny before allow at equal
   priority, then id) and sorts matches into allow and deny buckets.
4. Combines with **deny-overrides**: allowed iff no deny matched and at
   least one allow matched.
5. Schedules a fire-and-forget cache write and returns.

Evaluation never raises.  Any failure (store down, bad data) is logged and
converted to a fail-closed result that is *not* cached.  Cache failures are
logged and the call proceeds as if there were no cache.
"""

# Standard
import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Union

# First-Party
from accessforge.cache.decision_cache import build_cache_key
from accessforge.config import get_settings, Settings
from accessforge.models import (
    CacheEntry,
    EvaluationContext,
    EvaluationResult,
    Operation,
    Policy,
    PolicyEffect,
    PolicySummary,
    ResourceContext,
    SubjectContext,
)
from accessforge.ports import DecisionCacheBackend, PolicyStore
from accessforge.services.condition_matcher import ConditionMatcher

logger = logging.getLogger(__name__)

EVALUATION_ERROR_REASON = "Policy evaluation error"
NO_MATCH_REASON = "No matching policies found"


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


def sort_policies(policies: Iterable[Policy]) -> List[Policy]:
    """Order policies for evaluation: priority descending, deny first, then id.

    Examples:
        >>> from accessforge.models import Policy
        >>> ps = [
        ...     Policy(id="a", name="a", effect="allow", priority=10, organization_id="o"),
        ...     Policy(id="b", name="b", effect="deny", priority=10, organization_id="o"),
        ...     Policy(id="c", name="c", effect="allow", priority=90, organization_id="o"),
        ... ]
        >>> [p.id for p in sort_policies(ps)]
        ['c', 'b', 'a']
    """
    return sorted(policies, key=lambda p: (-p.priority, 0 if p.effect == PolicyEffect.DENY else 1, p.id))


class PolicyEvaluator:
    """Matches contexts against stored policies, with decision caching.

    Args:
        policy_store: Source of applicable policies
        cache: Decision cache back-end, or ``None`` to disable caching
        matcher: Condition matcher (a default one is created if omitted)
        settings: Engine settings (defaults to the process settings)
    """

    def __init__(
        self,
        policy_store: PolicyStore,
        cache: Optional[DecisionCacheBackend] = None,
        matcher: Optional[ConditionMatcher] = None,
        settings: Optional[Settings] = None,
    ):
        self._store = policy_store
        self._cache = cache
        self._matcher = matcher or ConditionMatcher()
        self._settings = settings or get_settings()
        self._pending_writes: Set["asyncio.Task[None]"] = set()

    @property
    def matcher(self) -> ConditionMatcher:
        """The condition matcher used for every policy."""
        return self._matcher

    @property
    def cache(self) -> Optional[DecisionCacheBackend]:
        """The decision cache back-end, if caching is enabled."""
        return self._cache

    # ------------------------------------------------------------------
    # Core: evaluate
    # ------------------------------------------------------------------

    async def evaluate(self, context: EvaluationContext) -> EvaluationResult:
        """Decide one access request.

        Args:
            context: Evaluation context

        Returns:
            EvaluationResult: The explained decision; never raises
        """
        start = time.perf_counter()
        key = self._cache_key(context)
        if key is not None:
            entry = await self._cache_get(key)
            if entry is not None:
                logger.debug("ABAC: cache hit for %s / %s", context.subject.id, context.action)
                return self._from_cache(entry, start)
        return await self._evaluate_and_store(context, key, start)

    def decide(self, policies: Iterable[Policy], context: EvaluationContext, evaluation_time: float = 0.0) -> EvaluationResult:
        """Combine policies for a context with deny-overrides (pure, no I/O).

        Args:
            policies: Candidate policies
            context: Evaluation context
            evaluation_time: Elapsed milliseconds to record

        Returns:
            EvaluationResult: Explained decision
        """
        matched: List[PolicySummary] = []
        denied: List[PolicySummary] = []
        reasons: List[str] = []

        for policy in sort_policies(policies):
            if not policy.is_active or not self._matcher.matches(policy, context):
                continue
            if policy.effect == PolicyEffect.DENY:
                denied.append(policy.summary())
                reasons.append(f"Denied by policy: {policy.name}")
            else:
                matched.append(policy.summary())
                reasons.append(f"Allowed by policy: {policy.name}")

        if not reasons:
            reasons.append(NO_MATCH_REASON)

        return EvaluationResult(
            allowed=not denied and bool(matched),
            matched_policies=matched,
            denied_policies=denied,
            reasons=reasons,
            evaluation_time=evaluation_time,
        )

    async def _evaluate_uncached(self, context: EvaluationContext, start: float) -> EvaluationResult:
        policies = await self._store.find_applicable_policies(
            context.organization_id,
            roles=list(context.subject.roles),
            user_id=context.subject.id,
            resource_type=context.resource.type,
        )
        result = self.decide(policies, context)
        result.evaluation_time = _elapsed_ms(start)
        if result.denied_policies:
            logger.warning(
                "ABAC: DENY | action=%s | resource=%s | subject=%s | org=%s | denied_by=%s",
                context.action,
                context.resource.type,
                context.subject.id,
                context.organization_id,
                [p.name for p in result.denied_policies],
            )
        logger.info(
            "ABAC: %s | action=%s | resource=%s | subject=%s | org=%s | %.1fms",
            "ALLOW" if result.allowed else "DENY",
            context.action,
            context.resource.type,
            context.subject.id,
            context.organization_id,
            result.evaluation_time,
        )
        return result

    async def _evaluate_and_store(self, context: EvaluationContext, key: Optional[str], start: float) -> EvaluationResult:
        try:
            result = await self._evaluate_uncached(context, start)
        except Exception:  # noqa: BLE001
            logger.exception(
                "ABAC: evaluation failed for action=%s resource=%s subject=%s org=%s; failing closed",
                context.action,
                context.resource.type,
                context.subject.id,
                context.organization_id,
            )
            return EvaluationResult.fail_closed(EVALUATION_ERROR_REASON, _elapsed_ms(start))

        if key is not None:
            self._schedule_cache_write(key, result)
        return result

    # ------------------------------------------------------------------
    # Batch and warm-up
    # ------------------------------------------------------------------

    async def batch_evaluate(self, contexts: Sequence[EvaluationContext]) -> List[EvaluationResult]:
        """Evaluate many contexts, answering from cache where possible.

        All cache keys are looked up first; only the misses are evaluated,
        concurrently (bounded by ``batch_max_concurrency``).  Results keep
        the input order and a failure in one evaluation only affects that
        entry.

        Args:
            contexts: Contexts to evaluate

        Returns:
            List[EvaluationResult]: One result per context, in input order
        """
        start = time.perf_counter()
        results: List[Optional[EvaluationResult]] = [None] * len(contexts)
        keys: List[Optional[str]] = [self._cache_key(context) for context in contexts]

        keyed = [index for index, key in enumerate(keys) if key is not None]
        if self._cache is not None and keyed:
            lookups = await asyncio.gather(*(self._cache.get(keys[index]) for index in keyed), return_exceptions=True)
            for index, hit in zip(keyed, lookups):
                if isinstance(hit, CacheEntry):
                    results[index] = self._from_cache(hit, start)
                elif isinstance(hit, BaseException):
                    logger.warning("ABAC: batch cache lookup failed, evaluating without cache: %s", hit)

        misses = [index for index, result in enumerate(results) if result is None]
        semaphore = asyncio.Semaphore(self._settings.batch_max_concurrency)

        async def _run(index: int) -> EvaluationResult:
            async with semaphore:
                return await self._evaluate_and_store(contexts[index], keys[index], time.perf_counter())

        evaluated = await asyncio.gather(*(_run(index) for index in misses))
        for index, result in zip(misses, evaluated):
            results[index] = result

        logger.info("ABAC: batch of %d evaluated (%d from cache) in %.1fms", len(contexts), len(contexts) - len(misses), _elapsed_ms(start))
        return [result for result in results if result is not None]

    async def warm_up_user_cache(
        self,
        user_id: str,
        organization_id: str,
        operations: Sequence[Union[Operation, Dict[str, Any]]],
        subject: Optional[SubjectContext] = None,
    ) -> int:
        """Pre-compute decisions for a user's common operations.

        Args:
            user_id: User to warm up
            organization_id: Organization to evaluate in
            operations: ``Operation`` items (or dicts with ``resource`` / ``action``)
            subject: Subject to evaluate as (defaults to a role-less subject for ``user_id``)

        Returns:
            int: Number of operations evaluated successfully
        """
        subject = subject or SubjectContext(id=user_id)
        semaphore = asyncio.Semaphore(self._settings.batch_max_concurrency)

        async def _warm(operation: Operation) -> bool:
            context = EvaluationContext(
                subject=subject,
                resource=ResourceContext(type=operation.resource),
                action=operation.action,
                organization_id=organization_id,
            )
            async with semaphore:
                try:
                    result = await self._evaluate_uncached(context, time.perf_counter())
                except Exception as exc:  # noqa: BLE001
                    logger.warning("ABAC: cache warm-up failed for %s/%s (user=%s): %s", operation.resource, operation.action, user_id, exc)
                    return False
            key = self._cache_key(context)
            if key is not None:
                await self._cache_set(key, result)
            return True

        parsed = [op if isinstance(op, Operation) else Operation.model_validate(op) for op in operations]
        outcomes = await asyncio.gather(*(_warm(op) for op in parsed))
        succeeded = sum(1 for ok in outcomes if ok)
        logger.info("ABAC: warmed cache for user %s in %s (%d/%d operations)", user_id, organization_id, succeeded, len(parsed))
        return succeeded

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    async def clear_cache(self, organization_id: Optional[str] = None) -> int:
        """Drop cached decisions for one organization, or all of them.

        Returns:
            int: Entries removed (0 when caching is disabled or the back-end failed)
        """
        if self._cache is None:
            return 0
        try:
            if organization_id is not None:
                return await self._cache.invalidate_organization(organization_id)
            return await self._cache.clear()
        except Exception as exc:  # noqa: BLE001
            logger.warning("ABAC: cache clear failed (org=%s): %s", organization_id, exc)
            return 0

    async def invalidate_user(self, user_id: str, organization_id: Optional[str] = None) -> int:
        """Drop cached decisions of a user."""
        if self._cache is None:
            return 0
        try:
            return await self._cache.invalidate_user(user_id, organization_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("ABAC: cache invalidation failed for user %s: %s", user_id, exc)
            return 0

    def cache_stats(self) -> Dict[str, Any]:
        """Return cache statistics, including whether caching is enabled."""
        if self._cache is None:
            return {"enabled": False, "backend": None}
        stats = dict(self._cache.stats())
        stats.update({"enabled": True, "ttl_seconds": self._settings.decision_cache_ttl})
        return stats

    async def wait_for_pending_writes(self) -> None:
        """Wait until every scheduled cache write has finished."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    def _cache_key(self, context: EvaluationContext) -> Optional[str]:
        if self._cache is None:
            return None
        try:
            return build_cache_key(context, prefix=self._settings.decision_cache_prefix)
        except Exception as exc:  # noqa: BLE001
            logger.warning("ABAC: could not build cache key for subject %s, evaluating without cache: %s", context.subject.id, exc)
            return None

    @staticmethod
    def _from_cache(entry: CacheEntry, start: float) -> EvaluationResult:
        return entry.value.model_copy(update={"from_cache": True, "evaluation_time": _elapsed_ms(start)}, deep=True)

    async def _cache_get(self, key: str) -> Optional[CacheEntry]:
        try:
            return await self._cache.get(key)
        except Exception as exc:  # noqa: BLE001
            logger.warning("ABAC: cache read failed, evaluating without cache: %s", exc)
            return None

    async def _cache_set(self, key: str, result: EvaluationResult) -> None:
        try:
            await self._cache.set(key, result, self._settings.decision_cache_ttl)
        except Exception as exc:  # noqa: BLE001
            logger.warning("ABAC: cache write failed: %s", exc)

    def _schedule_cache_write(self, key: str, result: EvaluationResult) -> None:
        task = asyncio.create_task(self._cache_set(key, result.model_copy(deep=True)))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

