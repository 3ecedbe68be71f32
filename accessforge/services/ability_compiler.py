# -*- coding: utf-8 -*-
"""Location: ./accessforge/services/ability_compiler.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Ability compiler: per-user capability objects with field permissions.

An ``Ability`` is a plain, serializable list of ``AbilityRule`` items plus a
map of resource type to ``FieldPermissionSet``.  ``Ability.can`` is a pure
function over that data:

* ``manage`` matches every action and ``all`` every resource type; type
  names compare case-insensitively.
* Combining is deny-overrides: an applicable inverted rule wins over any
  number of grants.
* Without a concrete resource (a type-level question), grants apply
  regardless of their conditions, while denials only apply when they are
  unconditional.
* With a resource, a rule applies when its attribute conditions match it.
* ``policy_conditions`` (time window, IP, location, custom) are checked
  against the environment at query time.

Compilation order: super-admin short-circuit, effective roles, policies whose
subject criteria cover the user, then built-in role defaults when the roles
have no active policy at all.

Examples:
    >>> from accessforge.models import AbilityRule
    >>> ability = Ability([
    ...     AbilityRule(action="manage", resource_type="all", conditions={"organizationId": "org-1"}),
    ...     AbilityRule(action="delete", resource_type="organization", inverted=True, conditions={"id": "org-1"}),
    ... ])
    >>> ability.can("read", "Product")
    True
    >>> ability.can("update", "product", {"organizationId": "org-2"})
    False
    >>> ability.can("delete", "organization", {"id": "org-1", "organizationId": "org-1"})
    False
"""

# Standard
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

# First-Party
from accessforge.config import get_settings, Settings
from accessforge.models import (
    AbilityRule,
    CanWithFieldsResult,
    CompileOptions,
    EnvironmentContext,
    EvaluationContext,
    FieldPermissionSet,
    Policy,
    PolicyEffect,
    ResourceContext,
    SubjectContext,
    User,
    utc_now,
)
from accessforge.ports import PolicyStore, RoleDirectory
from accessforge.services.condition_matcher import ConditionMatcher, resolve_variables

logger = logging.getLogger(__name__)

MANAGE = "manage"
ALL = "all"
DEFAULT_ROLE = "user"


class Ability:
    """Compiled capabilities of one user in one organization.

    Args:
        rules: Capability grants and denials
        field_permissions: Field permissions keyed by resource type
        user_id: Owner of the ability (used for custom-condition context)
        organization_id: Organization the ability was compiled for
        matcher: Condition matcher for attribute and environment checks
    """

    def __init__(
        self,
        rules: Iterable[AbilityRule],
        field_permissions: Optional[Mapping[str, FieldPermissionSet]] = None,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        matcher: Optional[ConditionMatcher] = None,
    ):
        self._rules: List[AbilityRule] = list(rules)
        self._field_permissions: Dict[str, FieldPermissionSet] = dict(field_permissions or {})
        self.user_id = user_id
        self.organization_id = organization_id
        self._matcher = matcher or ConditionMatcher()

    @property
    def rules(self) -> List[AbilityRule]:
        """The compiled rules, in registration order."""
        return list(self._rules)

    @property
    def field_permissions(self) -> Dict[str, FieldPermissionSet]:
        """Field permissions keyed by resource type."""
        return dict(self._field_permissions)

    def field_permissions_for(self, resource_type: str) -> Optional[FieldPermissionSet]:
        """Return the field permissions of a resource type (case-insensitive), if any."""
        if resource_type in self._field_permissions:
            return self._field_permissions[resource_type]
        wanted = resource_type.lower()
        for name, permissions in self._field_permissions.items():
            if name.lower() == wanted:
                return permissions
        return None

    def rules_for(self, action: str, resource_type: str) -> List[AbilityRule]:
        """Rules whose action and resource type cover the query."""
        wanted = resource_type.lower()
        return [
            rule
            for rule in self._rules
            if rule.action in (MANAGE, action) and rule.resource_type.lower() in (ALL, wanted)
        ]

    def can(
        self,
        action: str,
        resource_type: str,
        resource: Optional[Mapping[str, Any]] = None,
        environment: Optional[EnvironmentContext] = None,
    ) -> bool:
        """Whether ``action`` is allowed on a resource type or a concrete resource.

        Args:
            action: Action name
            resource_type: Resource type name
            resource: Resource attributes, or ``None`` for a type-level check
            environment: Request environment (defaults to "now", no IP)

        Returns:
            bool: True when some grant applies and no denial applies
        """
        environment = environment or EnvironmentContext()
        allowed = False
        for rule in self.rules_for(action, resource_type):
            if rule.policy_conditions is not None and not self._environment_matches(rule, action, resource_type, resource, environment):
                continue
            if rule.inverted:
                applies = not rule.conditions if resource is None else self._matcher.matches_attributes(rule.conditions, resource)
                if applies:
                    return False
            elif resource is None or self._matcher.matches_attributes(rule.conditions, resource):
                allowed = True
        return allowed

    def cannot(self, action: str, resource_type: str, resource: Optional[Mapping[str, Any]] = None, environment: Optional[EnvironmentContext] = None) -> bool:
        """Negation of ``can``."""
        return not self.can(action, resource_type, resource, environment)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict (camelCase keys)."""
        return {
            "rules": [rule.model_dump(mode="json", by_alias=True, exclude_none=True) for rule in self._rules],
            "fieldPermissions": {name: perms.model_dump(by_alias=True) for name, perms in self._field_permissions.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], matcher: Optional[ConditionMatcher] = None) -> "Ability":
        """Rebuild an ability serialized with ``to_dict``."""
        return cls(
            rules=[AbilityRule.model_validate(rule) for rule in data.get("rules", [])],
            field_permissions={name: FieldPermissionSet.model_validate(perms) for name, perms in data.get("fieldPermissions", {}).items()},
            matcher=matcher,
        )

    def _environment_matches(
        self,
        rule: AbilityRule,
        action: str,
        resource_type: str,
        resource: Optional[Mapping[str, Any]],
        environment: EnvironmentContext,
    ) -> bool:
        context = EvaluationContext(
            subject=SubjectContext(id=self.user_id or ""),
            resource=ResourceContext(type=resource_type, attributes=dict(resource or {})),
            action=action,
            environment=environment,
            organization_id=self.organization_id or "",
        )
        return self._matcher.matches_conditions(rule.policy_conditions, context, PolicyEffect.DENY if rule.inverted else PolicyEffect.ALLOW)


class AbilityCompiler:
    """Builds ``Ability`` objects from a user's applicable policies.

    Args:
        policy_store: Source of applicable policies
        role_directory: Multi-role assignments (optional; memberships are the fallback)
        matcher: Condition matcher shared with compiled abilities
        settings: Engine settings
    """

    def __init__(
        self,
        policy_store: PolicyStore,
        role_directory: Optional[RoleDirectory] = None,
        matcher: Optional[ConditionMatcher] = None,
        settings: Optional[Settings] = None,
    ):
        self._store = policy_store
        self._roles = role_directory
        self._matcher = matcher or ConditionMatcher()
        self._settings = settings or get_settings()

    def is_super_admin(self, user: User) -> bool:
        """Whether the user carries the configured super-admin marker."""
        return user.metadata.get(self._settings.super_admin_flag) is True

    async def resolve_roles(self, user: User, organization_id: str) -> List[str]:
        """Effective role names of a user in an organization, highest priority first.

        Active assignments inside their validity window win; otherwise the
        legacy membership role is used, and finally ``user``.

        Args:
            user: User
            organization_id: Organization

        Returns:
            List[str]: Role names (never empty)
        """
        assignments = await self._roles.get_role_assignments(user.id, organization_id) if self._roles is not None else []
        now = utc_now()
        effective = sorted((a for a in assignments if a.is_effective(now)), key=lambda a: -a.priority)
        if effective:
            return list(dict.fromkeys(a.role_name for a in effective))
        for membership in user.memberships:
            if membership.organization_id == organization_id:
                return [membership.role]
        return [DEFAULT_ROLE]

    async def compile(self, user: User, organization_id: str, options: Optional[CompileOptions] = None) -> Ability:
        """Compile the ability of a user in an organization.

        Args:
            user: User to compile for
            organization_id: Organization context
            options: Field-permission and resource-type options

        Returns:
            Ability: Compiled rules and field permissions

        Raises:
            StoreError: When the policy store or role directory fails
        """
        options = options or CompileOptions()
        if self.is_super_admin(user):
            logger.debug("ABAC: super-admin ability for user %s", user.id)
            return Ability([AbilityRule(action=MANAGE, resource_type=ALL)], {}, user_id=user.id, organization_id=organization_id, matcher=self._matcher)

        roles = await self.resolve_roles(user, organization_id)
        variables = self._variable_context(user, organization_id, roles)
        candidates = await self._store.find_applicable_policies(organization_id, roles=roles, user_id=user.id)
        active = [p for p in candidates if p.is_active]
        policies = [p for p in active if self._subject_matches(p, variables)]

        rules: List[AbilityRule] = []
        field_permissions: Dict[str, FieldPermissionSet] = {}

        for policy in policies:
            conditions = self._build_conditions(policy, variables, organization_id)
            for action in policy.actions:
                for resource_type in self._resource_types(policy):
                    rules.append(
                        AbilityRule(
                            action=MANAGE if action == "*" else action,
                            resource_type=resource_type,
                            inverted=policy.effect == PolicyEffect.DENY,
                            conditions=conditions,
                            policy_conditions=policy.conditions,
                            policy_id=policy.id,
                        )
                    )
            if options.include_field_permissions:
                self._merge_field_permissions(field_permissions, policy)

        if not active:
            rules = self.role_defaults(roles, user.id, organization_id)

        if options.resource_type:
            wanted = options.resource_type.lower()
            field_permissions = {name: perms for name, perms in field_permissions.items() if name.lower() == wanted}

        logger.debug(
            "ABAC: compiled %d rules (%d policies, roles=%s) for user %s in %s",
            len(rules),
            len(policies),
            roles,
            user.id,
            organization_id,
        )
        return Ability(rules, field_permissions, user_id=user.id, organization_id=organization_id, matcher=self._matcher)

    async def can_with_fields(self, user: User, action: str, resource: ResourceContext, organization_id: str) -> CanWithFieldsResult:
        """Check an action on a resource and report its field permissions.

        The field lists are only populated when the action is allowed.  A
        failure while compiling denies.

        Args:
            user: Acting user
            action: Action name
            resource: Target resource (type, id, attributes)
            organization_id: Organization context

        Returns:
            CanWithFieldsResult: Decision plus field lists
        """
        try:
            ability = await self.compile(
                user,
                organization_id,
                CompileOptions(include_field_permissions=True, resource_type=resource.type, resource_id=resource.id),
            )
        except Exception:  # noqa: BLE001
            logger.exception("ABAC: ability compilation failed for user %s in %s; denying", user.id, organization_id)
            return CanWithFieldsResult(allowed=False)

        target: Optional[Dict[str, Any]] = dict(resource.attributes)
        if resource.id is not None:
            target.setdefault("id", resource.id)
        if not target:
            # Nothing to match conditions against: type-level check.
            target = None
        if not ability.can(action, resource.type, target):
            return CanWithFieldsResult(allowed=False)

        permissions = ability.field_permissions_for(resource.type)
        if permissions is None:
            return CanWithFieldsResult(allowed=True)
        return CanWithFieldsResult(
            allowed=True,
            readable_fields=permissions.effective_readable,
            writable_fields=permissions.effective_writable,
            denied_fields=list(permissions.denied),
        )

    @staticmethod
    def role_defaults(roles: List[str], user_id: str, organization_id: str) -> List[AbilityRule]:
        """Built-in rules used when no policy applies to the user's roles.

        The most privileged known role wins; unknown roles get the ``user``
        defaults.

        Examples:
            >>> [(r.action, r.resource_type, r.inverted) for r in AbilityCompiler.role_defaults(["admin"], "u1", "o1")]
            [('manage', 'all', False), ('delete', 'organization', True)]
            >>> len(AbilityCompiler.role_defaults(["auditor"], "u1", "o1"))
            4
        """
        scoped = {"organizationId": organization_id}
        if "admin" in roles:
            return [
                AbilityRule(action=MANAGE, resource_type=ALL, conditions=scoped),
                AbilityRule(action="delete", resource_type="organization", inverted=True, conditions={"id": organization_id}),
            ]
        if "manager" in roles:
            grants = [
                (("read", "create", "update"), "product"),
                (("read", "create", "update"), "customer"),
                (("read", "create", "update", "approve"), "order"),
                (("read",), "user"),
            ]
            return [AbilityRule(action=action, resource_type=resource_type, conditions=dict(scoped)) for actions, resource_type in grants for action in actions]
        own_orders = {"organizationId": organization_id, "ownerId": user_id}
        return [
            AbilityRule(action="read", resource_type="product", conditions=dict(scoped)),
            AbilityRule(action="read", resource_type="order", conditions=dict(own_orders)),
            AbilityRule(action="create", resource_type="order", conditions=dict(own_orders)),
            AbilityRule(action="read", resource_type="user", conditions={"id": user_id}),
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _resource_types(policy: Policy) -> List[str]:
        types = policy.resources.types
        if not types or "*" in types:
            return [ALL]
        return list(types)

    @staticmethod
    def _variable_context(user: User, organization_id: str, roles: List[str]) -> EvaluationContext:
        attributes = {**user.attributes, "organizationId": organization_id, "userId": user.id}
        if user.email:
            attributes["email"] = user.email
        return EvaluationContext(
            subject=SubjectContext(id=user.id, roles=roles, groups=list(user.groups), attributes=attributes),
            resource=ResourceContext(type=ALL),
            action=MANAGE,
            organization_id=organization_id,
        )

    def _subject_matches(self, policy: Policy, variables: EvaluationContext) -> bool:
        """Whether the policy's subject criteria (users, roles, groups, attributes) cover the user."""
        try:
            return self._matcher.matches_subjects(policy.subjects, variables)
        except (TypeError, ValueError, AttributeError) as exc:
            logger.warning("Policy %s has malformed subject criteria, skipping: %s", policy.id, exc)
            return False

    @staticmethod
    def _build_conditions(policy: Policy, variables: EvaluationContext, organization_id: str) -> Dict[str, Any]:
        conditions: Dict[str, Any] = {"organizationId": organization_id}
        for key, value in policy.resources.attributes.items():
            conditions[key] = resolve_variables(value, variables)
        return conditions

    @staticmethod
    def _merge_field_permissions(merged: Dict[str, FieldPermissionSet], policy: Policy) -> None:
        types = policy.resources.types
        for resource_type, permissions in policy.field_permissions.items():
            if types and "*" not in types and resource_type not in types:
                continue
            current = merged.get(resource_type)
            merged[resource_type] = permissions if current is None else current.merge(permissions)
