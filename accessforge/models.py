# -*- coding: utf-8 -*-
"""Location: ./accessforge/models.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Pydantic models for the AccessForge decision engine.

All domain types used across the condition matcher, the evaluators, the
decision cache, the ability compiler and the field filter are defined here
so the rest of the codebase has a single, unambiguous import target.

Field names are snake_case; every model also accepts (and can emit) the
camelCase aliases used by stored policy documents, e.g. ``timeWindow`` or
``fieldPermissions``.
"""

from __future__ import annotations

# Standard
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
import uuid

# Third-Party
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Return the current Coordinated Universal Time (UTC).

    Returns:
        datetime: A timezone-aware `datetime` whose `tzinfo` is
        `datetime.timezone.utc`.

    Examples:
        >>> now = utc_now()
        >>> now.tzinfo is not None
        True
    """
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a new string identifier.

    Returns:
        str: A random UUID4 string
    """
    return str(uuid.uuid4())


class BaseModelWithConfigDict(BaseModel):
    """Base model accepting both snake_case names and camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PolicyEffect(str, Enum):
    """Effect a matching policy contributes to the decision."""

    ALLOW = "allow"
    DENY = "deny"


class AttributeCategory(str, Enum):
    """The four attribute domains a policy can reference."""

    SUBJECT = "subject"
    RESOURCE = "resource"
    ENVIRONMENT = "environment"
    ACTION = "action"


class AttributeType(str, Enum):
    """Value types an attribute definition can declare."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    ARRAY = "array"
    OBJECT = "object"


# ---------------------------------------------------------------------------
# Shared record metadata
# ---------------------------------------------------------------------------


class AuditInfo(BaseModelWithConfigDict):
    """Creation / modification metadata embedded in every stored record."""

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None


# ---------------------------------------------------------------------------
# Policy documents
# ---------------------------------------------------------------------------


class SubjectCriteria(BaseModelWithConfigDict):
    """Who a policy applies to."""

    users: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)
    groups: List[str] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        """Return True when no subject criterion is declared."""
        return not (self.users or self.roles or self.groups or self.attributes)


class ResourceCriteria(BaseModelWithConfigDict):
    """What a policy applies to."""

    types: List[str] = Field(default_factory=list)
    ids: List[str] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        """Return True when no resource criterion is declared."""
        return not (self.types or self.ids or self.attributes)


class TimeWindow(BaseModelWithConfigDict):
    """Time-of-day window (``HH:MM``) with an optional day-of-week filter.

    ``days_of_week`` uses 0 for Sunday through 6 for Saturday.
    """

    start: Optional[str] = None
    end: Optional[str] = None
    timezone: Optional[str] = None
    days_of_week: List[int] = Field(default_factory=list)


class PolicyConditions(BaseModelWithConfigDict):
    """Environmental conditions attached to a policy."""

    time_window: Optional[TimeWindow] = None
    ip_addresses: List[str] = Field(default_factory=list)
    denied_ip_addresses: List[str] = Field(default_factory=list)
    locations: List[str] = Field(default_factory=list)
    custom_conditions: Dict[str, Any] = Field(default_factory=dict)


class FieldPermissionSet(BaseModelWithConfigDict):
    """Readable / writable / denied field classification for one resource type.

    ``denied`` always wins over ``readable`` and ``writable``.

    Examples:
        >>> a = FieldPermissionSet(readable=["id", "name"], denied=["cost"])
        >>> b = FieldPermissionSet(readable=["name", "cost"], writable=["name"])
        >>> merged = a.merge(b)
        >>> merged.readable
        ['id', 'name', 'cost']
        >>> merged.effective_readable
        ['id', 'name']
        >>> merged.is_denied("cost")
        True
    """

    readable: List[str] = Field(default_factory=list)
    writable: List[str] = Field(default_factory=list)
    denied: List[str] = Field(default_factory=list)

    def merge(self, other: "FieldPermissionSet") -> "FieldPermissionSet":
        """Union every set with another permission set, preserving first-seen order.

        Args:
            other: Permission set to merge in

        Returns:
            FieldPermissionSet: A new merged set
        """
        return FieldPermissionSet(
            readable=list(dict.fromkeys([*self.readable, *other.readable])),
            writable=list(dict.fromkeys([*self.writable, *other.writable])),
            denied=list(dict.fromkeys([*self.denied, *other.denied])),
        )

    def is_denied(self, field: str) -> bool:
        """Whether ``field`` is explicitly denied."""
        return field in self.denied

    @property
    def effective_readable(self) -> List[str]:
        """Readable fields with denied ones removed."""
        return [f for f in self.readable if f not in self.denied]

    @property
    def effective_writable(self) -> List[str]:
        """Writable fields with denied ones removed."""
        return [f for f in self.writable if f not in self.denied]


class PolicySummary(BaseModelWithConfigDict):
    """Compact, cacheable reference to a policy that matched an evaluation."""

    id: str
    name: str
    effect: PolicyEffect
    priority: int
    version: int = 1
    organization_id: Optional[str] = None


class Policy(BaseModelWithConfigDict):
    """An ABAC policy.

    ``priority`` is domain-validated to 0-1000; a higher number is more
    significant and is only used to order evaluation and ``reasons``.
    """

    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    effect: PolicyEffect
    priority: int = Field(default=100, ge=0, le=1000)
    subjects: SubjectCriteria = Field(default_factory=SubjectCriteria)
    resources: ResourceCriteria = Field(default_factory=ResourceCriteria)
    actions: List[str] = Field(default_factory=list)
    conditions: Optional[PolicyConditions] = None
    organization_id: str
    policy_set_id: Optional[str] = None
    is_active: bool = True
    version: int = 1
    field_permissions: Dict[str, FieldPermissionSet] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    audit: AuditInfo = Field(default_factory=AuditInfo)

    def summary(self) -> PolicySummary:
        """Return the cacheable summary of this policy."""
        return PolicySummary(
            id=self.id,
            name=self.name,
            effect=self.effect,
            priority=self.priority,
            version=self.version,
            organization_id=self.organization_id,
        )


class PolicySet(BaseModelWithConfigDict):
    """A named, prioritized grouping of policies within an organization."""

    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    organization_id: str
    priority: int = 100
    is_active: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)
    audit: AuditInfo = Field(default_factory=AuditInfo)


class PolicyCreate(BaseModelWithConfigDict):
    """Input for creating a policy."""

    name: str
    description: Optional[str] = None
    effect: PolicyEffect
    priority: Optional[int] = None
    subjects: Optional[SubjectCriteria] = None
    resources: Optional[ResourceCriteria] = None
    actions: List[str] = Field(default_factory=list)
    conditions: Optional[PolicyConditions] = None
    organization_id: str
    policy_set_id: Optional[str] = None
    field_permissions: Dict[str, FieldPermissionSet] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None


class PolicyUpdate(BaseModelWithConfigDict):
    """Partial update for a policy; only fields that are set are applied."""

    name: Optional[str] = None
    description: Optional[str] = None
    effect: Optional[PolicyEffect] = None
    priority: Optional[int] = None
    subjects: Optional[SubjectCriteria] = None
    resources: Optional[ResourceCriteria] = None
    actions: Optional[List[str]] = None
    conditions: Optional[PolicyConditions] = None
    policy_set_id: Optional[str] = None
    field_permissions: Optional[Dict[str, FieldPermissionSet]] = None
    metadata: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None
    updated_by: Optional[str] = None


class PolicyTestResult(BaseModelWithConfigDict):
    """Outcome of testing one policy against one context."""

    matches: bool
    effect: PolicyEffect
    reason: str


# ---------------------------------------------------------------------------
# Attribute catalog
# ---------------------------------------------------------------------------


class AttributeValidation(BaseModelWithConfigDict):
    """Validation rules applied to attribute values on the write path."""

    enum: Optional[List[Any]] = None
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    required: bool = False


class AttributeDefinition(BaseModelWithConfigDict):
    """Catalog entry describing an attribute key.

    ``organization_id=None`` marks a system-wide definition.
    """

    id: str = Field(default_factory=new_id)
    key: str
    name: Optional[str] = None
    category: AttributeCategory
    value_type: AttributeType = AttributeType.STRING
    description: Optional[str] = None
    validation: AttributeValidation = Field(default_factory=AttributeValidation)
    default_value: Any = None
    organization_id: Optional[str] = None
    is_system: bool = False
    audit: AuditInfo = Field(default_factory=AuditInfo)


# ---------------------------------------------------------------------------
# Organizations, users, roles
# ---------------------------------------------------------------------------


class Organization(BaseModelWithConfigDict):
    """A node in the organization tree."""

    id: str
    name: str
    parent_id: Optional[str] = None


class Membership(BaseModelWithConfigDict):
    """Legacy single-role membership of a user in an organization."""

    organization_id: str
    role: str


class RoleAssignment(BaseModelWithConfigDict):
    """One of possibly many roles a user holds in an organization."""

    id: str = Field(default_factory=new_id)
    user_id: str
    organization_id: str
    role_name: str
    priority: int = 0
    is_active: bool = True
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None

    def is_effective(self, now: datetime) -> bool:
        """Whether the assignment holds at ``now`` (``valid_from <= now < valid_to``).

        Args:
            now: Reference time (timezone-aware)

        Returns:
            bool: True when active and inside the validity window

        Examples:
            >>> from datetime import timedelta
            >>> now = utc_now()
            >>> RoleAssignment(user_id="u", organization_id="o", role_name="admin").is_effective(now)
            True
            >>> RoleAssignment(user_id="u", organization_id="o", role_name="admin", valid_to=now).is_effective(now)
            False
        """
        if not self.is_active:
            return False
        if self.valid_from is not None and _aware(self.valid_from) > now:
            return False
        if self.valid_to is not None and now >= _aware(self.valid_to):
            return False
        return True


class User(BaseModelWithConfigDict):
    """The user an ability is compiled for."""

    id: str
    email: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    groups: List[str] = Field(default_factory=list)
    memberships: List[Membership] = Field(default_factory=list)


def _aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Evaluation request / response
# ---------------------------------------------------------------------------


class SubjectContext(BaseModelWithConfigDict):
    """The entity requesting access."""

    model_config = ConfigDict(frozen=True)

    id: str
    roles: List[str] = Field(default_factory=list)
    groups: List[str] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(default_factory=dict)


class ResourceContext(BaseModelWithConfigDict):
    """The thing being accessed."""

    model_config = ConfigDict(frozen=True)

    type: str
    id: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)


class EnvironmentContext(BaseModelWithConfigDict):
    """Ambient information about the request."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    ip_address: Optional[str] = None
    location: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)


class EvaluationContext(BaseModelWithConfigDict):
    """Everything the engine needs to make one decision."""

    model_config = ConfigDict(frozen=True)

    subject: SubjectContext
    resource: ResourceContext
    action: str
    environment: EnvironmentContext = Field(default_factory=EnvironmentContext)
    organization_id: str


class EvaluationResult(BaseModelWithConfigDict):
    """Explained decision for one context.

    ``allowed`` is true iff at least one allow policy matched and no deny
    policy matched. ``evaluation_time`` is in milliseconds.
    """

    allowed: bool
    matched_policies: List[PolicySummary] = Field(default_factory=list)
    denied_policies: List[PolicySummary] = Field(default_factory=list)
    reasons: List[str] = Field(default_factory=list)
    evaluation_time: float = 0.0
    from_cache: bool = False

    @classmethod
    def fail_closed(cls, reason: str, evaluation_time: float = 0.0) -> "EvaluationResult":
        """Build a deny result with no matched policies.

        Args:
            reason: Human-readable reason
            evaluation_time: Elapsed milliseconds

        Returns:
            EvaluationResult: A deny result

        Examples:
            >>> r = EvaluationResult.fail_closed("Policy evaluation error")
            >>> r.allowed, r.matched_policies, r.reasons
            (False, [], ['Policy evaluation error'])
        """
        return cls(allowed=False, reasons=[reason], evaluation_time=evaluation_time)


class CacheEntry(BaseModelWithConfigDict):
    """A cached decision with its wall-clock validity window (epoch seconds)."""

    value: EvaluationResult
    cached_at: float
    expires_at: float

    def is_valid(self, now: float) -> bool:
        """An entry is valid iff ``now < expires_at``."""
        return now < self.expires_at


class Operation(BaseModelWithConfigDict):
    """A resource-type / action pair, used to warm a user's cache."""

    resource: str
    action: str


# ---------------------------------------------------------------------------
# Abilities
# ---------------------------------------------------------------------------


class AbilityRule(BaseModelWithConfigDict):
    """One compiled capability grant (or denial when ``inverted``).

    ``conditions`` is an attribute predicate over the target resource whose
    ``${...}`` variables were resolved at compile time; ``policy_conditions``
    are environmental conditions checked when the ability is queried.
    """

    action: str
    resource_type: str
    inverted: bool = False
    conditions: Dict[str, Any] = Field(default_factory=dict)
    policy_conditions: Optional[PolicyConditions] = None
    policy_id: Optional[str] = None


class CompileOptions(BaseModelWithConfigDict):
    """Options for compiling an ability."""

    include_field_permissions: bool = True
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None


class CanWithFieldsResult(BaseModelWithConfigDict):
    """Result of an action check that also reports the field permissions.

    The field lists are ``None`` when the action is not allowed.
    """

    allowed: bool
    readable_fields: Optional[List[str]] = None
    writable_fields: Optional[List[str]] = None
    denied_fields: Optional[List[str]] = None


# ---------------------------------------------------------------------------
# Field audit
# ---------------------------------------------------------------------------


class FieldAccessCheck(BaseModelWithConfigDict):
    """Whether one field may be read."""

    field: str
    allowed: bool


class FieldAccessEvent(BaseModelWithConfigDict):
    """Payload published to the audit sink for field access and denial."""

    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    resource_type: str
    resource_id: Optional[str] = None
    action: Literal["read", "write"] = "read"
    fields: List[str] = Field(default_factory=list)
    denied_fields: List[str] = Field(default_factory=list)
    sensitive_fields: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)
    ip_address: Optional[str] = None
    request_id: Optional[str] = None
