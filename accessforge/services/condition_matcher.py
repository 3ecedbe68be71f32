# -*- coding: utf-8 -*-
"""Location: ./accessforge/services/condition_matcher.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Condition matcher: pure predicate evaluation for ABAC policies.

A policy matches a context when, in order:

1. its ``actions`` contain the requested action (or ``*``),
2. its ``subjects`` criteria match the subject,
3. its ``resources`` criteria match the resource,
4. its ``conditions`` block (time window, IP lists, locations, custom
   predicates) holds for the environment.

Attribute predicates
--------------------
For each declared key the *actual* value is looked up by dot-path in the
context's attribute map (``MISSING`` if any segment is absent) and the
*expected* value has its ``${path}`` tokens substituted from the context.
Then:

* ``"*"``         : actual must be present.
* a list          : actual must be a member.
* ``"/regex/"``   : regex search against the stringified actual value.
* an operator dict: every operator (``equals``, ``in``, ``$gt``, …) must hold.
* any other dict  : compared key by key, recursively.
* anything else   : strict equality (``True`` never equals ``1``).

Nothing in this module raises for bad policy data: malformed criteria fail
closed and are reported as a non-match.

Examples:
    >>> from accessforge.models import EvaluationContext, SubjectContext, ResourceContext
    >>> ctx = EvaluationContext(
    ...     subject=SubjectContext(id="u1", attributes={"organizationId": "org-1"}),
    ...     resource=ResourceContext(type="product", attributes={"organizationId": "org-1"}),
    ...     action="read",
    ...     organization_id="org-1",
    ... )
    >>> resolve_variables("${subject.id}", ctx)
    'u1'
    >>> resolve_variables("${subject.nonexistent}", ctx)
    '${subject.nonexistent}'
    >>> compare_attribute_values(resolve_variables("${subject.organizationId}", ctx), "org-1")
    True
    >>> compare_attribute_values({"$gt": 5}, 7)
    True
"""

# Standard
from collections.abc import Mapping
from datetime import datetime, timezone
import fnmatch
import ipaddress
import logging
import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Third-Party
from pydantic import BaseModel

# First-Party
from accessforge.models import EvaluationContext, Policy, PolicyConditions, PolicyEffect, ResourceCriteria, SubjectCriteria, TimeWindow

logger = logging.getLogger(__name__)

# Custom predicate hook: (configured value, context) -> bool
ConditionHook = Callable[[Any, EvaluationContext], bool]


class _Missing:
    """Marker for an attribute that is not present (distinct from ``None``)."""

    _instance: Optional["_Missing"] = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()

_VARIABLE_RE = re.compile(r"\$\{([^}]+)\}")
_SINGLE_VARIABLE_RE = re.compile(r"^\$\{([^}]+)\}$")
_TIME_RE = re.compile(r"^\d{1,2}:\d{2}$")
_CONTEXT_DOMAINS = ("subject", "resource", "environment")


# ---------------------------------------------------------------------------
# Path resolution and variable substitution
# ---------------------------------------------------------------------------


def _child(value: Any, key: str) -> Any:
    """Step one path segment into a mapping, pydantic model or list."""
    if isinstance(value, Mapping):
        return value[key] if key in value else MISSING
    if isinstance(value, BaseModel):
        fields = type(value).model_fields
        if key in fields:
            return getattr(value, key)
        for name, info in fields.items():
            if info.alias == key:
                return getattr(value, name)
        return MISSING
    if isinstance(value, (list, tuple)) and key.isdigit():
        index = int(key)
        return value[index] if index < len(value) else MISSING
    return MISSING


def resolve_path(path: str, attributes: Any) -> Any:
    """Resolve a dot-separated path inside an attribute map.

    A key that literally contains dots is honoured before the path is split.

    Args:
        path: Dot-separated path, e.g. ``"user.department"``
        attributes: Mapping (or model) to traverse

    Returns:
        Any: The value, or ``MISSING`` if any segment is absent

    Examples:
        >>> resolve_path("a.b", {"a": {"b": 1}})
        1
        >>> resolve_path("a.c", {"a": {"b": 1}})
        MISSING
        >>> resolve_path("env.flag", {"env.flag": True})
        True
    """
    if isinstance(attributes, Mapping) and path in attributes:
        return attributes[path]
    current = attributes
    for part in path.split("."):
        current = _child(current, part)
        if current is MISSING:
            return MISSING
    return current


def resolve_variable_path(path: str, context: EvaluationContext) -> Any:
    """Resolve a ``${...}`` variable path against an evaluation context.

    ``self`` aliases the subject.  When ``subject.x`` (or ``resource.x`` /
    ``environment.x``) is not a field of that object, the lookup falls back
    to its ``attributes`` map.

    Args:
        path: Variable path without the ``${}`` wrapper
        context: Evaluation context

    Returns:
        Any: The resolved value, or ``MISSING``
    """
    parts = [p for p in path.strip().split(".") if p]
    if not parts:
        return MISSING
    if parts[0] == "self":
        parts = ["subject", *parts[1:]]

    current: Any = context
    for index, part in enumerate(parts):
        nxt = _child(current, part)
        if nxt is MISSING:
            if index >= 1 and parts[0] in _CONTEXT_DOMAINS:
                domain = _child(context, parts[0])
                return resolve_path(".".join(parts[1:]), domain.attributes)
            return MISSING
        current = nxt
    return current


def _stringify(value: Any) -> str:
    """Render a value the way it is interpolated into strings and regex tests."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def resolve_variables(value: Any, context: Optional[EvaluationContext]) -> Any:
    """Substitute ``${path}`` tokens in ``value`` from the context.

    A string that is exactly one token resolves to the raw, typed value.
    Unresolvable tokens are left in place as literal text.  Lists and dicts
    are resolved element-wise.

    Args:
        value: Expected value from a policy
        context: Evaluation context, or ``None`` to skip substitution

    Returns:
        Any: The value with variables substituted
    """
    if context is None:
        return value
    if isinstance(value, str):
        if "${" not in value:
            return value
        single = _SINGLE_VARIABLE_RE.match(value)
        if single:
            resolved = resolve_variable_path(single.group(1), context)
            return value if resolved is MISSING or resolved is None else resolved

        def _replace(match: "re.Match[str]") -> str:
            resolved = resolve_variable_path(match.group(1), context)
            if resolved is MISSING or resolved is None:
                return match.group(0)
            return _stringify(resolved)

        return _VARIABLE_RE.sub(_replace, value)
    if isinstance(value, list):
        return [resolve_variables(item, context) for item in value]
    if isinstance(value, Mapping):
        return {key: resolve_variables(item, context) for key, item in value.items()}
    return value


# ---------------------------------------------------------------------------
# Value comparison
# ---------------------------------------------------------------------------


def _strict_equals(a: Any, b: Any) -> bool:
    """Equality without Python's bool/int coercion; ``MISSING`` equals nothing."""
    if a is MISSING or b is MISSING:
        return False
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return bool(a == b)


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _sign(delta: float) -> int:
    return (delta > 0) - (delta < 0)


def compare_values(a: Any, b: Any) -> Optional[int]:
    """Order two values, returning -1, 0 or 1, or ``None`` when incomparable.

    ``HH:MM`` strings compare as times of day; datetimes (or a datetime and
    an ISO string) compare chronologically; numbers numerically; other
    strings lexically.

    Examples:
        >>> compare_values("9:30", "17:00")
        -1
        >>> compare_values(10, 2)
        1
        >>> compare_values(10, "2") is None
        True
    """
    if isinstance(a, str) and isinstance(b, str):
        if _TIME_RE.match(a) and _TIME_RE.match(b):
            return _sign(_minutes_of(a) - _minutes_of(b))
        return _sign((a > b) - (a < b))
    if isinstance(a, datetime) or isinstance(b, datetime):
        try:
            left = a if isinstance(a, datetime) else datetime.fromisoformat(str(a))
            right = b if isinstance(b, datetime) else datetime.fromisoformat(str(b))
        except ValueError:
            return None
        return _sign((_as_aware(left) - _as_aware(right)).total_seconds())
    numeric = (int, float)
    if isinstance(a, numeric) and isinstance(b, numeric) and not isinstance(a, bool) and not isinstance(b, bool):
        return _sign(a - b)
    return None


def _minutes_of(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def _in(value: Any, candidates: Any) -> bool:
    if not isinstance(candidates, (list, tuple, set)):
        return False
    if isinstance(value, list):
        return any(_in(item, candidates) for item in value)
    return any(_strict_equals(value, candidate) for candidate in candidates)


def _ordered(value: Any, operand: Any, accept: Callable[[int], bool]) -> bool:
    order = compare_values(value, operand)
    return order is not None and accept(order)


def _between(value: Any, bounds: Any) -> Optional[bool]:
    if not isinstance(bounds, (list, tuple)) or len(bounds) != 2:
        return None
    low, high = compare_values(value, bounds[0]), compare_values(value, bounds[1])
    if low is None or high is None:
        return None
    return low >= 0 and high <= 0


def _regex(value: Any, pattern: Any) -> bool:
    if not isinstance(value, str) or not isinstance(pattern, str):
        return False
    try:
        return re.search(pattern, value) is not None
    except re.error as exc:
        logger.warning("Invalid regex %r in policy condition: %s", pattern, exc)
        return False


def _contains(value: Any, operand: Any) -> bool:
    if isinstance(value, list):
        return any(_strict_equals(item, operand) for item in value)
    if isinstance(value, str) and isinstance(operand, str):
        return operand in value
    return False


def _not_between(value: Any, bounds: Any) -> bool:
    inside = _between(value, bounds)
    return inside is not None and not inside


def _inside(value: Any, bounds: Any) -> bool:
    return bool(_between(value, bounds))


# Operators that run before the "value must be present" check
_PRESENCE_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "exists": lambda value, operand: (value is not MISSING and value is not None) == bool(operand),
    "$exists": lambda value, operand: (value is not MISSING and value is not None) == bool(operand),
    "equals": lambda value, operand: value is not MISSING and (value is operand is None or _strict_equals(value, operand)),
    "$eq": lambda value, operand: value is not MISSING and (value is operand is None or _strict_equals(value, operand)),
}

_VALUE_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "$ne": lambda value, operand: not _strict_equals(value, operand),
    "in": _in,
    "$in": _in,
    "not_in": lambda value, operand: isinstance(operand, (list, tuple, set)) and not _in(value, operand),
    "$nin": lambda value, operand: isinstance(operand, (list, tuple, set)) and not _in(value, operand),
    "between": _inside,
    "not_between": _not_between,
    "contains": _contains,
    "contains_any": lambda value, operand: isinstance(value, list) and isinstance(operand, list) and any(_contains(value, item) for item in operand),
    "greater_than": lambda value, operand: _ordered(value, operand, lambda o: o > 0),
    "$gt": lambda value, operand: _ordered(value, operand, lambda o: o > 0),
    "greater_than_or_equal": lambda value, operand: _ordered(value, operand, lambda o: o >= 0),
    "$gte": lambda value, operand: _ordered(value, operand, lambda o: o >= 0),
    "less_than": lambda value, operand: _ordered(value, operand, lambda o: o < 0),
    "$lt": lambda value, operand: _ordered(value, operand, lambda o: o < 0),
    "less_than_or_equal": lambda value, operand: _ordered(value, operand, lambda o: o <= 0),
    "$lte": lambda value, operand: _ordered(value, operand, lambda o: o <= 0),
    "starts_with": lambda value, operand: isinstance(value, str) and isinstance(operand, str) and value.startswith(operand),
    "ends_with": lambda value, operand: isinstance(value, str) and isinstance(operand, str) and value.endswith(operand),
    "matches": _regex,
    "$regex": _regex,
}

OPERATORS = frozenset(_PRESENCE_OPERATORS) | frozenset(_VALUE_OPERATORS)


def is_operator_object(expected: Any) -> bool:
    """Whether ``expected`` is a non-empty dict made only of operator keys.

    Examples:
        >>> is_operator_object({"in": [1, 2]})
        True
        >>> is_operator_object({"department": "sales"})
        False
    """
    return isinstance(expected, Mapping) and bool(expected) and all(key in OPERATORS for key in expected)


def evaluate_operators(value: Any, operators: Mapping[str, Any]) -> bool:
    """Apply every operator in ``operators`` to ``value`` (logical AND).

    A missing or ``None`` value fails every operator except ``exists`` and
    ``equals``.

    Examples:
        >>> evaluate_operators(5, {"between": [1, 10], "not_in": [3]})
        True
        >>> evaluate_operators(None, {"exists": False})
        True
        >>> evaluate_operators("17:30", {"not_between": ["09:00", "17:00"]})
        True
    """
    for name, operand in operators.items():
        presence = _PRESENCE_OPERATORS.get(name)
        if presence is not None:
            if not presence(value, operand):
                return False
            continue
        if value is MISSING or value is None:
            return False
        if not _VALUE_OPERATORS[name](value, operand):
            return False
    return True


def compare_attribute_values(expected: Any, actual: Any) -> bool:
    """Compare an (already variable-resolved) expected value with an actual one.

    Args:
        expected: Expected value or predicate from the policy
        actual: Actual value from the context, possibly ``MISSING``

    Returns:
        bool: True when the actual value satisfies the expectation

    Examples:
        >>> compare_attribute_values("*", "anything")
        True
        >>> compare_attribute_values("*", MISSING)
        False
        >>> compare_attribute_values(["a", "b"], "b")
        True
        >>> compare_attribute_values("/^sales-/", "sales-emea")
        True
        >>> compare_attribute_values({"region": "emea"}, {"region": "emea", "tier": 1})
        True
        >>> compare_attribute_values(1, True)
        False
    """
    if isinstance(expected, str):
        if expected == "*":
            return actual is not MISSING
        if len(expected) >= 2 and expected.startswith("/") and expected.endswith("/"):
            if actual is MISSING:
                return False
            return _regex(_stringify(actual), expected[1:-1])
    if isinstance(expected, (list, tuple)):
        return actual is not MISSING and any(_strict_equals(candidate, actual) for candidate in expected)
    if isinstance(expected, Mapping):
        if is_operator_object(expected):
            return evaluate_operators(actual, expected)
        if not isinstance(actual, Mapping):
            return False
        return all(compare_attribute_values(value, actual[key] if key in actual else MISSING) for key, value in expected.items())
    return _strict_equals(expected, actual)


# ---------------------------------------------------------------------------
# Environment predicates
# ---------------------------------------------------------------------------


def matches_ip(patterns: Iterable[str], client_ip: str) -> bool:
    """Match a client IP against exact, ``*`` glob and CIDR patterns.

    Examples:
        >>> matches_ip(["10.0.0.0/8"], "10.1.2.3")
        True
        >>> matches_ip(["10.0.0.0/8"], "100.1.2.3")
        False
        >>> matches_ip(["192.168.1.*"], "192.168.1.77")
        True
        >>> matches_ip(["127.0.0.1"], "127.0.0.2")
        False
    """
    for pattern in patterns:
        if "/" in pattern:
            try:
                if ipaddress.ip_address(client_ip) in ipaddress.ip_network(pattern, strict=False):
                    return True
            except ValueError:
                logger.debug("Skipping unparsable CIDR %r / address %r", pattern, client_ip)
            continue
        if "*" in pattern:
            if fnmatch.fnmatchcase(client_ip, pattern):
                return True
            continue
        if pattern == client_ip:
            return True
    return False


def _parse_time_of_day(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    if not _TIME_RE.match(value.strip()):
        raise ValueError(f"Invalid time of day: {value!r}")
    minutes = _minutes_of(value.strip())
    if minutes >= 24 * 60:
        raise ValueError(f"Invalid time of day: {value!r}")
    return minutes


def matches_time_window(window: TimeWindow, timestamp: datetime) -> bool:
    """Check a timestamp against a time-of-day window and day-of-week filter.

    Bounds are inclusive.  A window whose start is after its end wraps
    midnight (``17:00``-``09:00``).  Naive timestamps are treated as UTC and
    converted to ``window.timezone`` when one is given.  Malformed windows
    and unknown time zones never match.

    Examples:
        >>> from datetime import datetime, timezone
        >>> evening = datetime(2025, 3, 4, 18, 0, tzinfo=timezone.utc)
        >>> matches_time_window(TimeWindow(start="17:00", end="09:00"), evening)
        True
        >>> matches_time_window(TimeWindow(start="09:00", end="17:00"), evening)
        False
        >>> matches_time_window(TimeWindow(days_of_week=[2]), evening)  # a Tuesday
        True
    """
    moment = _as_aware(timestamp)
    if window.timezone:
        try:
            moment = moment.astimezone(ZoneInfo(window.timezone))
        except (ZoneInfoNotFoundError, ValueError) as exc:
            logger.warning("Unknown time zone %r in time window: %s", window.timezone, exc)
            return False

    if window.start or window.end:
        try:
            start = _parse_time_of_day(window.start)
            end = _parse_time_of_day(window.end)
        except ValueError as exc:
            logger.warning("Malformed time window %s: %s", window.model_dump(), exc)
            return False
        current = moment.hour * 60 + moment.minute
        if start is not None and end is not None:
            inside = start <= current <= end if start <= end else (current >= start or current <= end)
        elif start is not None:
            inside = current >= start
        else:
            inside = current <= end
        if not inside:
            return False

    if window.days_of_week:
        # Python's Monday=0 becomes Sunday=0
        day = (moment.weekday() + 1) % 7
        if day not in window.days_of_week:
            return False
    return True


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------


class ConditionMatcher:
    """Evaluates whether a policy applies to an evaluation context.

    Custom predicate hooks can be registered by name; they are consulted for
    ``conditions.custom_conditions`` entries before the entry is treated as
    a context path.

    Examples:
        >>> matcher = ConditionMatcher()
        >>> matcher.register_hook("always", lambda value, ctx: bool(value))
        >>> sorted(matcher.hooks)
        ['always']
    """

    def __init__(self, hooks: Optional[Dict[str, ConditionHook]] = None):
        self._hooks: Dict[str, ConditionHook] = dict(hooks or {})

    @property
    def hooks(self) -> Dict[str, ConditionHook]:
        """Registered custom condition hooks."""
        return dict(self._hooks)

    def register_hook(self, name: str, hook: ConditionHook) -> None:
        """Register (or replace) a custom condition hook."""
        self._hooks[name] = hook

    # ------------------------------------------------------------------
    # Whole-policy matching
    # ------------------------------------------------------------------

    def matches(self, policy: Policy, context: EvaluationContext) -> bool:
        """Return True when every criterion of ``policy`` holds for ``context``."""
        return self.explain(policy, context)[0]

    def explain(self, policy: Policy, context: EvaluationContext) -> Tuple[bool, str]:
        """Match a policy and report the first criterion that failed.

        Args:
            policy: Policy to test
            context: Evaluation context

        Returns:
            Tuple[bool, str]: ``(matched, reason)``
        """
        try:
            if not self.matches_action(policy.actions, context.action):
                return False, f"action '{context.action}' not covered by policy actions"
            if not self.matches_subjects(policy.subjects, context):
                return False, "subject criteria not satisfied"
            if not self.matches_resources(policy.resources, context):
                return False, "resource criteria not satisfied"
            if not self.matches_conditions(policy.conditions, context, policy.effect):
                return False, "conditions not satisfied"
        except (TypeError, ValueError, AttributeError) as exc:
            logger.warning("Policy %s has malformed criteria, treating as non-match: %s", policy.id, exc)
            return False, f"malformed policy criteria: {exc}"
        return True, "all criteria satisfied"

    # ------------------------------------------------------------------
    # Criteria
    # ------------------------------------------------------------------

    @staticmethod
    def matches_action(actions: List[str], action: str) -> bool:
        """The requested action is listed literally or via ``*``."""
        return action in actions or "*" in actions

    def matches_subjects(self, criteria: SubjectCriteria, context: EvaluationContext) -> bool:
        """Match user ids, roles, groups and subject attributes."""
        subject = context.subject
        if criteria.users and "*" not in criteria.users and subject.id not in criteria.users:
            return False
        if criteria.roles and "*" not in criteria.roles and not set(criteria.roles) & set(subject.roles):
            return False
        if criteria.groups and "*" not in criteria.groups and not set(criteria.groups) & set(subject.groups):
            return False
        if criteria.attributes and not self.matches_attributes(criteria.attributes, subject.attributes, context):
            return False
        return True

    def matches_resources(self, criteria: ResourceCriteria, context: EvaluationContext) -> bool:
        """Match resource types, ids (when the request names one) and attributes."""
        resource = context.resource
        if criteria.types and "*" not in criteria.types and resource.type not in criteria.types:
            return False
        if criteria.ids and resource.id is not None and "*" not in criteria.ids and resource.id not in criteria.ids:
            return False
        if criteria.attributes and not self.matches_attributes(criteria.attributes, resource.attributes, context):
            return False
        return True

    @staticmethod
    def matches_attributes(expected: Mapping[str, Any], attributes: Mapping[str, Any], context: Optional[EvaluationContext] = None) -> bool:
        """Match an attribute-predicate map against an attribute map.

        Args:
            expected: Policy predicates keyed by attribute path
            attributes: Actual attributes
            context: Context used for ``${...}`` substitution (optional)

        Returns:
            bool: True when every predicate holds
        """
        if not isinstance(expected, Mapping):
            return False
        for key, expected_value in expected.items():
            actual = resolve_path(key, attributes)
            if not compare_attribute_values(resolve_variables(expected_value, context), actual):
                logger.debug("Attribute %s did not match (expected=%r, actual=%r)", key, expected_value, actual)
                return False
        return True

    def matches_conditions(self, conditions: Optional[PolicyConditions], context: EvaluationContext, effect: PolicyEffect = PolicyEffect.ALLOW) -> bool:
        """Evaluate the environmental conditions block.

        When the request carries no IP address (or no location), the IP (or
        location) restriction cannot be checked.  It then fails for allow
        policies and holds for deny policies, so a missing value never widens
        access.
        """
        if conditions is None:
            return True
        environment = context.environment
        missing_holds = effect == PolicyEffect.DENY

        if conditions.time_window is not None and not matches_time_window(conditions.time_window, environment.timestamp):
            return False

        if conditions.ip_addresses or conditions.denied_ip_addresses:
            if not environment.ip_address:
                if not missing_holds:
                    return False
            else:
                if conditions.ip_addresses and not matches_ip(conditions.ip_addresses, environment.ip_address):
                    return False
                if conditions.denied_ip_addresses and matches_ip(conditions.denied_ip_addresses, environment.ip_address):
                    return False

        if conditions.locations:
            if not environment.location:
                if not missing_holds:
                    return False
            elif environment.location not in conditions.locations:
                return False

        if conditions.custom_conditions and not self.matches_custom_conditions(conditions.custom_conditions, context):
            return False
        return True

    def matches_custom_conditions(self, custom: Mapping[str, Any], context: EvaluationContext) -> bool:
        """Evaluate custom predicates: registered hooks first, then context paths."""
        for name, expected in custom.items():
            hook = self._hooks.get(name)
            if hook is not None:
                try:
                    satisfied = bool(hook(expected, context))
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Custom condition hook %s failed, treating as non-match: %s", name, exc)
                    return False
            else:
                satisfied = compare_attribute_values(resolve_variables(expected, context), resolve_variable_path(name, context))
            if not satisfied:
                return False
        return True
