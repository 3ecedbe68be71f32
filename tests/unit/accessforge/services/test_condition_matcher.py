# -*- coding: utf-8 -*-
"""Location: ./tests/unit/accessforge/services/test_condition_matcher.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Unit tests for the condition matcher.

Covered behaviours
------------------
* ``${...}`` variable substitution (typed, embedded, unresolved, ``self``)
* attribute comparison rules and the operator set
* IP, time-window, location and custom conditions
* whole-policy matching and ``explain`` reasons
"""

# Standard
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Third-Party
import pytest

# First-Party
from accessforge.models import PolicyConditions, TimeWindow
from accessforge.services.condition_matcher import (
    compare_attribute_values,
    ConditionMatcher,
    evaluate_operators,
    matches_ip,
    matches_time_window,
    MISSING,
    resolve_path,
    resolve_variables,
)


@pytest.fixture
def matcher():
    return ConditionMatcher()


# ===========================================================================
# Variable substitution
# ===========================================================================


class TestResolveVariables:
    def test_subject_id_resolves(self, make_context):
        ctx = make_context(subject_id="u-42")
        assert resolve_variables("${subject.id}", ctx) == "u-42"

    def test_self_aliases_subject(self, make_context):
        ctx = make_context(subject_id="u-42")
        assert resolve_variables("${self.id}", ctx) == "u-42"

    def test_single_token_keeps_type(self, make_context):
        ctx = make_context(subject_attributes={"level": 3})
        assert resolve_variables("${subject.level}", ctx) == 3

    def test_embedded_token_is_stringified(self, make_context):
        ctx = make_context(subject_attributes={"organizationId": "org-9"})
        assert resolve_variables("orgs/${subject.organizationId}/reports", ctx) == "orgs/org-9/reports"

    def test_unresolved_token_left_literal(self, make_context):
        ctx = make_context()
        assert resolve_variables("${subject.nonexistent}", ctx) == "${subject.nonexistent}"

    def test_lists_and_dicts_resolved_elementwise(self, make_context):
        ctx = make_context(subject_id="u1", subject_attributes={"region": "emea"})
        assert resolve_variables({"owner": "${subject.id}", "regions": ["${subject.region}", "apac"]}, ctx) == {
            "owner": "u1",
            "regions": ["emea", "apac"],
        }

    def test_context_organization_id_by_alias(self, make_context):
        ctx = make_context(organization_id="org-7")
        assert resolve_variables("${organizationId}", ctx) == "org-7"

    def test_no_context_returns_value_unchanged(self):
        assert resolve_variables("${subject.id}", None) == "${subject.id}"


class TestResolvePath:
    def test_nested_path(self):
        assert resolve_path("user.department", {"user": {"department": "sales"}}) == "sales"

    def test_missing_segment(self):
        assert resolve_path("user.team", {"user": {"department": "sales"}}) is MISSING

    def test_literal_dotted_key_wins(self):
        assert resolve_path("a.b", {"a.b": 1, "a": {"b": 2}}) == 1

    def test_none_is_not_missing(self):
        assert resolve_path("manager", {"manager": None}) is None


# ===========================================================================
# Comparison
# ===========================================================================


class TestCompareAttributeValues:
    def test_wildcard_requires_presence(self):
        assert compare_attribute_values("*", None) is True
        assert compare_attribute_values("*", MISSING) is False

    def test_list_membership(self):
        assert compare_attribute_values(["sales", "support"], "support") is True
        assert compare_attribute_values(["sales", "support"], "legal") is False

    def test_regex_string(self):
        assert compare_attribute_values("/^EU-/", "EU-west") is True
        assert compare_attribute_values("/^EU-/", "US-east") is False

    def test_regex_tests_stringified_value(self):
        assert compare_attribute_values("/^4\\d$/", 42) is True

    def test_nested_objects_compare_recursively(self):
        assert compare_attribute_values({"address": {"country": "FR"}}, {"address": {"country": "FR", "city": "Paris"}}) is True
        assert compare_attribute_values({"address": {"country": "FR"}}, {"address": {"country": "DE"}}) is False

    def test_object_against_scalar_fails(self):
        assert compare_attribute_values({"country": "FR"}, "FR") is False

    def test_strict_equality_does_not_coerce_bool(self):
        assert compare_attribute_values(True, 1) is False
        assert compare_attribute_values(1, 1) is True

    def test_missing_never_equals(self):
        assert compare_attribute_values(None, MISSING) is False


class TestOperators:
    @pytest.mark.parametrize(
        "operators,value,expected",
        [
            ({"equals": "a"}, "a", True),
            ({"in": ["a", "b"]}, "a", True),
            ({"not_in": ["a"]}, "a", False),
            ({"$nin": [1]}, 2, True),
            ({"between": [1, 10]}, 5, True),
            ({"between": [1, 10]}, 11, False),
            ({"not_between": ["09:00", "17:00"]}, "18:30", True),
            ({"contains": "x"}, ["x", "y"], True),
            ({"contains": "ale"}, "sales", True),
            ({"contains_any": ["q", "y"]}, ["x", "y"], True),
            ({"$gt": 5}, 7, True),
            ({"$gte": 5}, 5, True),
            ({"$lt": 5}, 7, False),
            ({"$lte": "2025-01-01T00:00:00+00:00"}, datetime(2024, 6, 1, tzinfo=timezone.utc), True),
            ({"$ne": "a"}, "b", True),
            ({"$exists": False}, MISSING, True),
            ({"exists": True}, MISSING, False),
            ({"starts_with": "sales"}, "sales-emea", True),
            ({"ends_with": "emea"}, "sales-emea", True),
            ({"matches": "^s.*a$"}, "sales-emea", True),
            ({"$regex": "["}, "x", False),
            ({"$gt": 5}, "7", False),
            ({"greater_than": 1, "less_than": 3}, 2, True),
            ({"greater_than": 1, "less_than": 3}, 3, False),
        ],
    )
    def test_operator_table(self, operators, value, expected):
        assert evaluate_operators(value, operators) is expected

    def test_missing_value_fails_value_operators(self):
        assert evaluate_operators(MISSING, {"$ne": "a"}) is False
        assert evaluate_operators(None, {"in": [None]}) is False

    def test_operator_operand_variables_resolved(self, matcher, make_context):
        ctx = make_context(subject_attributes={"level": 3})
        assert matcher.matches_attributes({"level": {"$gte": "${subject.level}"}}, {"level": 5}, ctx) is True
        assert matcher.matches_attributes({"level": {"$gte": "${subject.level}"}}, {"level": 2}, ctx) is False

    def test_mixed_keys_are_not_operators(self):
        assert compare_attribute_values({"in": ["a"], "region": "emea"}, {"in": "a", "region": "emea"}) is True
        assert compare_attribute_values({"in": ["a"], "region": "emea"}, {"in": "b", "region": "emea"}) is False


# ===========================================================================
# Environment predicates
# ===========================================================================


class TestMatchesIp:
    @pytest.mark.parametrize(
        "patterns,ip,expected",
        [
            (["10.0.0.0/8"], "10.200.1.1", True),
            (["10.0.0.0/8"], "100.1.1.1", False),
            (["192.168.1.*"], "192.168.1.50", True),
            (["192.168.1.*"], "192.168.2.50", False),
            (["127.0.0.1"], "127.0.0.1", True),
            (["2001:db8::/32"], "2001:db8::1", True),
            (["10.0.0.0/8"], "not-an-ip", False),
        ],
    )
    def test_patterns(self, patterns, ip, expected):
        assert matches_ip(patterns, ip) is expected


class TestMatchesTimeWindow:
    def test_inside_regular_window(self):
        assert matches_time_window(TimeWindow(start="09:00", end="17:00"), datetime(2025, 3, 4, 9, 0, tzinfo=timezone.utc)) is True

    def test_window_wrapping_midnight(self):
        window = TimeWindow(start="17:00", end="09:00")
        assert matches_time_window(window, datetime(2025, 3, 4, 18, 0, tzinfo=timezone.utc)) is True
        assert matches_time_window(window, datetime(2025, 3, 4, 3, 0, tzinfo=timezone.utc)) is True
        assert matches_time_window(window, datetime(2025, 3, 4, 12, 0, tzinfo=timezone.utc)) is False

    def test_days_of_week_sunday_is_zero(self):
        sunday = datetime(2025, 3, 2, 12, 0, tzinfo=timezone.utc)
        assert matches_time_window(TimeWindow(days_of_week=[0]), sunday) is True
        assert matches_time_window(TimeWindow(days_of_week=[1, 2, 3, 4, 5]), sunday) is False

    def test_naive_timestamp_treated_as_utc(self):
        assert matches_time_window(TimeWindow(start="11:00", end="13:00"), datetime(2025, 3, 4, 12, 0)) is True

    def test_timezone_conversion(self):
        try:
            ZoneInfo("America/New_York")
        except ZoneInfoNotFoundError:
            pytest.skip("time zone database not available")
        window = TimeWindow(start="09:00", end="17:00", timezone="America/New_York")
        assert matches_time_window(window, datetime(2025, 3, 4, 15, 0, tzinfo=timezone.utc)) is True
        assert matches_time_window(window, datetime(2025, 3, 4, 23, 0, tzinfo=timezone.utc)) is False

    def test_unknown_timezone_never_matches(self):
        assert matches_time_window(TimeWindow(start="00:00", end="23:59", timezone="Mars/Olympus_Mons"), datetime(2025, 3, 4, 12, 0, tzinfo=timezone.utc)) is False

    def test_malformed_time_never_matches(self):
        assert matches_time_window(TimeWindow(start="25:00", end="26:00"), datetime(2025, 3, 4, 12, 0, tzinfo=timezone.utc)) is False


# ===========================================================================
# Whole-policy matching
# ===========================================================================


class TestConditionMatcher:
    def test_organization_scoped_product_read(self, matcher, make_policy, make_context):
        policy = make_policy("same-org read", resource_attributes={"organizationId": "${subject.organizationId}"})
        same = make_context(subject_attributes={"organizationId": "org-456"}, resource_attributes={"organizationId": "org-456"})
        other = make_context(subject_attributes={"organizationId": "org-456"}, resource_attributes={"organizationId": "org-999"})
        assert matcher.matches(policy, same) is True
        assert matcher.matches(policy, other) is False

    def test_unresolved_variable_fails_comparison(self, matcher, make_policy, make_context):
        policy = make_policy("owner", resource_attributes={"ownerId": "${subject.nonexistent}"})
        assert matcher.matches(policy, make_context(resource_attributes={"ownerId": "user-1"})) is False

    def test_wildcard_action(self, matcher, make_policy, make_context):
        assert matcher.matches(make_policy("all", actions=["*"]), make_context(action="export")) is True

    def test_action_mismatch_explained(self, matcher, make_policy, make_context):
        matched, reason = matcher.explain(make_policy("read only"), make_context(action="delete"))
        assert matched is False
        assert "delete" in reason

    def test_subject_users_roles_groups(self, matcher, make_policy, make_context):
        policy = make_policy("grouped", roles=["manager"], users=["u1", "u2"])
        policy = policy.model_copy(update={"subjects": policy.subjects.model_copy(update={"groups": ["finance"]})})
        assert matcher.matches(policy, make_context(subject_id="u1", roles=["manager"], groups=["finance"])) is True
        assert matcher.matches(policy, make_context(subject_id="u3", roles=["manager"], groups=["finance"])) is False
        assert matcher.matches(policy, make_context(subject_id="u1", roles=["user"], groups=["finance"])) is False
        assert matcher.matches(policy, make_context(subject_id="u1", roles=["manager"], groups=["hr"])) is False

    def test_resource_ids_only_checked_when_request_names_one(self, matcher, make_policy, make_context):
        policy = make_policy("one product")
        policy = policy.model_copy(update={"resources": policy.resources.model_copy(update={"ids": ["p1"]})})
        assert matcher.matches(policy, make_context(resource_id="p1")) is True
        assert matcher.matches(policy, make_context(resource_id="p2")) is False
        assert matcher.matches(policy, make_context()) is True

    def test_ip_condition_requires_client_ip(self, matcher, make_policy, make_context):
        policy = make_policy("office", conditions=PolicyConditions(ip_addresses=["10.0.0.0/8"]))
        assert matcher.matches(policy, make_context(ip_address="10.1.2.3")) is True
        assert matcher.matches(policy, make_context()) is False

    def test_denied_ip_addresses(self, matcher, make_policy, make_context):
        policy = make_policy("not from guest wifi", conditions=PolicyConditions(denied_ip_addresses=["192.168.100.*"]))
        assert matcher.matches(policy, make_context(ip_address="192.168.100.7")) is False
        assert matcher.matches(policy, make_context(ip_address="10.0.0.1")) is True
        assert matcher.matches(policy, make_context()) is False

    def test_locations(self, matcher, make_policy, make_context):
        policy = make_policy("eu only", conditions=PolicyConditions(locations=["FR", "DE"]))
        assert matcher.matches(policy, make_context(location="FR")) is True
        assert matcher.matches(policy, make_context(location="US")) is False
        assert matcher.matches(policy, make_context()) is False

    def test_deny_ip_condition_holds_without_client_ip(self, matcher, make_policy, make_context):
        policy = make_policy("block outside office", effect="deny", conditions=PolicyConditions(ip_addresses=["203.0.113.0/24"]))
        assert matcher.matches(policy, make_context()) is True
        assert matcher.matches(policy, make_context(ip_address="203.0.113.9")) is True
        assert matcher.matches(policy, make_context(ip_address="10.0.0.1")) is False

    def test_deny_location_condition_holds_without_location(self, matcher, make_policy, make_context):
        policy = make_policy("embargoed regions", effect="deny", conditions=PolicyConditions(locations=["KP"]))
        assert matcher.matches(policy, make_context()) is True
        assert matcher.matches(policy, make_context(location="KP")) is True
        assert matcher.matches(policy, make_context(location="FR")) is False

    def test_custom_condition_hook(self, matcher, make_policy, make_context):
        matcher.register_hook("minLevel", lambda value, ctx: ctx.subject.attributes.get("level", 0) >= value)
        policy = make_policy("senior", conditions=PolicyConditions(custom_conditions={"minLevel": 3}))
        assert matcher.matches(policy, make_context(subject_attributes={"level": 4})) is True
        assert matcher.matches(policy, make_context(subject_attributes={"level": 1})) is False

    def test_failing_hook_is_non_match(self, matcher, make_policy, make_context):
        def _boom(value, ctx):
            raise RuntimeError("hook failure")

        matcher.register_hook("explode", _boom)
        policy = make_policy("hooked", conditions=PolicyConditions(custom_conditions={"explode": True}))
        assert matcher.matches(policy, make_context()) is False

    def test_custom_condition_context_path(self, matcher, make_policy, make_context):
        policy = make_policy("sales", conditions=PolicyConditions(custom_conditions={"subject.department": "sales"}))
        assert matcher.matches(policy, make_context(subject_attributes={"department": "sales"})) is True
        assert matcher.matches(policy, make_context(subject_attributes={"department": "legal"})) is False

    def test_unknown_custom_condition_fails_closed(self, matcher, make_policy, make_context):
        policy = make_policy("mystery", conditions=PolicyConditions(custom_conditions={"unknownThing": "x"}))
        assert matcher.matches(policy, make_context()) is False

    def test_explain_success(self, matcher, make_policy, make_context):
        assert matcher.explain(make_policy("ok"), make_context()) == (True, "all criteria satisfied")
