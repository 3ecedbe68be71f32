# -*- coding: utf-8 -*-
"""Location: ./accessforge/__init__.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

AccessForge: attribute-based access control decision engine.

Typical usage::

    from accessforge import AccessControlEngine, EvaluationContext, SubjectContext, ResourceContext
    from accessforge.stores import InMemoryPolicyRepository

    engine = AccessControlEngine.from_settings(InMemoryPolicyRepository(policies))
    result = await engine.evaluate(
        EvaluationContext(
            subject=SubjectContext(id="user-1", roles=["manager"]),
            resource=ResourceContext(type="order", id="o-42", attributes={"organizationId": "org-1"}),
            action="approve",
            organization_id="org-1",
        )
    )
"""

__version__ = "0.1.0"

from accessforge.config import configure_logging, get_settings, Settings
from accessforge.engine import AccessControlEngine
from accessforge.models import (
    AbilityRule,
    AttributeCategory,
    AttributeDefinition,
    AttributeType,
    AttributeValidation,
    CanWithFieldsResult,
    CompileOptions,
    EnvironmentContext,
    EvaluationContext,
    EvaluationResult,
    FieldPermissionSet,
    Operation,
    Organization,
    Policy,
    PolicyConditions,
    PolicyCreate,
    PolicyEffect,
    PolicySet,
    PolicyUpdate,
    ResourceContext,
    ResourceCriteria,
    RoleAssignment,
    SubjectContext,
    SubjectCriteria,
    TimeWindow,
    User,
)
from accessforge.ports import CacheError, StoreError
from accessforge.services.ability_compiler import Ability

__all__ = [
    # Engine
    "AccessControlEngine",
    "Ability",
    # Config
    "Settings",
    "get_settings",
    "configure_logging",
    # Policies
    "Policy",
    "PolicyCreate",
    "PolicyUpdate",
    "PolicySet",
    "PolicyEffect",
    "PolicyConditions",
    "SubjectCriteria",
    "ResourceCriteria",
    "TimeWindow",
    "FieldPermissionSet",
    # Attributes
    "AttributeCategory",
    "AttributeDefinition",
    "AttributeType",
    "AttributeValidation",
    # Request
    "EvaluationContext",
    "SubjectContext",
    "ResourceContext",
    "EnvironmentContext",
    "Operation",
    "User",
    "Organization",
    "RoleAssignment",
    "CompileOptions",
    # Response
    "EvaluationResult",
    "CanWithFieldsResult",
    "AbilityRule",
    # Errors
    "StoreError",
    "CacheError",
]
