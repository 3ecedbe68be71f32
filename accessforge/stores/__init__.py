# -*- coding: utf-8 -*-
"""Location: ./accessforge/stores/__init__.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Reference implementations of the policy, organization, role and attribute stores.
"""

from accessforge.stores.memory import InMemoryAttributeRepository, InMemoryOrganizationHierarchy, InMemoryPolicyRepository, InMemoryRoleDirectory, policy_may_apply
from accessforge.stores.sql import SqlAttributeRepository, SqlOrganizationHierarchy, SqlPolicyRepository, SqlRoleDirectory

__all__ = [
    "policy_may_apply",
    "InMemoryPolicyRepository",
    "InMemoryOrganizationHierarchy",
    "InMemoryRoleDirectory",
    "InMemoryAttributeRepository",
    "SqlPolicyRepository",
    "SqlOrganizationHierarchy",
    "SqlRoleDirectory",
    "SqlAttributeRepository",
]
