# -*- coding: utf-8 -*-
"""Location: ./tests/conftest.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Shared fixtures: settings isolated from the environment, context and policy
factories, and an in-memory SQLite session factory.
"""

# Standard
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

# Third-Party
import pytest

# First-Party
from accessforge.config import Settings
from accessforge.db import build_engine, build_session_factory, init_db
from accessforge.models import (
    EnvironmentContext,
    EvaluationContext,
    Policy,
    PolicyConditions,
    ResourceContext,
    ResourceCriteria,
    SubjectContext,
    SubjectCriteria,
)

# Tuesday, midday UTC
DEFAULT_TIMESTAMP = datetime(2025, 3, 4, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings():
    """Settings that ignore any local .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def make_context():
    """Factory for evaluation contexts with sensible defaults."""

    def _make(
        subject_id: str = "user-1",
        roles: Iterable[str] = ("user",),
        groups: Iterable[str] = (),
        subject_attributes: Optional[Dict[str, Any]] = None,
        resource_type: str = "product",
        resource_id: Optional[str] = None,
        resource_attributes: Optional[Dict[str, Any]] = None,
        action: str = "read",
        organization_id: str = "org-1",
        timestamp: datetime = DEFAULT_TIMESTAMP,
        ip_address: Optional[str] = None,
        location: Optional[str] = None,
        environment_attributes: Optional[Dict[str, Any]] = None,
    ) -> EvaluationContext:
        return EvaluationContext(
            subject=SubjectContext(id=subject_id, roles=list(roles), groups=list(groups), attributes=subject_attributes or {}),
            resource=ResourceContext(type=resource_type, id=resource_id, attributes=resource_attributes or {}),
            action=action,
            environment=EnvironmentContext(timestamp=timestamp, ip_address=ip_address, location=location, attributes=environment_attributes or {}),
            organization_id=organization_id,
        )

    return _make


@pytest.fixture
def make_policy():
    """Factory for policies; criteria default to role ``user`` reading ``product``."""

    def _make(
        name: str,
        effect: str = "allow",
        actions: Iterable[str] = ("read",),
        roles: Iterable[str] = ("user",),
        types: Iterable[str] = ("product",),
        organization_id: str = "org-1",
        priority: int = 100,
        users: Iterable[str] = (),
        subject_attributes: Optional[Dict[str, Any]] = None,
        resource_attributes: Optional[Dict[str, Any]] = None,
        conditions: Optional[PolicyConditions] = None,
        **kwargs: Any,
    ) -> Policy:
        return Policy(
            name=name,
            effect=effect,
            actions=list(actions),
            subjects=SubjectCriteria(roles=list(roles), users=list(users), attributes=subject_attributes or {}),
            resources=ResourceCriteria(types=list(types), attributes=resource_attributes or {}),
            organization_id=organization_id,
            priority=priority,
            conditions=conditions,
            **kwargs,
        )

    return _make


@pytest.fixture
def session_factory():
    """Session factory bound to a fresh in-memory SQLite database."""
    engine = build_engine("sqlite:///:memory:")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()
