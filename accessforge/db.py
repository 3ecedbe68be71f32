# -*- coding: utf-8 -*-
"""Location: ./accessforge/db.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

AccessForge Database Models.
This module defines the SQLAlchemy schema used by the SQL reference stores:
- Organizations with their parent link
- Policy sets and policies (criteria and conditions stored as JSON)
- Role assignments with validity windows
- Attribute definitions with validation rules

Examples:
    >>> engine = build_engine("sqlite:///:memory:")
    >>> init_db(engine)
    >>> sorted(Base.metadata.tables)
    ['attribute_definitions', 'organizations', 'policies', 'policy_sets', 'role_assignments']
"""

# Standard
from contextlib import contextmanager
from datetime import datetime
import logging
from typing import Any, Dict, Generator, List, Optional

# Third-Party
from sqlalchemy import Boolean, create_engine, DateTime, ForeignKey, Integer, JSON, make_url, MetaData, String, Text, UniqueConstraint
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, Session, sessionmaker
from sqlalchemy.pool import StaticPool

# First-Party
from accessforge.config import settings
from accessforge.models import new_id, utc_now

logger = logging.getLogger(__name__)


def build_engine(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """Create an engine for the configured database.

    SQLite connections may be shared across threads; an in-memory SQLite
    database uses a single static connection so every session sees the same
    data.

    Args:
        database_url: Database URL (defaults to ``settings.database_url``)
        echo: Log all SQL statements

    Returns:
        Engine: SQLAlchemy engine
    """
    url = database_url or settings.database_url
    backend = make_url(url).get_backend_name()
    if backend == "sqlite":
        database = make_url(url).database
        if not database or database == ":memory:":
            logger.debug("Configuring in-memory SQLite with StaticPool")
            return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool, echo=echo)
        return create_engine(url, connect_args={"check_same_thread": False}, echo=echo)
    return create_engine(url, pool_pre_ping=True, echo=echo)


def build_session_factory(engine: Engine) -> sessionmaker:
    """Create the session factory used by the SQL stores."""
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create every table that does not exist yet."""
    Base.metadata.create_all(engine)


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, Any, None]:
    """Open a session that commits on success and rolls back on error.

    Args:
        factory: Session factory

    Yields:
        Session: An open session

    Raises:
        Exception: Re-raises any exception after rolling back the transaction.
    """
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


class Base(DeclarativeBase):
    """Base class for all models."""

    metadata = MetaData(
        naming_convention={
            "fk": "fk_%(table_name)s_%(column_0_name)s",
            "pk": "pk_%(table_name)s",
            "ix": "ix_%(table_name)s_%(column_0_name)s",
            "uq": "uq_%(table_name)s_%(column_0_name)s",
            "ck": "ck_%(table_name)s_%(constraint_name)s",
        }
    )


class OrganizationRecord(Base):
    """Organization tree node.

    Examples:
        >>> OrganizationRecord(id="org-1", name="Acme").parent_id is None
        True
    """

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    parent_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("organizations.id"), nullable=True, index=True)


class PolicySetRecord(Base):
    """Policy set grouping."""

    __tablename__ = "policy_sets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=100)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    set_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    updated_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class PolicyRecord(Base):
    """ABAC policy.

    ``subjects``, ``resources``, ``conditions`` and ``field_permissions`` hold
    the camelCase JSON form of the corresponding pydantic models.
    """

    __tablename__ = "policies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    effect: Mapped[str] = mapped_column(String(10), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=100, index=True)
    subjects: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    resources: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    actions: Mapped[List[str]] = mapped_column(JSON, default=list)
    conditions: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    policy_set_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("policy_sets.id"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    field_permissions: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    policy_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    updated_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class RoleAssignmentRecord(Base):
    """A role held by a user in an organization."""

    __tablename__ = "role_assignments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    role_name: Mapped[str] = mapped_column(String(100), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    valid_from: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_to: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class AttributeDefinitionRecord(Base):
    """Attribute catalog entry; ``organization_id`` is NULL for system-wide keys."""

    __tablename__ = "attribute_definitions"
    __table_args__ = (UniqueConstraint("key", "organization_id", name="uq_attribute_definitions_key_org"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    value_type: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    validation: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    default_value: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    organization_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    updated_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
