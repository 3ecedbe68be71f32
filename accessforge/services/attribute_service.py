# -*- coding: utf-8 -*-
"""Location: ./accessforge/services/attribute_service.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Attribute Catalog Service.
This module manages attribute definitions (the vocabulary policies are
written in) and validates attribute values on the write path.  It is not
consulted during policy evaluation.

Examples:
    >>> from unittest.mock import Mock
    >>> service = AttributeService(Mock())
    >>> service.__class__.__name__
    'AttributeService'
"""

# Standard
from datetime import date, datetime
import logging
import re
from typing import Any, Dict, List, Mapping, Optional

# Third-Party
from pydantic import ValidationError

# First-Party
from accessforge.models import AttributeCategory, AttributeDefinition, AttributeType, AttributeValidation, AuditInfo, utc_now
from accessforge.ports import AttributeRepository

logger = logging.getLogger(__name__)


class AttributeDefinitionError(Exception):
    """Base class for attribute catalog errors."""


class AttributeNotFoundError(AttributeDefinitionError):
    """Raised when an attribute definition is not found."""


class AttributeConflictError(AttributeDefinitionError):
    """Raised when an attribute key already exists in the same scope."""


class AttributeValidationError(AttributeDefinitionError):
    """Raised when a definition change or an attribute value is rejected."""


def _system(key: str, category: AttributeCategory, value_type: AttributeType, description: str, required: bool = False, **rules: Any) -> AttributeDefinition:
    return AttributeDefinition(
        key=key,
        name=key,
        category=category,
        value_type=value_type,
        description=description,
        validation=AttributeValidation(required=required, **rules),
        is_system=True,
    )


def system_attributes() -> List[AttributeDefinition]:
    """Built-in attribute definitions installed by ``seed_system_attributes``."""
    subject, resource, environment = AttributeCategory.SUBJECT, AttributeCategory.RESOURCE, AttributeCategory.ENVIRONMENT
    return [
        _system("subject.id", subject, AttributeType.STRING, "User ID", required=True),
        _system("subject.email", subject, AttributeType.STRING, "User email address", required=True),
        _system("subject.role", subject, AttributeType.STRING, "User role in organization", required=True),
        _system("subject.organizationId", subject, AttributeType.STRING, "User organization ID", required=True),
        _system("subject.department", subject, AttributeType.STRING, "User department"),
        _system("resource.type", resource, AttributeType.STRING, "Resource type", required=True),
        _system("resource.id", resource, AttributeType.STRING, "Resource ID"),
        _system("resource.organizationId", resource, AttributeType.STRING, "Resource organization ID", required=True),
        _system("resource.ownerId", resource, AttributeType.STRING, "Resource owner ID"),
        _system("environment.time", environment, AttributeType.STRING, "Current time (HH:MM)", pattern=r"^\d{2}:\d{2}$"),
        _system("environment.date", environment, AttributeType.DATE, "Current date"),
        _system("environment.dayOfWeek", environment, AttributeType.NUMBER, "Day of week (0-6, Sunday=0)", min=0, max=6),
        _system("environment.ipAddress", environment, AttributeType.STRING, "Client IP address"),
        _system("environment.location", environment, AttributeType.STRING, "Client location"),
    ]


def _matches_type(value: Any, value_type: AttributeType) -> bool:
    if value_type == AttributeType.STRING:
        return isinstance(value, str)
    if value_type == AttributeType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if value_type == AttributeType.BOOLEAN:
        return isinstance(value, bool)
    if value_type == AttributeType.DATE:
        if isinstance(value, (date, datetime)):
            return True
        if isinstance(value, str):
            try:
                datetime.fromisoformat(value)
            except ValueError:
                return False
            return True
        return False
    if value_type == AttributeType.ARRAY:
        return isinstance(value, list)
    return isinstance(value, dict)


class AttributeService:
    """Service for attribute definitions and attribute value validation.

    Attributes:
        repository: Attribute definition persistence
    """

    def __init__(self, repository: AttributeRepository):
        self.repository = repository

    async def create(
        self,
        key: str,
        category: AttributeCategory,
        value_type: AttributeType = AttributeType.STRING,
        description: Optional[str] = None,
        organization_id: Optional[str] = None,
        validation: Optional[AttributeValidation] = None,
        name: Optional[str] = None,
        default_value: Any = None,
        created_by: Optional[str] = None,
    ) -> AttributeDefinition:
        """Create an attribute definition.

        Args:
            key: Attribute key, e.g. ``subject.department``
            category: Attribute domain
            value_type: Declared value type
            description: Human description
            organization_id: Owning organization; ``None`` for system-wide
            validation: Value validation rules
            name: Display name (defaults to the key)
            default_value: Default value
            created_by: Creator

        Returns:
            AttributeDefinition: The stored definition

        Raises:
            AttributeConflictError: If the key already exists in this scope
            AttributeValidationError: If the default value violates the rules
        """
        existing = await self.repository.resolve_definition(key, organization_id)
        if existing is not None and existing.organization_id == organization_id:
            raise AttributeConflictError(f"Attribute with this key already exists: {key}")

        definition = AttributeDefinition(
            key=key,
            name=name or key,
            category=category,
            value_type=value_type,
            description=description,
            validation=validation or AttributeValidation(),
            default_value=default_value,
            organization_id=organization_id,
            is_system=False,
            audit=AuditInfo(created_by=created_by, updated_by=created_by),
        )
        if default_value is not None:
            self.check_value(definition, default_value)

        saved = await self.repository.save(definition)
        logger.info(f"Created attribute '{key}' ({saved.id}) scope={organization_id or 'system'}")
        return saved

    async def get(self, attribute_id: str) -> AttributeDefinition:
        """Get a definition by id.

        Raises:
            AttributeNotFoundError: If no definition has this id
        """
        definition = await self.repository.get(attribute_id)
        if definition is None:
            raise AttributeNotFoundError(f"Attribute not found: {attribute_id}")
        return definition

    async def list(self, category: Optional[AttributeCategory] = None, organization_id: Optional[str] = None) -> List[AttributeDefinition]:
        """List system-wide definitions plus those of an organization, sorted by key."""
        definitions = await self.repository.list_definitions(category=category, organization_id=organization_id)
        return sorted(definitions, key=lambda d: (d.key, d.organization_id or ""))

    async def get_attributes_by_context(self, organization_id: Optional[str] = None) -> Dict[str, List[AttributeDefinition]]:
        """Group visible definitions by category (subject, resource, environment, action)."""
        grouped: Dict[str, List[AttributeDefinition]] = {category.value: [] for category in AttributeCategory}
        for definition in await self.list(organization_id=organization_id):
            grouped[definition.category.value].append(definition)
        return grouped

    async def update(self, attribute_id: str, updates: Mapping[str, Any], updated_by: Optional[str] = None) -> AttributeDefinition:
        """Update a non-system definition.

        Raises:
            AttributeNotFoundError: If no definition has this id
            AttributeValidationError: If the definition is a system one or the update is invalid
        """
        definition = await self.get(attribute_id)
        if definition.is_system:
            raise AttributeValidationError("Cannot modify system attributes")

        forbidden = {"id", "is_system", "isSystem", "audit"} & set(updates)
        if forbidden:
            raise AttributeValidationError(f"Cannot update fields: {', '.join(sorted(forbidden))}")

        data = definition.model_dump()
        data.update(updates)
        data["audit"] = definition.audit.model_copy(update={"updated_at": utc_now(), "updated_by": updated_by})
        try:
            updated = AttributeDefinition.model_validate(data)
        except ValidationError as e:
            raise AttributeValidationError(str(e)) from e

        saved = await self.repository.save(updated)
        logger.info(f"Updated attribute {attribute_id} by {updated_by}")
        return saved

    async def remove(self, attribute_id: str) -> None:
        """Delete a non-system definition.

        Raises:
            AttributeNotFoundError: If no definition has this id
            AttributeValidationError: If the definition is a system one
        """
        definition = await self.get(attribute_id)
        if definition.is_system:
            raise AttributeValidationError("Cannot delete system attributes")
        await self.repository.delete(attribute_id)
        logger.info(f"Deleted attribute {attribute_id} ('{definition.key}')")

    async def seed_system_attributes(self) -> int:
        """Install missing built-in definitions.

        Returns:
            int: Number of definitions created
        """
        created = 0
        for definition in system_attributes():
            existing = await self.repository.resolve_definition(definition.key)
            if existing is None:
                await self.repository.save(definition)
                created += 1
        if created:
            logger.info(f"Seeded {created} system attributes")
        return created

    # ------------------------------------------------------------------
    # Value validation
    # ------------------------------------------------------------------

    @staticmethod
    def check_value(definition: AttributeDefinition, value: Any) -> None:
        """Validate a value against one definition.

        Raises:
            AttributeValidationError: On the first violated rule

        Examples:
            >>> d = AttributeDefinition(key="level", category="subject", value_type="number",
            ...                         validation=AttributeValidation(min=1, max=5))
            >>> AttributeService.check_value(d, 3)
            >>> AttributeService.check_value(d, 9)
            Traceback (most recent call last):
                ...
            accessforge.services.attribute_service.AttributeValidationError: level must be <= 5
        """
        rules = definition.validation
        key = definition.key
        if value is None:
            if rules.required:
                raise AttributeValidationError(f"{key} is required")
            return
        if not _matches_type(value, definition.value_type):
            raise AttributeValidationError(f"{key} must be of type {definition.value_type.value}")
        if rules.enum is not None and value not in rules.enum:
            raise AttributeValidationError(f"{key} must be one of: {', '.join(map(str, rules.enum))}")
        if definition.value_type == AttributeType.NUMBER:
            if rules.min is not None and value < rules.min:
                raise AttributeValidationError(f"{key} must be >= {rules.min:g}")
            if rules.max is not None and value > rules.max:
                raise AttributeValidationError(f"{key} must be <= {rules.max:g}")
        if rules.pattern is not None and isinstance(value, str):
            try:
                matched = re.search(rules.pattern, value) is not None
            except re.error as e:
                raise AttributeValidationError(f"{key} has an invalid pattern: {e}") from e
            if not matched:
                raise AttributeValidationError(f"{key} does not match pattern {rules.pattern}")

    async def validate_value(self, key: str, value: Any, organization_id: Optional[str] = None) -> None:
        """Validate a value for an attribute key; unknown keys are accepted.

        Args:
            key: Attribute key
            value: Candidate value
            organization_id: Organization whose definitions shadow system ones

        Raises:
            AttributeValidationError: If the value violates the definition
        """
        definition = await self.repository.resolve_definition(key, organization_id)
        if definition is not None:
            self.check_value(definition, value)

    async def validate_attributes(self, category: AttributeCategory, attributes: Mapping[str, Any], organization_id: Optional[str] = None) -> None:
        """Validate an attribute map for one category, including required keys.

        Keys are matched both as given and with the ``{category}.`` prefix, and
        organization definitions shadow system ones with the same key.
        Required system definitions describe context fields outside the
        attribute map and are not enforced here.

        Raises:
            AttributeValidationError: On the first violation
        """
        prefix = f"{category.value}."
        visible: Dict[str, AttributeDefinition] = {}
        for definition in await self.repository.list_definitions(category=category, organization_id=organization_id):
            if definition.key not in visible or definition.organization_id is not None:
                visible[definition.key] = definition
        for definition in visible.values():
            short_key = definition.key[len(prefix) :] if definition.key.startswith(prefix) else definition.key
            if definition.key in attributes:
                self.check_value(definition, attributes[definition.key])
            elif short_key in attributes:
                self.check_value(definition, attributes[short_key])
            elif definition.validation.required and not definition.is_system and definition.default_value is None:
                raise AttributeValidationError(f"{definition.key} is required")
