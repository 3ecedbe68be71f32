# -*- coding: utf-8 -*-
"""Location: ./accessforge/services/field_filter.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Field filter: applies compiled field permissions to payloads.

Read filtering keeps, when ``readable`` is non-empty, only the fields listed
there (in that order) that the object has and that are not denied;
otherwise it drops the denied fields.  Write filtering is the same with
``writable``.  Lists are filtered element by element, nested objects and
scalars pass through, and a missing permission set passes data through
unchanged.

Examples:
    >>> from accessforge.models import FieldPermissionSet
    >>> perms = FieldPermissionSet(readable=["id", "name", "price"], denied=["costPrice"])
    >>> filter_for_read({"id": 1, "name": "Pen", "price": 2, "costPrice": 1, "description": "Blue"}, perms)
    {'id': 1, 'name': 'Pen', 'price': 2}
    >>> filter_for_read([{"id": 1, "costPrice": 1}], FieldPermissionSet(denied=["costPrice"]))
    [{'id': 1}]
    >>> filter_for_read({"a": 1}, None)
    {'a': 1}
"""

# Standard
import logging
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Set

# Third-Party
from pydantic import BaseModel

# First-Party
from accessforge.models import FieldAccessCheck, FieldAccessEvent, FieldPermissionSet
from accessforge.services.field_audit import FieldAuditService

logger = logging.getLogger(__name__)


def _filter_object(data: Mapping[str, Any], allowed: Sequence[str], denied: Set[str]) -> dict:
    if allowed:
        return {field: data[field] for field in allowed if field not in denied and field in data}
    return {key: value for key, value in data.items() if key not in denied}


def _apply(data: Any, allowed: Sequence[str], denied: Set[str]) -> Any:
    if isinstance(data, list):
        return [_apply(item, allowed, denied) for item in data]
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True)
    if isinstance(data, Mapping):
        return _filter_object(data, allowed, denied)
    return data


def filter_for_read(data: Any, permissions: Optional[FieldPermissionSet]) -> Any:
    """Filter an object (or list of objects) down to its readable fields.

    Args:
        data: Mapping, pydantic model, list of those, or a scalar
        permissions: Field permissions for the data's resource type

    Returns:
        Any: Filtered copy of ``data``
    """
    if permissions is None:
        return data
    return _apply(data, permissions.readable, set(permissions.denied))


def filter_for_write(data: Any, permissions: Optional[FieldPermissionSet]) -> Any:
    """Filter an inbound payload down to its writable fields.

    Examples:
        >>> from accessforge.models import FieldPermissionSet
        >>> filter_for_write({"name": "x", "price": 3, "id": 9}, FieldPermissionSet(writable=["name", "price"], denied=["price"]))
        {'name': 'x'}
    """
    if permissions is None:
        return data
    return _apply(data, permissions.writable, set(permissions.denied))


def can_read_fields(permissions: Optional[FieldPermissionSet], fields: Iterable[str]) -> List[FieldAccessCheck]:
    """Report, per field, whether it may be read.

    Examples:
        >>> from accessforge.models import FieldPermissionSet
        >>> checks = can_read_fields(FieldPermissionSet(readable=["id"], denied=["ssn"]), ["id", "ssn", "name"])
        >>> [(c.field, c.allowed) for c in checks]
        [('id', True), ('ssn', False), ('name', False)]
    """
    if permissions is None:
        return [FieldAccessCheck(field=field, allowed=True) for field in fields]
    checks = []
    for field in fields:
        if permissions.is_denied(field):
            allowed = False
        elif permissions.readable:
            allowed = field in permissions.readable
        else:
            allowed = True
        checks.append(FieldAccessCheck(field=field, allowed=allowed))
    return checks


def _keys(data: Any) -> List[str]:
    """Union of top-level keys across an object or list of objects, first-seen order."""
    items = data if isinstance(data, list) else [data]
    seen: dict = {}
    for item in items:
        if isinstance(item, BaseModel):
            item = item.model_dump(by_alias=True)
        if isinstance(item, Mapping):
            seen.update(dict.fromkeys(item))
    return list(seen)


class FieldFilterService:
    """Field filtering with optional audit of sensitive and denied fields.

    Args:
        audit: Field audit service; auditing is skipped when ``None``
    """

    def __init__(self, audit: Optional[FieldAuditService] = None):
        self._audit = audit

    def filter_for_read(
        self,
        data: Any,
        permissions: Optional[FieldPermissionSet],
        resource_type: Optional[str] = None,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Any:
        """Filter outbound data and audit what was returned and removed."""
        filtered = filter_for_read(data, permissions)
        if resource_type is not None:
            self._audit_access("read", data, filtered, resource_type, user_id, organization_id, resource_id, ip_address, request_id)
        return filtered

    def filter_for_write(
        self,
        data: Any,
        permissions: Optional[FieldPermissionSet],
        resource_type: Optional[str] = None,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Any:
        """Filter an inbound payload and audit what was accepted and removed."""
        filtered = filter_for_write(data, permissions)
        if resource_type is not None:
            self._audit_access("write", data, filtered, resource_type, user_id, organization_id, resource_id, ip_address, request_id)
        return filtered

    @staticmethod
    def can_read_fields(permissions: Optional[FieldPermissionSet], fields: Iterable[str]) -> List[FieldAccessCheck]:
        """Per-field read checks."""
        return can_read_fields(permissions, fields)

    def _audit_access(
        self,
        action: str,
        original: Any,
        filtered: Any,
        resource_type: str,
        user_id: Optional[str],
        organization_id: Optional[str],
        resource_id: Optional[str],
        ip_address: Optional[str],
        request_id: Optional[str],
    ) -> None:
        if self._audit is None:
            return
        returned = _keys(filtered)
        removed = [key for key in _keys(original) if key not in returned]
        event = FieldAccessEvent(
            user_id=user_id,
            organization_id=organization_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            fields=returned,
            denied_fields=removed,
            ip_address=ip_address,
            request_id=request_id,
        )
        self._audit.log_field_access(event)
        if removed:
            self._audit.log_field_denial(event)
