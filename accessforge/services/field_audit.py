# -*- coding: utf-8 -*-
"""Location: ./accessforge/services/field_audit.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Field audit: sensitive-field access and field-denial events.

Events are handed to an injected ``AuditSink`` without waiting for them to
be processed.  Event names:

* ``field.access``           : every audited access.
* ``field.access.sensitive`` : the access returned at least one sensitive field.
* ``field.access.denied``    : at least one field was removed by a denial.

A field is sensitive when its name contains (case-insensitively) one of the
configured names for its resource type or one of the global names.
"""

# Standard
import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

# First-Party
from accessforge.config import get_settings, Settings
from accessforge.models import FieldAccessEvent
from accessforge.ports import AuditSink

logger = logging.getLogger(__name__)

FIELD_ACCESS_EVENT = "field.access"
SENSITIVE_ACCESS_EVENT = "field.access.sensitive"
ACCESS_DENIED_EVENT = "field.access.denied"


class LoggingAuditSink(AuditSink):
    """Writes audit events to a logger."""

    def __init__(self, audit_logger: Optional[logging.Logger] = None):
        self._logger = audit_logger or logging.getLogger("accessforge.audit")

    def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        self._logger.info("%s %s", event_name, payload)


class QueueAuditSink(AuditSink):
    """Puts ``(event_name, payload)`` tuples on an ``asyncio.Queue`` for a consumer task.

    Events are dropped (with a warning) when the queue is full.
    """

    def __init__(self, queue: Optional["asyncio.Queue[Tuple[str, Dict[str, Any]]]"] = None, maxsize: int = 10_000):
        self.queue: "asyncio.Queue[Tuple[str, Dict[str, Any]]]" = queue if queue is not None else asyncio.Queue(maxsize=maxsize)

    def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        try:
            self.queue.put_nowait((event_name, payload))
        except asyncio.QueueFull:
            logger.warning("Audit queue full, dropping %s event", event_name)


class MemoryAuditSink(AuditSink):
    """Keeps events in a list.

    Examples:
        >>> sink = MemoryAuditSink()
        >>> sink.publish("field.access.denied", {"deniedFields": ["ssn"]})
        >>> sink.names()
        ['field.access.denied']
    """

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        self.events.append((event_name, payload))

    def names(self) -> List[str]:
        """Event names in publication order."""
        return [name for name, _ in self.events]


class FieldAuditService:
    """Detects sensitive field access and reports field denials.

    Args:
        sink: Destination for audit events
        settings: Engine settings (sensitive-field lists, enable flag)
    """

    def __init__(self, sink: AuditSink, settings: Optional[Settings] = None):
        self._sink = sink
        self._settings = settings or get_settings()

    @property
    def enabled(self) -> bool:
        """Whether field auditing is switched on."""
        return self._settings.field_audit_enabled

    def identify_sensitive_fields(self, resource_type: str, fields: Sequence[str]) -> List[str]:
        """Return the fields that match a sensitive name for the type or globally.

        Args:
            resource_type: Resource type (case-insensitive)
            fields: Field names to check

        Returns:
            List[str]: Sensitive fields, in input order

        Examples:
            >>> from accessforge.config import Settings
            >>> svc = FieldAuditService(MemoryAuditSink(), Settings())
            >>> svc.identify_sensitive_fields("Customer", ["name", "creditScore", "customerSsn"])
            ['creditScore', 'customerSsn']
        """
        names = [name.lower() for name in (*self._settings.sensitive_fields_for(resource_type), *self._settings.global_sensitive_fields)]
        return [field for field in fields if any(name in field.lower() for name in names)]

    def log_field_access(self, event: FieldAccessEvent) -> FieldAccessEvent:
        """Audit an access; flags and publishes sensitive fields when present.

        Args:
            event: Access event; ``sensitive_fields`` is filled in

        Returns:
            FieldAccessEvent: The event as published
        """
        if not self.enabled:
            return event
        sensitive = self.identify_sensitive_fields(event.resource_type, event.fields)
        event = event.model_copy(update={"sensitive_fields": sensitive})
        if sensitive:
            logger.warning(
                "Sensitive field access: user %s accessed %s on %s",
                event.user_id,
                ", ".join(sensitive),
                event.resource_type,
            )
            self._publish(SENSITIVE_ACCESS_EVENT, event)
        self._publish(FIELD_ACCESS_EVENT, event)
        logger.debug(
            "Field access: %s on %s by user %s (fields=%d denied=%d sensitive=%d)",
            event.action,
            event.resource_type,
            event.user_id,
            len(event.fields),
            len(event.denied_fields),
            len(sensitive),
        )
        return event

    def log_field_denial(self, event: FieldAccessEvent) -> None:
        """Publish a denial event when the access had any fields removed."""
        if not self.enabled or not event.denied_fields:
            return
        logger.warning(
            "Field access denied: user %s attempted to %s %s on %s",
            event.user_id,
            event.action,
            ", ".join(event.denied_fields),
            event.resource_type,
        )
        self._publish(ACCESS_DENIED_EVENT, event)

    def _publish(self, event_name: str, event: FieldAccessEvent) -> None:
        try:
            self._sink.publish(event_name, event.model_dump(mode="json", by_alias=True))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Audit sink failed to accept %s event: %s", event_name, exc)
