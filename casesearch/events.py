from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from jsonschema import ValidationError, validate

from casesearch.labels import CASE_CASE_LABELS, PERSON_CASE_LABELS, PERSON_RECORD_LABELS, RECORD_CASE_TYPES

logger = logging.getLogger(__name__)

ASSOCIATION_FAMILIES = ("person-case", "record-case", "case-case", "person-record")
ASSOCIATION_ACTIONS = ("created", "status-changed", "ended")
AGGREGATE_ACTIONS = ("created", "updated", "deleted")

_ID = {"type": "string", "minLength": 1}
_TENANT = {"type": "string", "pattern": "^[a-z0-9][a-z0-9_-]{0,62}$"}


def _object(required: dict[str, Any], optional: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "type": "object",
        "required": sorted(required),
        "properties": {**required, **(optional or {})},
    }


_FAMILY_SCHEMAS: dict[str, dict[str, Any]] = {
    "person-case": _object(
        {"tenant_id": _TENANT, "association_id": _ID, "person_id": _ID, "case_id": _ID},
        {
            "label": {"enum": sorted(PERSON_CASE_LABELS)},
            "evidentiary_status": {"type": ["string", "null"]},
            "previous_status": {"type": ["string", "null"]},
        },
    ),
    "record-case": _object(
        {"tenant_id": _TENANT, "association_id": _ID, "record_id": _ID, "case_id": _ID},
        {"association_type": {"enum": sorted(RECORD_CASE_TYPES)}},
    ),
    "case-case": _object(
        {"tenant_id": _TENANT, "association_id": _ID, "source_case_id": _ID, "target_case_id": _ID},
        {"label": {"enum": sorted(CASE_CASE_LABELS)}},
    ),
    "person-record": _object(
        {"tenant_id": _TENANT, "association_id": _ID, "person_id": _ID, "record_id": _ID},
        {"label": {"enum": sorted(PERSON_RECORD_LABELS)}},
    ),
}

TOPIC_SCHEMAS: dict[str, dict[str, Any]] = {
    f"association.{family}.{action}": schema
    for family, schema in _FAMILY_SCHEMAS.items()
    for action in ASSOCIATION_ACTIONS
}
TOPIC_SCHEMAS.update(
    {f"case.{action}": _object({"tenant_id": _TENANT, "case_id": _ID}) for action in AGGREGATE_ACTIONS}
)
TOPIC_SCHEMAS.update(
    {f"record.{action}": _object({"tenant_id": _TENANT, "record_id": _ID}) for action in AGGREGATE_ACTIONS}
)


class InvalidEvent(ValueError):
    pass


@dataclass(frozen=True)
class DomainEvent:
    topic: str
    payload: dict[str, Any]
    event_id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:16]}")
    occurred_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def tenant_id(self) -> str:
        return str(self.payload["tenant_id"])


def validate_event(topic: str, payload: dict[str, Any]) -> None:
    schema = TOPIC_SCHEMAS.get(topic)
    if schema is None:
        raise InvalidEvent(f"unknown event topic: {topic}")
    try:
        validate(instance=payload, schema=schema)
    except ValidationError as exc:
        raise InvalidEvent(f"invalid payload for {topic}: {exc.message}") from exc


def make_event(topic: str, payload: dict[str, Any]) -> DomainEvent:
    validate_event(topic, payload)
    return DomainEvent(topic=topic, payload=dict(payload))


Handler = Callable[[DomainEvent], Any]


class EventBus:
    """In-process publish/subscribe; ``*`` subscribes to every topic.

    Handler failures are logged and never reach the publisher, so a failed
    index update cannot break the relational write that emitted the event.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[str, list[Handler]] = {}

    def subscribe(self, topic: str, handler: Handler) -> None:
        if topic != "*" and topic not in TOPIC_SCHEMAS:
            raise InvalidEvent(f"unknown event topic: {topic}")
        with self._lock:
            self._handlers.setdefault(topic, []).append(handler)

    def publish(self, event: DomainEvent) -> int:
        validate_event(event.topic, event.payload)
        with self._lock:
            handlers = [*self._handlers.get(event.topic, []), *self._handlers.get("*", [])]
        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception("event_handler_failed topic=%s event_id=%s", event.topic, event.event_id)
        return delivered
