from __future__ import annotations

import pytest

from casesearch.events import TOPIC_SCHEMAS, DomainEvent, EventBus, InvalidEvent, make_event, validate_event
from casesearch.triggers import affected_entities


def _pending(services, tenant_id: str = "tenant_a") -> list[tuple[str, str, str]]:
    out = []
    while True:
        msg = services.queue.backend.dequeue(tenant_id=tenant_id, queue_name=services.queue.queue_name)
        if msg is None:
            return out
        services.queue.backend.ack(tenant_id=tenant_id, message_id=msg.message_id)
        out.append((msg.payload["entity_type"], msg.payload["entity_id"], msg.payload["operation"]))


def test_every_association_family_has_lifecycle_topics():
    for family in ["person-case", "record-case", "case-case", "person-record"]:
        for action in ["created", "status-changed", "ended"]:
            assert f"association.{family}.{action}" in TOPIC_SCHEMAS
    assert "case.deleted" in TOPIC_SCHEMAS
    assert "record.updated" in TOPIC_SCHEMAS


def test_event_payload_is_schema_checked():
    with pytest.raises(InvalidEvent, match="unknown event topic"):
        validate_event("case.archived", {"tenant_id": "tenant_a", "case_id": "c1"})
    with pytest.raises(InvalidEvent, match="case_id"):
        make_event("association.person-case.created", {"tenant_id": "tenant_a", "association_id": "a1", "person_id": "p1"})
    with pytest.raises(InvalidEvent):
        make_event(
            "association.person-case.created",
            {"tenant_id": "tenant_a", "association_id": "a1", "person_id": "p1", "case_id": "c1", "label": "HERO"},
        )
    with pytest.raises(InvalidEvent):
        make_event("case.updated", {"tenant_id": "Tenant A", "case_id": "c1"})


def test_case_case_event_touches_both_cases():
    event = make_event(
        "association.case-case.created",
        {"tenant_id": "tenant_a", "association_id": "cca_1", "source_case_id": "c1", "target_case_id": "c2"},
    )
    assert affected_entities(event) == [("cases", "c1", "update"), ("cases", "c2", "update")]


def test_record_case_event_touches_case_and_record(services):
    event = make_event(
        "association.record-case.ended",
        {"tenant_id": "tenant_a", "association_id": "rca_1", "record_id": "r1", "case_id": "c1"},
    )
    services.bus.publish(event)
    assert _pending(services) == [("cases", "c1", "update"), ("records", "r1", "update")]


def test_person_record_event_touches_only_the_record():
    event = make_event(
        "association.person-record.created",
        {"tenant_id": "tenant_a", "association_id": "pra_1", "person_id": "p1", "record_id": "r1"},
    )
    assert affected_entities(event) == [("records", "r1", "update")]


def test_aggregate_delete_events_enqueue_delete_jobs(services):
    services.bus.publish(make_event("case.deleted", {"tenant_id": "tenant_a", "case_id": "c1"}))
    services.bus.publish(make_event("record.created", {"tenant_id": "tenant_a", "record_id": "r1"}))
    assert _pending(services) == [("cases", "c1", "delete"), ("records", "r1", "update")]


def test_bus_isolates_failing_handlers(caplog):
    bus = EventBus()
    seen: list[str] = []

    def broken(event: DomainEvent) -> None:
        raise RuntimeError("handler down")

    bus.subscribe("case.updated", broken)
    bus.subscribe("*", lambda event: seen.append(event.topic))

    delivered = bus.publish(make_event("case.updated", {"tenant_id": "tenant_a", "case_id": "c1"}))
    assert delivered == 1
    assert seen == ["case.updated"]
    assert "event_handler_failed" in caplog.text

    with pytest.raises(InvalidEvent):
        bus.subscribe("case.archived", broken)


def test_events_drive_the_index_end_to_end(services, seed):
    seed.case("tenant_a", "c1")
    seed.person("tenant_a", "p1")
    pca = seed.person_case("tenant_a", "p1", "c1", "SUBJECT")
    services.bus.publish(
        make_event(
            "association.person-case.created",
            {
                "tenant_id": "tenant_a",
                "association_id": pca["id"],
                "person_id": "p1",
                "case_id": "c1",
                "label": "SUBJECT",
            },
        )
    )
    services.worker.drain()
    assert services.indexing.get_document("tenant_a", "cases", "c1")["subject_person_ids"] == ["p1"]
