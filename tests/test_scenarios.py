from __future__ import annotations

from casesearch.events import make_event


def _publish_person_case(services, topic: str, row: dict) -> None:
    services.bus.publish(
        make_event(
            topic,
            {
                "tenant_id": row["tenant_id"],
                "association_id": row["id"],
                "person_id": row["person_id"],
                "case_id": row["case_id"],
                "label": row["label"],
            },
        )
    )


def test_new_subject_association_appears_in_flattened_subjects(services, seed):
    seed.case("tenant_a", "c1")
    seed.person("tenant_a", "p1")
    services.reindex.reindex_tenant("tenant_a", "cases", mode="sync")
    assert services.indexing.get_document("tenant_a", "cases", "c1")["subject_person_ids"] == []

    row = seed.person_case("tenant_a", "p1", "c1", "SUBJECT")
    _publish_person_case(services, "association.person-case.created", row)
    services.worker.drain()

    doc = services.indexing.get_document("tenant_a", "cases", "c1")
    assert doc["subject_person_ids"] == ["p1"]
    assert doc["associations"]["persons"][0]["is_active"] is True


def test_ended_association_keeps_history_but_leaves_active_arrays(services, seed):
    seed.case("tenant_a", "c1")
    seed.person("tenant_a", "p1")
    row = seed.person_case("tenant_a", "p1", "c1", "SUBJECT")
    services.reindex.reindex_tenant("tenant_a", "cases", mode="sync")
    assert services.indexing.get_document("tenant_a", "cases", "c1")["active_person_ids"] == ["p1"]

    services.store.associations.update(
        "person-case",
        tenant_id="tenant_a",
        association_id=row["id"],
        changes={"ended_at": "2025-02-01T00:00:00+00:00"},
    )
    _publish_person_case(services, "association.person-case.ended", row)
    services.worker.drain()

    doc = services.indexing.get_document("tenant_a", "cases", "c1")
    entry = doc["associations"]["persons"][0]
    assert entry["person_id"] == "p1"
    assert entry["is_active"] is False
    assert doc["active_person_ids"] == []
    assert doc["subject_person_ids"] == ["p1"]


def test_deleted_case_is_gone_from_the_index(services, seed):
    seed.case("tenant_a", "c1")
    seed.person("tenant_a", "p1")
    seed.person_case("tenant_a", "p1", "c1", "SUBJECT")
    services.reindex.reindex_tenant("tenant_a", "cases", mode="sync")

    services.store.cases.delete(tenant_id="tenant_a", case_id="c1")
    services.bus.publish(make_event("case.deleted", {"tenant_id": "tenant_a", "case_id": "c1"}))
    stats = services.worker.drain()

    assert stats["succeeded"] == 1
    assert services.indexing.get_document("tenant_a", "cases", "c1") is None
    assert services.patterns.find_cases_by_person("tenant_a", "p1")["total"] == 0


def test_interleaved_events_converge_on_the_latest_relational_state(services, seed):
    seed.case("tenant_a", "c1", status="OPEN")
    seed.person("tenant_a", "p1")
    seed.person("tenant_a", "p2")
    first = seed.person_case("tenant_a", "p1", "c1", "WITNESS")
    _publish_person_case(services, "association.person-case.created", first)

    seed.case("tenant_a", "c1", status="CLOSED")
    services.bus.publish(make_event("case.updated", {"tenant_id": "tenant_a", "case_id": "c1"}))
    second = seed.person_case("tenant_a", "p2", "c1", "SUBJECT")
    _publish_person_case(services, "association.person-case.created", second)
    services.store.associations.remove("person-case", tenant_id="tenant_a", association_id=first["id"])
    _publish_person_case(services, "association.person-case.ended", first)

    # jobs are processed after all writes, in whatever order the queue hands them out
    services.worker.drain()

    doc = services.indexing.get_document("tenant_a", "cases", "c1")
    assert doc["status"] == "CLOSED"
    assert doc["person_ids"] == ["p2"]
    assert doc["subject_person_ids"] == ["p2"]
    assert doc["witness_person_ids"] == []
