from __future__ import annotations

import pytest

from casesearch.indexing_queue import IndexingJob, IndexingQueue, InvalidIndexingJob
from casesearch.queue_backend import InMemoryQueueBackend


def _job(services, entity_id: str, operation: str, *, tenant_id: str = "tenant_a", entity_type: str = "cases"):
    return services.queue.enqueue(
        tenant_id=tenant_id,
        entity_type=entity_type,
        entity_id=entity_id,
        operation=operation,
    )


def test_create_upserts_full_document(services, seed):
    seed.case("tenant_a", "c1")
    seed.person("tenant_a", "p1")
    seed.person_case("tenant_a", "p1", "c1", "SUBJECT")

    assert services.indexing.process(_job(services, "c1", "create")) == "upserted"
    doc = services.indexing.get_document("tenant_a", "cases", "c1")
    assert doc["subject_person_ids"] == ["p1"]


def test_update_replaces_document_wholesale(services, seed):
    seed.case("tenant_a", "c1", summary="first")
    seed.person("tenant_a", "p1")
    pca = seed.person_case("tenant_a", "p1", "c1", "SUBJECT")
    services.indexing.process(_job(services, "c1", "create"))

    services.store.associations.remove("person-case", tenant_id="tenant_a", association_id=pca["id"])
    seed.case("tenant_a", "c1", summary="second")
    services.indexing.process(_job(services, "c1", "update"))

    doc = services.indexing.get_document("tenant_a", "cases", "c1")
    assert doc["summary"] == "second"
    assert doc["associations"]["persons"] == []
    assert doc["subject_person_ids"] == []


def test_update_of_vanished_aggregate_becomes_delete(services, seed):
    seed.case("tenant_a", "c1")
    services.indexing.process(_job(services, "c1", "create"))
    services.store.cases.delete(tenant_id="tenant_a", case_id="c1")

    assert services.indexing.process(_job(services, "c1", "update")) == "deleted"
    assert services.indexing.get_document("tenant_a", "cases", "c1") is None
    assert services.indexing.process(_job(services, "c1", "reindex")) == "absent"


def test_delete_of_missing_document_is_success(services):
    assert services.indexing.process(_job(services, "never_indexed", "delete")) == "absent"


def test_record_jobs_use_the_record_index(services, seed):
    seed.record("tenant_a", "r1")
    services.indexing.process(_job(services, "r1", "create", entity_type="records"))
    assert services.indexing.get_document("tenant_a", "records", "r1")["reference_number"] == "RIU-R1"
    assert services.indexing.get_document("tenant_a", "cases", "r1") is None


def test_bulk_index_upserts_and_deletes_missing(services, seed):
    seed.case("tenant_a", "c1")
    seed.case("tenant_a", "c2")
    result = services.indexing.bulk_index("tenant_a", "cases", ["c1", "c2", "c3"])
    assert result == {"upserted": 2, "deleted": 0}
    assert services.indexing.indexed_ids("tenant_a", "cases") == ["c1", "c2"]


def test_enqueue_validates_operation_and_entity_type():
    queue = IndexingQueue(InMemoryQueueBackend())
    with pytest.raises(InvalidIndexingJob, match="unsupported indexing operation"):
        queue.enqueue(tenant_id="tenant_a", entity_type="cases", entity_id="c1", operation="merge")
    with pytest.raises(InvalidIndexingJob, match="unknown entity type"):
        queue.enqueue(tenant_id="tenant_a", entity_type="persons", entity_id="p1", operation="update")
    with pytest.raises(InvalidIndexingJob, match="entity_id"):
        queue.enqueue(tenant_id="tenant_a", entity_type="cases", entity_id=" ", operation="update")


def test_job_key_carries_tenant_type_id_and_submission_time():
    queue = IndexingQueue(InMemoryQueueBackend())
    job = queue.enqueue(tenant_id="tenant_a", entity_type="cases", entity_id="c1", operation="update")
    tenant, entity_type, entity_id, submitted_ms = job.job_key.split(":")
    assert (tenant, entity_type, entity_id) == ("tenant_a", "cases", "c1")
    assert submitted_ms.isdigit()
    assert queue.pending_count(tenant_id="tenant_a") == 1

    round_tripped = IndexingJob.from_payload(job.as_payload())
    assert round_tripped == job
    with pytest.raises(InvalidIndexingJob, match="missing"):
        IndexingJob.from_payload({"tenant_id": "tenant_a"})


def test_payload_with_null_or_blank_fields_is_rejected():
    queue = IndexingQueue(InMemoryQueueBackend())
    payload = queue.enqueue(tenant_id="tenant_a", entity_type="cases", entity_id="c1", operation="update").as_payload()

    with pytest.raises(InvalidIndexingJob, match="empty entity_id"):
        IndexingJob.from_payload({**payload, "entity_id": None})
    with pytest.raises(InvalidIndexingJob, match="empty entity_id"):
        IndexingJob.from_payload({**payload, "entity_id": "  "})
    with pytest.raises(InvalidIndexingJob, match="empty job_key"):
        IndexingJob.from_payload({**payload, "job_key": None})
