from __future__ import annotations

import threading

import pytest

from casesearch.errors import SchemaVersionMismatch
from casesearch.index_schema import (
    CASE_SCHEMA,
    alias_name,
    create_index_body,
    index_name,
    mapping_for,
    owns_index,
)
from casesearch.indexing_service import IndexingService
from casesearch.search_engine import InMemorySearchEngine


def test_index_name_embeds_tenant_entity_and_version():
    assert index_name("tenant_a", "cases") == f"org_tenant_a_cases_v{CASE_SCHEMA.version}"
    assert alias_name("tenant_a", "records", prefix="cs") == "cs_tenant_a_records"
    assert index_name("tenant_a", "cases", version=3) == "org_tenant_a_cases_v3"


def test_index_name_rejects_tenant_ids_instead_of_normalising():
    for bad in ["Tenant_A", "tenant a", "", "tenant/../b", "_tenant"]:
        with pytest.raises(ValueError, match="invalid tenant id"):
            index_name(bad, "cases")


def test_index_names_never_collide_across_tenants():
    names = {index_name(t, e) for t in ["a", "a_b", "a-b", "ab"] for e in ["cases", "records"]}
    assert len(names) == 8


def test_unknown_entity_type_has_no_fallback_mapping():
    with pytest.raises(ValueError, match="unknown entity type"):
        mapping_for("persons")


def test_mapping_is_strict_and_carries_schema_version():
    body = create_index_body("tenant_a", "cases")
    assert body["mappings"]["dynamic"] == "strict"
    assert body["mappings"]["_meta"] == {"entity_type": "cases", "schema_version": CASE_SCHEMA.version}
    assert body["mappings"]["properties"]["associations"]["properties"]["persons"]["type"] == "nested"
    assert body["aliases"] == {"org_tenant_a_cases": {}}


def test_owns_index_filters_tenants_sharing_a_prefix():
    assert owns_index("acme", "org_acme_cases_v1")
    assert not owns_index("acme", "org_acme_eu_cases_v1")


def test_ensure_index_is_idempotent_under_concurrent_callers():
    engine = InMemorySearchEngine()
    services = [IndexingService(engine=engine, builders={}) for _ in range(8)]
    errors: list[BaseException] = []
    aliases: list[str] = []

    def _run(svc: IndexingService) -> None:
        try:
            aliases.append(svc.ensure_index("tenant_a", "cases"))
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=_run, args=(svc,)) for svc in services]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert set(aliases) == {"org_tenant_a_cases"}
    assert engine.list_indices("org_tenant_a_*") == ["org_tenant_a_cases_v1"]


def test_ensure_index_refuses_silent_mapping_change():
    engine = InMemorySearchEngine()
    body = create_index_body("tenant_a", "cases")
    body["mappings"]["_meta"]["schema_version"] = 0
    engine.create_index("org_tenant_a_cases_v0", body)

    svc = IndexingService(engine=engine, builders={})
    with pytest.raises(SchemaVersionMismatch) as exc_info:
        svc.ensure_index("tenant_a", "cases")
    assert exc_info.value.expected == CASE_SCHEMA.version
    assert exc_info.value.found == 0


def test_drop_tenant_indices_leaves_other_tenants_alone():
    engine = InMemorySearchEngine()
    svc = IndexingService(engine=engine, builders={})
    for tenant in ["acme", "acme_eu"]:
        svc.ensure_index(tenant, "cases")
        svc.ensure_index(tenant, "records")

    dropped = svc.drop_tenant_indices("acme")
    assert dropped == ["org_acme_cases_v1", "org_acme_records_v1"]
    assert engine.list_indices("org_*") == ["org_acme_eu_cases_v1", "org_acme_eu_records_v1"]
