from __future__ import annotations

import pytest

from casesearch.errors import DocumentRejected, SearchEngineUnavailable
from casesearch.index_schema import create_index_body
from casesearch.search_engine import InMemorySearchEngine, OpenSearchIndexClient, create_search_engine
from casesearch.settings import IndexingSettings


def _engine_with_cases() -> InMemorySearchEngine:
    engine = InMemorySearchEngine()
    engine.create_index("org_t_cases_v1", create_index_body("t", "cases"))
    return engine


def test_memory_engine_rejects_unmapped_fields():
    engine = _engine_with_cases()
    with pytest.raises(DocumentRejected, match="not mapped"):
        engine.upsert("org_t_cases", "c1", {"id": "c1", "tenant_id": "t", "surprise": 1})
    with pytest.raises(DocumentRejected, match="associations.persons.nickname"):
        engine.upsert(
            "org_t_cases",
            "c1",
            {"id": "c1", "associations": {"persons": [{"person_id": "p1", "nickname": "x"}]}},
        )


def test_memory_engine_delete_is_404_tolerant():
    engine = _engine_with_cases()
    engine.upsert("org_t_cases", "c1", {"id": "c1", "tenant_id": "t"})
    assert engine.delete("org_t_cases", "c1") is True
    assert engine.delete("org_t_cases", "c1") is False
    assert engine.delete("org_missing_cases", "c1") is False
    assert engine.get("org_t_cases", "c1") is None


def test_memory_engine_nested_query_matches_within_one_entry():
    engine = _engine_with_cases()
    engine.upsert(
        "org_t_cases",
        "c1",
        {
            "id": "c1",
            "associations": {
                "persons": [
                    {"person_id": "p1", "label": "SUBJECT"},
                    {"person_id": "p2", "label": "WITNESS"},
                ]
            },
        },
    )
    nested = {
        "nested": {
            "path": "associations.persons",
            "query": {
                "bool": {
                    "filter": [
                        {"term": {"associations.persons.person_id": "p1"}},
                        {"term": {"associations.persons.label": "WITNESS"}},
                    ]
                }
            },
        }
    }
    flat = {
        "bool": {
            "filter": [
                {"term": {"associations.persons.person_id": "p1"}},
                {"term": {"associations.persons.label": "WITNESS"}},
            ]
        }
    }
    assert engine.search("org_t_cases", {"query": nested})["hits"]["total"]["value"] == 0
    assert engine.search("org_t_cases", {"query": flat})["hits"]["total"]["value"] == 1


def test_memory_engine_terms_aggregation_honours_min_doc_count():
    engine = _engine_with_cases()
    for doc_id, people in {"c1": ["p1", "p2"], "c2": ["p1"], "c3": ["p1", "p3"]}.items():
        engine.upsert("org_t_cases", doc_id, {"id": doc_id, "person_ids": people})
    resp = engine.search(
        "org_t_cases",
        {"size": 0, "aggs": {"people": {"terms": {"field": "person_ids", "min_doc_count": 2}}}},
    )
    buckets = resp["aggregations"]["people"]["buckets"]
    assert [(b["key"], b["doc_count"]) for b in buckets] == [("p1", 3)]
    assert resp["hits"]["hits"] == []


def test_memory_engine_sorts_and_pages():
    engine = _engine_with_cases()
    for i in range(5):
        engine.upsert("org_t_cases", f"c{i}", {"id": f"c{i}", "created_at": f"2025-01-0{i + 1}"})
    resp = engine.search(
        "org_t_cases",
        {"sort": [{"created_at": {"order": "desc"}}], "from": 1, "size": 2, "_source": ["id"]},
    )
    assert [h["_id"] for h in resp["hits"]["hits"]] == ["c3", "c2"]
    assert resp["hits"]["hits"][0]["_source"] == {"id": "c3"}


def test_search_engine_factory_rejects_unknown_backend():
    with pytest.raises(RuntimeError, match="unsupported search backend"):
        create_search_engine(IndexingSettings(search_backend="solr"))


class _FakeOpenSearchClient:
    def __init__(self, exc_mod) -> None:
        self.exc_mod = exc_mod
        self.indexed: dict[str, dict] = {}
        self.fail_next: Exception | None = None
        self.indices = self

    def _maybe_fail(self) -> None:
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc

    def create(self, *, index: str, body: dict) -> dict:
        self._maybe_fail()
        return {"acknowledged": True, "index": index}

    def index(self, *, index: str, id: str, body: dict, refresh: bool) -> dict:
        self._maybe_fail()
        self.indexed[id] = body
        return {"result": "created"}

    def delete(self, *, index: str, id: str, refresh: bool) -> dict:
        self._maybe_fail()
        if id not in self.indexed:
            raise self.exc_mod.NotFoundError(404, "not_found", {"result": "not_found"})
        del self.indexed[id]
        return {"result": "deleted"}


def test_opensearch_adapter_maps_engine_errors():
    opensearchpy = pytest.importorskip("opensearchpy")
    exc_mod = opensearchpy.exceptions
    fake = _FakeOpenSearchClient(exc_mod)
    adapter = OpenSearchIndexClient(client=fake)

    adapter.upsert("org_t_cases", "c1", {"id": "c1"})
    assert adapter.delete("org_t_cases", "c1") is True
    assert adapter.delete("org_t_cases", "c1") is False

    fake.fail_next = exc_mod.ConnectionError("N/A", "connection refused", None)
    with pytest.raises(SearchEngineUnavailable):
        adapter.upsert("org_t_cases", "c2", {"id": "c2"})

    fake.fail_next = exc_mod.TransportError(503, "unavailable", {})
    with pytest.raises(SearchEngineUnavailable) as exc_info:
        adapter.upsert("org_t_cases", "c2", {"id": "c2"})
    assert exc_info.value.status_code == 503

    fake.fail_next = exc_mod.RequestError(400, "strict_dynamic_mapping_exception", {})
    with pytest.raises(DocumentRejected):
        adapter.upsert("org_t_cases", "c2", {"id": "c2", "bogus": True})

    fake.fail_next = exc_mod.RequestError(400, "resource_already_exists_exception", {})
    assert adapter.create_index("org_t_cases_v1", {}) is False
    assert adapter.create_index("org_t_cases_v1", {}) is True
