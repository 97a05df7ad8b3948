from __future__ import annotations

import pytest

from casesearch.repositories.dlq_items import InMemoryDlqItemsRepository, PostgresDlqItemsRepository


def _item(**overrides) -> dict:
    item = {
        "dlq_id": "dlq_repo_1",
        "tenant_id": "tenant_a",
        "job_key": "tenant_a:cases:c1:1700000000000",
        "job": {"tenant_id": "tenant_a", "entity_type": "cases", "entity_id": "c1", "operation": "update"},
        "error_class": "transient",
        "error_code": "SearchEngineUnavailable",
        "attempts": 5,
        "status": "open",
        "created_at": "2025-01-01T00:00:00+00:00",
    }
    item.update(overrides)
    return item


def test_inmemory_dlq_repository_upsert_get_and_list():
    data: dict[str, dict] = {}
    repo = InMemoryDlqItemsRepository(data)
    repo.upsert(item=_item())
    repo.upsert(item=_item(dlq_id="dlq_repo_2", status="discarded", created_at="2025-01-02T00:00:00+00:00"))

    got = repo.get(tenant_id="tenant_a", dlq_id="dlq_repo_1")
    assert got is not None
    assert got["status"] == "open"
    assert repo.get(tenant_id="tenant_b", dlq_id="dlq_repo_1") is None
    assert [x["dlq_id"] for x in repo.list(tenant_id="tenant_a")] == ["dlq_repo_1", "dlq_repo_2"]
    assert [x["dlq_id"] for x in repo.list(tenant_id="tenant_a", status="open")] == ["dlq_repo_1"]

    repo.reset()
    assert data == {}


def test_inmemory_dlq_repository_rejects_unknown_status():
    with pytest.raises(ValueError, match="invalid dlq status"):
        InMemoryDlqItemsRepository().upsert(item=_item(status="lost"))


def test_postgres_dlq_repository_rejects_invalid_table_name():
    class DummyRunner:
        def run_in_tx(self, *, tenant_id: str, fn):
            return fn(None)

    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresDlqItemsRepository(tx_runner=DummyRunner(), table_name="x;drop table y")


def test_postgres_dlq_repository_upsert_get_and_list():
    statements: list[tuple[str, tuple | None]] = []
    tenants: list[str] = []
    current_row: list[tuple] = []
    current_rows: list[tuple] = []

    class FakeCursor:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def execute(self, query: str, params=None):
            statements.append((query, params))
            text = query.strip().lower()
            if text.startswith("select") and "limit 1" in text:
                self._row = current_row[0] if current_row else None
                self._rows = []
            elif text.startswith("select"):
                self._row = None
                self._rows = list(current_rows)
            else:
                self._row = None
                self._rows = []

        def fetchone(self):
            return self._row

        def fetchall(self):
            return self._rows

    class FakeConn:
        def cursor(self):
            return FakeCursor()

    class FakeRunner:
        def run_in_tx(self, *, tenant_id: str, fn):
            tenants.append(tenant_id)
            return fn(FakeConn())

    repo = PostgresDlqItemsRepository(tx_runner=FakeRunner())
    repo.upsert(item=_item())
    assert "INSERT INTO indexing_dlq_items" in statements[0][0]
    assert statements[0][1][:3] == ("dlq_repo_1", "tenant_a", "open")

    current_row.append(({"dlq_id": "dlq_repo_1", "tenant_id": "tenant_a", "status": "open"},))
    got = repo.get(tenant_id="tenant_a", dlq_id="dlq_repo_1")
    assert got is not None
    assert got["dlq_id"] == "dlq_repo_1"

    current_rows.append(({"dlq_id": "dlq_repo_1", "tenant_id": "tenant_a", "status": "open"},))
    listed = repo.list(tenant_id="tenant_a", status="open")
    assert len(listed) == 1
    assert statements[-1][1] == ("tenant_a", "open", "open")
    assert tenants == ["tenant_a", "tenant_a", "tenant_a"]
