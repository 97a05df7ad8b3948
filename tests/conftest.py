import pathlib
import sys

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from casesearch.container import Services, build_services
from casesearch.main import create_app
from casesearch.relational import RelationalStore
from casesearch.search_engine import InMemorySearchEngine
from casesearch.settings import IndexingSettings


class StoreSeeder:
    """Writes rows straight into the in-memory relational repositories."""

    def __init__(self, store: RelationalStore) -> None:
        self.store = store
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq:04d}"

    def _ts(self) -> str:
        return f"2025-01-01T00:00:{self._seq:02d}+00:00"

    def case(self, tenant_id: str, case_id: str, **fields) -> dict:
        row = {
            "id": case_id,
            "tenant_id": tenant_id,
            "reference_number": f"CASE-{case_id.upper()}",
            "status": "OPEN",
            "severity": "HIGH",
            "case_type": "REPORT",
            "details": f"details of {case_id}",
            "created_at": "2025-01-01T00:00:00+00:00",
            "updated_at": "2025-01-01T00:00:00+00:00",
        }
        row.update(fields)
        return self.store.cases.upsert(item=row)

    def person(self, tenant_id: str, person_id: str, first_name: str = "Pat", last_name: str = "Doe") -> dict:
        return self.store.persons.upsert(
            item={
                "id": person_id,
                "tenant_id": tenant_id,
                "first_name": first_name,
                "last_name": last_name,
                "email": f"{person_id}@example.test",
            }
        )

    def record(self, tenant_id: str, record_id: str, **fields) -> dict:
        row = {
            "id": record_id,
            "tenant_id": tenant_id,
            "reference_number": f"RIU-{record_id.upper()}",
            "type": "HOTLINE_REPORT",
            "status": "RELEASED",
            "created_at": "2025-01-01T00:00:00+00:00",
        }
        row.update(fields)
        return self.store.records.upsert(item=row)

    def person_case(self, tenant_id: str, person_id: str, case_id: str, label: str, **fields) -> dict:
        self._next("pca")
        row = {
            "id": fields.pop("id", f"pca_{self._seq:04d}"),
            "tenant_id": tenant_id,
            "person_id": person_id,
            "case_id": case_id,
            "label": label,
            "evidentiary_status": "ACTIVE" if label in {"REPORTER", "SUBJECT", "WITNESS"} else None,
            "started_at": None if label in {"REPORTER", "SUBJECT", "WITNESS"} else self._ts(),
            "ended_at": None,
            "created_at": self._ts(),
        }
        row.update(fields)
        return self.store.associations.add("person-case", item=row)

    def record_case(self, tenant_id: str, record_id: str, case_id: str, association_type: str = "PRIMARY") -> dict:
        self._next("rca")
        return self.store.associations.add(
            "record-case",
            item={
                "id": f"rca_{self._seq:04d}",
                "tenant_id": tenant_id,
                "record_id": record_id,
                "case_id": case_id,
                "association_type": association_type,
                "created_at": self._ts(),
            },
        )

    def case_case(self, tenant_id: str, source_case_id: str, target_case_id: str, label: str = "RELATED") -> dict:
        self._next("cca")
        return self.store.associations.add(
            "case-case",
            item={
                "id": f"cca_{self._seq:04d}",
                "tenant_id": tenant_id,
                "source_case_id": source_case_id,
                "target_case_id": target_case_id,
                "label": label,
                "created_at": self._ts(),
            },
        )

    def person_record(self, tenant_id: str, person_id: str, record_id: str, label: str = "REPORTER") -> dict:
        self._next("pra")
        return self.store.associations.add(
            "person-record",
            item={
                "id": f"pra_{self._seq:04d}",
                "tenant_id": tenant_id,
                "person_id": person_id,
                "record_id": record_id,
                "label": label,
                "created_at": self._ts(),
            },
        )


@pytest.fixture
def settings() -> IndexingSettings:
    return IndexingSettings(worker_retry_backoff_base_ms=0, worker_retry_backoff_max_ms=0, worker_max_attempts=3)


@pytest.fixture
def services(settings: IndexingSettings) -> Services:
    return build_services(settings, store=RelationalStore(), engine=InMemorySearchEngine())


@pytest.fixture
def seed(services: Services) -> StoreSeeder:
    return StoreSeeder(services.store)


@pytest.fixture
def client(services: Services) -> TestClient:
    return TestClient(create_app(services))
