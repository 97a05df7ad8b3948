from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from casesearch.db.postgres import PostgresTxRunner
from casesearch.repositories import (
    InMemoryAssociationsRepository,
    InMemoryCasesRepository,
    InMemoryPersonsRepository,
    InMemoryRecordsRepository,
    PostgresAssociationsRepository,
    PostgresCasesRepository,
    PostgresPersonsRepository,
    PostgresRecordsRepository,
)
from casesearch.settings import IndexingSettings


@dataclass
class RelationalStore:
    """Read side of the authoritative store: cases, persons, records, associations."""

    cases: Any = field(default_factory=InMemoryCasesRepository)
    persons: Any = field(default_factory=InMemoryPersonsRepository)
    records: Any = field(default_factory=InMemoryRecordsRepository)
    associations: Any = field(default_factory=InMemoryAssociationsRepository)

    def list_ids(self, *, tenant_id: str, entity_type: str, after: str | None, limit: int) -> list[str]:
        if entity_type == "cases":
            return self.cases.list_ids(tenant_id=tenant_id, after=after, limit=limit)
        if entity_type == "records":
            return self.records.list_ids(tenant_id=tenant_id, after=after, limit=limit)
        raise ValueError(f"unknown entity type: {entity_type}")


def create_relational_store(settings: IndexingSettings) -> RelationalStore:
    backend = settings.relational_backend
    if backend == "memory":
        return RelationalStore()
    if backend == "postgres":
        if not settings.postgres_dsn:
            raise ValueError("POSTGRES_DSN must be set when CSI_RELATIONAL_BACKEND=postgres")
        runner = PostgresTxRunner(settings.postgres_dsn, timeout_s=settings.relational_timeout_s)
        return RelationalStore(
            cases=PostgresCasesRepository(tx_runner=runner),
            persons=PostgresPersonsRepository(tx_runner=runner),
            records=PostgresRecordsRepository(tx_runner=runner),
            associations=PostgresAssociationsRepository(tx_runner=runner),
        )
    raise RuntimeError(f"unsupported relational backend: {backend}")
