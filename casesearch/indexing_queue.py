from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from casesearch.index_schema import validate_entity_type, validate_tenant_id

logger = logging.getLogger(__name__)

OPERATIONS = ("create", "update", "delete", "reindex")


class InvalidIndexingJob(ValueError):
    retryable = False


@dataclass(frozen=True)
class IndexingJob:
    tenant_id: str
    entity_type: str
    entity_id: str
    operation: str
    job_key: str
    submitted_at: str

    def as_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "IndexingJob":
        values: dict[str, str] = {}
        for name in cls.__dataclass_fields__:
            if name not in payload:
                raise InvalidIndexingJob(f"indexing job payload missing {name}")
            value = payload[name]
            if value is None or not str(value).strip():
                raise InvalidIndexingJob(f"indexing job payload has empty {name}")
            values[name] = str(value)
        job = cls(**values)
        job.validate()
        return job

    def validate(self) -> None:
        try:
            validate_tenant_id(self.tenant_id)
            validate_entity_type(self.entity_type)
        except ValueError as exc:
            raise InvalidIndexingJob(str(exc)) from exc
        if not self.entity_id.strip():
            raise InvalidIndexingJob("entity_id must not be empty")
        if self.operation not in OPERATIONS:
            raise InvalidIndexingJob(f"unsupported indexing operation: {self.operation}")


class IndexingQueue:
    """Typed front of the queue backend: one message per (entity, operation) request."""

    def __init__(self, backend: Any, *, queue_name: str = "indexing") -> None:
        self.backend = backend
        self.queue_name = queue_name

    def enqueue(
        self,
        *,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        operation: str,
        available_at: datetime | None = None,
    ) -> IndexingJob:
        submitted_ms = time.time_ns() // 1_000_000
        job = IndexingJob(
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            job_key=f"{tenant_id}:{entity_type}:{entity_id}:{submitted_ms}",
            submitted_at=datetime.fromtimestamp(submitted_ms / 1000, tz=UTC).isoformat(),
        )
        job.validate()
        self.backend.enqueue(
            tenant_id=tenant_id,
            queue_name=self.queue_name,
            payload=job.as_payload(),
            available_at=available_at,
        )
        logger.debug("indexing_job_enqueued job_key=%s operation=%s", job.job_key, operation)
        return job

    def pending_count(self, *, tenant_id: str) -> int:
        return int(self.backend.pending_count(tenant_id=tenant_id, queue_name=self.queue_name))
