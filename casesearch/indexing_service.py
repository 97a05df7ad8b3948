from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import Any

from casesearch.denormalizer import DocumentBuilder
from casesearch.errors import SchemaVersionMismatch
from casesearch.index_schema import (
    alias_name,
    create_index_body,
    index_name,
    mapping_for,
    owns_index,
    tenant_index_pattern,
    validate_entity_type,
    validate_tenant_id,
)
from casesearch.indexing_queue import IndexingJob, InvalidIndexingJob

logger = logging.getLogger(__name__)


class IndexingService:
    """Applies indexing jobs: rebuild from the relational store, then upsert or delete."""

    def __init__(
        self,
        *,
        engine: Any,
        builders: dict[str, DocumentBuilder],
        index_prefix: str = "org",
    ) -> None:
        self.engine = engine
        self.builders = builders
        self.index_prefix = index_prefix
        self._ensured: set[tuple[str, str]] = set()
        self._ensure_lock = threading.Lock()

    def ensure_index(self, tenant_id: str, entity_type: str) -> str:
        """Create the tenant's versioned index and alias if absent; returns the alias."""
        key = (validate_tenant_id(tenant_id), validate_entity_type(entity_type))
        alias = alias_name(tenant_id, entity_type, prefix=self.index_prefix)
        with self._ensure_lock:
            if key in self._ensured:
                return alias

        schema = mapping_for(entity_type)
        concrete = index_name(tenant_id, entity_type, prefix=self.index_prefix)
        meta = self.engine.get_index_meta(alias)
        if meta is None:
            created = self.engine.create_index(
                concrete,
                create_index_body(tenant_id, entity_type, prefix=self.index_prefix),
            )
            if created:
                logger.info("search_index_created index=%s alias=%s", concrete, alias)
            meta = self.engine.get_index_meta(concrete)
        found = (meta or {}).get("schema_version")
        if found != schema.version:
            raise SchemaVersionMismatch(index=alias, expected=schema.version, found=found)

        with self._ensure_lock:
            self._ensured.add(key)
        return alias

    def forget_cached_indices(self) -> None:
        with self._ensure_lock:
            self._ensured.clear()

    def process(self, job: IndexingJob) -> str:
        """Returns ``upserted``, ``deleted`` or ``absent`` (nothing to delete)."""
        builder = self.builders.get(job.entity_type)
        if builder is None:
            raise InvalidIndexingJob(f"no document builder for entity type {job.entity_type}")
        alias = self.ensure_index(job.tenant_id, job.entity_type)

        if job.operation == "delete":
            return "deleted" if self.engine.delete(alias, job.entity_id) else "absent"

        document = builder.build(job.tenant_id, job.entity_id)
        if document is None:
            logger.info(
                "indexing_source_missing tenant=%s entity=%s id=%s job_key=%s",
                job.tenant_id,
                job.entity_type,
                job.entity_id,
                job.job_key,
            )
            return "deleted" if self.engine.delete(alias, job.entity_id) else "absent"
        self.engine.upsert(alias, job.entity_id, document)
        return "upserted"

    def bulk_index(self, tenant_id: str, entity_type: str, entity_ids: Iterable[str]) -> dict[str, int]:
        """Build and upsert a batch synchronously; ids with no source row are deleted."""
        alias = self.ensure_index(tenant_id, entity_type)
        builder = self.builders[entity_type]
        documents: list[tuple[str, dict[str, Any]]] = []
        deleted = 0
        for entity_id in entity_ids:
            document = builder.build(tenant_id, entity_id)
            if document is None:
                deleted += int(self.engine.delete(alias, entity_id))
                continue
            documents.append((entity_id, document))
        upserted = self.engine.bulk_upsert(alias, documents)
        return {"upserted": int(upserted), "deleted": deleted}

    def get_document(self, tenant_id: str, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        return self.engine.get(alias_name(tenant_id, entity_type, prefix=self.index_prefix), entity_id)

    def indexed_ids(self, tenant_id: str, entity_type: str) -> list[str]:
        return self.engine.list_ids(alias_name(tenant_id, entity_type, prefix=self.index_prefix))

    def drop_tenant_indices(self, tenant_id: str) -> list[str]:
        pattern = tenant_index_pattern(tenant_id, prefix=self.index_prefix)
        dropped: list[str] = []
        for name in self.engine.list_indices(pattern):
            if not owns_index(tenant_id, name, prefix=self.index_prefix):
                continue
            if self.engine.delete_index(name):
                dropped.append(name)
        with self._ensure_lock:
            self._ensured = {key for key in self._ensured if key[0] != tenant_id}
        logger.info("tenant_indices_dropped tenant=%s indices=%s", tenant_id, ",".join(dropped))
        return dropped
