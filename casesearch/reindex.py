from __future__ import annotations

import logging
import time
from typing import Any

from casesearch.index_schema import ENTITY_TYPES, validate_entity_type, validate_tenant_id
from casesearch.indexing_queue import IndexingQueue
from casesearch.indexing_service import IndexingService
from casesearch.relational import RelationalStore

logger = logging.getLogger(__name__)

REINDEX_MODES = ("queue", "sync")


class ReindexDriver:
    """Rebuilds a tenant's index from the relational store in id-ordered pages.

    ``queue`` mode hands one ``reindex`` job per id to the shared indexing queue;
    ``sync`` mode builds and bulk-upserts each page in the calling thread. Both
    go through the same document builders, so re-running is harmless.
    """

    def __init__(
        self,
        *,
        store: RelationalStore,
        queue: IndexingQueue,
        indexing_service: IndexingService,
        batch_size: int = 500,
    ) -> None:
        self.store = store
        self.queue = queue
        self.indexing_service = indexing_service
        self.batch_size = max(1, int(batch_size))

    def reindex_tenant(
        self,
        tenant_id: str,
        entity_type: str = "cases",
        *,
        mode: str = "queue",
        batch_size: int | None = None,
        prune: bool = False,
    ) -> dict[str, Any]:
        validate_tenant_id(tenant_id)
        validate_entity_type(entity_type)
        if mode not in REINDEX_MODES:
            raise ValueError(f"unsupported reindex mode: {mode}")
        limit = max(1, int(batch_size or self.batch_size))
        started = time.monotonic()
        self.indexing_service.ensure_index(tenant_id, entity_type)

        stats = {"scanned": 0, "batches": 0, "enqueued": 0, "upserted": 0, "deleted": 0, "pruned": 0}
        live: set[str] = set()
        after: str | None = None
        while True:
            ids = self.store.list_ids(tenant_id=tenant_id, entity_type=entity_type, after=after, limit=limit)
            if not ids:
                break
            stats["scanned"] += len(ids)
            stats["batches"] += 1
            if prune:
                live.update(ids)
            if mode == "queue":
                for entity_id in ids:
                    self.queue.enqueue(
                        tenant_id=tenant_id,
                        entity_type=entity_type,
                        entity_id=entity_id,
                        operation="reindex",
                    )
                stats["enqueued"] += len(ids)
            else:
                result = self.indexing_service.bulk_index(tenant_id, entity_type, ids)
                stats["upserted"] += result["upserted"]
                stats["deleted"] += result["deleted"]
            after = ids[-1]
            if len(ids) < limit:
                break

        if prune:
            # ids indexed but not scanned may have been created mid-scan; rebuilding
            # them deletes only the ones whose source row is really gone
            candidates = sorted(set(self.indexing_service.indexed_ids(tenant_id, entity_type)) - live)
            if mode == "queue":
                for entity_id in candidates:
                    self.queue.enqueue(
                        tenant_id=tenant_id,
                        entity_type=entity_type,
                        entity_id=entity_id,
                        operation="reindex",
                    )
                stats["enqueued"] += len(candidates)
                stats["pruned"] = len(candidates)
            elif candidates:
                result = self.indexing_service.bulk_index(tenant_id, entity_type, candidates)
                stats["upserted"] += result["upserted"]
                stats["pruned"] = result["deleted"]

        logger.info(
            "reindex_done tenant=%s entity=%s mode=%s scanned=%s pruned=%s elapsed_ms=%s",
            tenant_id,
            entity_type,
            mode,
            stats["scanned"],
            stats["pruned"],
            int((time.monotonic() - started) * 1000),
        )
        return {"tenant_id": tenant_id, "entity_type": entity_type, "mode": mode, **stats}

    def reindex_all(self, tenant_id: str, *, mode: str = "queue", prune: bool = False) -> list[dict[str, Any]]:
        return [self.reindex_tenant(tenant_id, entity_type, mode=mode, prune=prune) for entity_type in ENTITY_TYPES]
