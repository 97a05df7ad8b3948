from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from casesearch.errors import ApiError
from casesearch.indexing_queue import IndexingQueue

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _error_code(exc: BaseException) -> str:
    return type(exc).__name__


class DeadLetterService:
    """Parks poison indexing jobs and lets operators requeue or discard them."""

    def __init__(self, *, repository: Any, queue: IndexingQueue) -> None:
        self.repository = repository
        self.queue = queue

    def record(
        self,
        *,
        tenant_id: str,
        payload: dict[str, Any],
        error: BaseException,
        attempts: int,
        retryable: bool,
    ) -> dict[str, Any]:
        item = {
            "dlq_id": f"dlq_{uuid.uuid4().hex[:12]}",
            "tenant_id": tenant_id,
            "job_key": str(payload.get("job_key") or ""),
            "job": dict(payload),
            "error_class": "transient" if retryable else "permanent",
            "error_code": _error_code(error),
            "error_message": str(error)[:2000],
            "attempts": int(attempts),
            "status": "open",
            "created_at": _utcnow_iso(),
        }
        saved = self.repository.upsert(item=item)
        logger.error(
            "indexing_job_dead_lettered tenant=%s job_key=%s attempts=%s error_code=%s",
            tenant_id,
            item["job_key"],
            attempts,
            item["error_code"],
        )
        return saved

    def list(self, *, tenant_id: str, status: str | None = None) -> list[dict[str, Any]]:
        return self.repository.list(tenant_id=tenant_id, status=status)

    def _get_open(self, *, tenant_id: str, dlq_id: str) -> dict[str, Any]:
        item = self.repository.get(tenant_id=tenant_id, dlq_id=dlq_id)
        if item is None:
            raise ApiError(
                code="DLQ_ITEM_NOT_FOUND",
                message="dlq item not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        if item.get("status") != "open":
            raise ApiError(
                code="DLQ_ITEM_CONFLICT",
                message="dlq item is not open",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )
        return item

    def requeue(self, *, tenant_id: str, dlq_id: str) -> dict[str, Any]:
        item = self._get_open(tenant_id=tenant_id, dlq_id=dlq_id)
        job = item.get("job") or {}
        try:
            new_job = self.queue.enqueue(
                tenant_id=tenant_id,
                entity_type=str(job.get("entity_type", "")),
                entity_id=str(job.get("entity_id", "")),
                operation=str(job.get("operation", "")),
            )
        except ValueError as exc:
            raise ApiError(
                code="DLQ_ITEM_UNREPLAYABLE",
                message=str(exc),
                error_class="business_rule",
                retryable=False,
                http_status=409,
            ) from exc
        item["status"] = "requeued"
        item["requeued_job_key"] = new_job.job_key
        item["requeued_at"] = _utcnow_iso()
        self.repository.upsert(item=item)
        logger.info("dlq_item_requeued tenant=%s dlq_id=%s job_key=%s", tenant_id, dlq_id, new_job.job_key)
        return {"dlq_id": dlq_id, "status": "requeued", "job_key": new_job.job_key}

    def discard(self, *, tenant_id: str, dlq_id: str, reason: str, reviewer_id: str = "") -> dict[str, Any]:
        if not reason.strip():
            raise ApiError(
                code="DLQ_DISCARD_REASON_REQUIRED",
                message="discard requires a reason",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        item = self._get_open(tenant_id=tenant_id, dlq_id=dlq_id)
        item["status"] = "discarded"
        item["discard_reason"] = reason.strip()
        item["reviewer_id"] = reviewer_id.strip()
        item["discarded_at"] = _utcnow_iso()
        self.repository.upsert(item=item)
        logger.info("dlq_item_discarded tenant=%s dlq_id=%s", tenant_id, dlq_id)
        return {"dlq_id": dlq_id, "status": "discarded"}
