from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request

from casesearch.errors import ApiError, SchemaVersionMismatch
from casesearch.events import InvalidEvent, make_event
from casesearch.routes._deps import (
    invalid_request,
    require_internal_debug,
    services_from_request,
    tenant_id_from_request,
    trace_id_from_request,
)
from casesearch.schemas import (
    DlqDiscardRequest,
    EnqueueRequest,
    EventPublishRequest,
    ReindexRequest,
    success_envelope,
)

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


def _schema_conflict(exc: SchemaVersionMismatch) -> ApiError:
    return ApiError(
        code="INDEX_SCHEMA_MISMATCH",
        message=str(exc),
        error_class="business_rule",
        retryable=False,
        http_status=409,
    )


# ---------------------------------------------------------------------------
# Indexing
# ---------------------------------------------------------------------------


@router.post("/indexing/enqueue")
def internal_enqueue(
    payload: EnqueueRequest,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    try:
        job = services_from_request(request).queue.enqueue(
            tenant_id=tenant_id_from_request(request),
            entity_type=payload.entity_type,
            entity_id=payload.entity_id,
            operation=payload.operation,
        )
    except ValueError as exc:
        raise invalid_request(exc) from exc
    return success_envelope(job.as_payload(), trace_id_from_request(request))


@router.post("/events")
def internal_publish_event(
    payload: EventPublishRequest,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    tenant_id = tenant_id_from_request(request)
    if payload.payload.get("tenant_id") != tenant_id:
        raise ApiError(
            code="TENANT_SCOPE_VIOLATION",
            message="event tenant does not match request tenant",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )
    try:
        event = make_event(payload.topic, payload.payload)
    except InvalidEvent as exc:
        raise invalid_request(exc) from exc
    services = services_from_request(request)
    before = services.queue.pending_count(tenant_id=tenant_id)
    delivered = services.bus.publish(event)
    return success_envelope(
        {
            "event_id": event.event_id,
            "topic": event.topic,
            "handlers": delivered,
            "jobs_enqueued": services.queue.pending_count(tenant_id=tenant_id) - before,
        },
        trace_id_from_request(request),
    )


@router.post("/indexing/reindex")
def internal_reindex(
    payload: ReindexRequest,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    try:
        result = services_from_request(request).reindex.reindex_tenant(
            tenant_id_from_request(request),
            payload.entity_type,
            mode=payload.mode,
            batch_size=payload.batch_size,
            prune=payload.prune,
        )
    except SchemaVersionMismatch as exc:
        raise _schema_conflict(exc) from exc
    return success_envelope(result, trace_id_from_request(request))


@router.get("/indexing/metrics")
def internal_indexing_metrics(
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    services = services_from_request(request)
    data = services.metrics.snapshot()
    data["pending"] = services.queue.pending_count(tenant_id=tenant_id_from_request(request))
    return success_envelope(data, trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Worker drain
# ---------------------------------------------------------------------------


@router.post("/worker/drain-once")
def internal_worker_drain_once(
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    stats = services_from_request(request).worker.run_once()
    return success_envelope(stats, trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Dead letters
# ---------------------------------------------------------------------------


@router.get("/dlq")
def internal_list_dlq(
    request: Request,
    status: str | None = Query(default=None),
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    items = services_from_request(request).dead_letters.list(tenant_id=tenant_id_from_request(request), status=status)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/dlq/{dlq_id}/requeue")
def internal_requeue_dlq(
    dlq_id: str,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    data = services_from_request(request).dead_letters.requeue(tenant_id=tenant_id_from_request(request), dlq_id=dlq_id)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/dlq/{dlq_id}/discard")
def internal_discard_dlq(
    dlq_id: str,
    payload: DlqDiscardRequest,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    data = services_from_request(request).dead_letters.discard(
        tenant_id=tenant_id_from_request(request),
        dlq_id=dlq_id,
        reason=payload.reason,
        reviewer_id=payload.reviewer_id,
    )
    return success_envelope(data, trace_id_from_request(request))
