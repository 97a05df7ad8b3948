from __future__ import annotations

from fastapi import APIRouter, Query, Request

from casesearch.pattern_queries import PersonCriterion
from casesearch.routes._deps import (
    invalid_request,
    services_from_request,
    tenant_id_from_request,
    trace_id_from_request,
)
from casesearch.schemas import JointCasesRequest, success_envelope

router = APIRouter(prefix="/api/v1/patterns", tags=["patterns"])


@router.post("/cases/joint")
def joint_cases(payload: JointCasesRequest, request: Request):
    criteria = [PersonCriterion(person_id=c.person_id, labels=tuple(c.labels)) for c in payload.criteria]
    try:
        data = services_from_request(request).patterns.find_cases_with_persons(
            tenant_id_from_request(request),
            criteria,
            limit=payload.limit,
            offset=payload.offset,
        )
    except ValueError as exc:
        raise invalid_request(exc) from exc
    return success_envelope(data, trace_id_from_request(request))


@router.get("/cases/co-present")
def co_present_cases(
    request: Request,
    person_id: list[str] = Query(),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    try:
        data = services_from_request(request).patterns.find_cases_with_all_persons(
            tenant_id_from_request(request),
            person_id,
            limit=limit,
            offset=offset,
        )
    except ValueError as exc:
        raise invalid_request(exc) from exc
    return success_envelope(data, trace_id_from_request(request))


@router.get("/persons/{person_id}/cases")
def person_cases(
    person_id: str,
    request: Request,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    data = services_from_request(request).patterns.find_cases_by_person(
        tenant_id_from_request(request),
        person_id,
        limit=limit,
        offset=offset,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/persons/{person_id}/summary")
def person_summary(person_id: str, request: Request):
    data = services_from_request(request).patterns.person_involvement_summary(
        tenant_id_from_request(request),
        person_id,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/repeat-involvements")
def repeat_involvements(
    request: Request,
    label: str = Query(default="SUBJECT"),
    min_count: int = Query(default=2, ge=1),
    size: int = Query(default=100, ge=1, le=1000),
):
    try:
        items = services_from_request(request).patterns.find_repeat_involvements(
            tenant_id_from_request(request),
            label,
            min_count=min_count,
            size=size,
        )
    except ValueError as exc:
        raise invalid_request(exc) from exc
    return success_envelope({"label": label, "min_count": min_count, "items": items}, trace_id_from_request(request))


@router.get("/persons/{person_id}/reporter-history")
def reporter_history(
    person_id: str,
    request: Request,
    exclude_record_id: str | None = Query(default=None),
):
    data = services_from_request(request).patterns.reporter_history(
        tenant_id_from_request(request),
        person_id,
        exclude_record_id=exclude_record_id,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/cases/{case_id}/related")
def related_cases(case_id: str, request: Request):
    items = services_from_request(request).patterns.related_cases(tenant_id_from_request(request), case_id)
    return success_envelope({"case_id": case_id, "items": items}, trace_id_from_request(request))
