from __future__ import annotations

import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from casesearch.container import Services
from casesearch.errors import ApiError
from casesearch.index_schema import validate_tenant_id
from casesearch.schemas import error_envelope


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def tenant_id_from_request(request: Request) -> str:
    tenant_id = getattr(request.state, "tenant_id", None) or "tenant_default"
    try:
        return validate_tenant_id(tenant_id)
    except ValueError as exc:
        raise ApiError(
            code="TENANT_ID_INVALID",
            message="x-tenant-id must be lowercase alphanumeric, '-' or '_'",
            error_class="validation",
            retryable=False,
            http_status=400,
        ) from exc


def services_from_request(request: Request) -> Services:
    return request.app.state.services


def require_internal_debug(x_internal_debug: str | None) -> None:
    if x_internal_debug != "true":
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="internal endpoint forbidden",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


def invalid_request(exc: ValueError) -> ApiError:
    return ApiError(
        code="REQ_VALIDATION_FAILED",
        message=str(exc),
        error_class="validation",
        retryable=False,
        http_status=400,
    )


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )
