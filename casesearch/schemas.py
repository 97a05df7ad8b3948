from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

EntityType = Literal["cases", "records"]


class PersonCriterionModel(BaseModel):
    person_id: str = Field(min_length=1)
    labels: list[str] = Field(default_factory=list)


class JointCasesRequest(BaseModel):
    criteria: list[PersonCriterionModel] = Field(min_length=1, max_length=10)
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class EnqueueRequest(BaseModel):
    entity_type: EntityType
    entity_id: str = Field(min_length=1)
    operation: Literal["create", "update", "delete", "reindex"]


class EventPublishRequest(BaseModel):
    topic: str = Field(min_length=1)
    payload: dict[str, Any]


class ReindexRequest(BaseModel):
    entity_type: EntityType = "cases"
    mode: Literal["queue", "sync"] = "queue"
    batch_size: int | None = Field(default=None, ge=1, le=5000)
    prune: bool = False


class DlqDiscardRequest(BaseModel):
    reason: str = ""
    reviewer_id: str = ""


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
