from __future__ import annotations

import copy
import re
from dataclasses import dataclass
from typing import Any

_TENANT_RE = re.compile(r"[a-z0-9][a-z0-9_-]{0,62}")
_PREFIX_RE = re.compile(r"[a-z][a-z0-9]{0,15}")


@dataclass(frozen=True)
class IndexSchema:
    entity_type: str
    version: int
    body: dict[str, Any]

    def mappings(self) -> dict[str, Any]:
        mappings = copy.deepcopy(self.body["mappings"])
        mappings["_meta"] = {"entity_type": self.entity_type, "schema_version": self.version}
        return mappings

    def settings(self) -> dict[str, Any]:
        return copy.deepcopy(self.body["settings"])


_INDEX_SETTINGS: dict[str, Any] = {
    "index": {"number_of_shards": 1, "number_of_replicas": 1},
    "analysis": {
        "analyzer": {
            "case_text": {
                "type": "custom",
                "tokenizer": "standard",
                "filter": ["lowercase", "asciifolding"],
            }
        }
    },
}

_KEYWORD = {"type": "keyword"}
_DATE = {"type": "date"}
_BOOL = {"type": "boolean"}
_TEXT = {"type": "text", "analyzer": "case_text"}
_NAME = {"type": "text", "analyzer": "case_text", "fields": {"raw": {"type": "keyword"}}}

CASE_SCHEMA = IndexSchema(
    entity_type="cases",
    version=1,
    body={
        "settings": _INDEX_SETTINGS,
        "mappings": {
            "dynamic": "strict",
            "properties": {
                "id": _KEYWORD,
                "tenant_id": _KEYWORD,
                "reference_number": _KEYWORD,
                "status": _KEYWORD,
                "severity": _KEYWORD,
                "case_type": _KEYWORD,
                "category_id": _KEYWORD,
                "pipeline_stage": _KEYWORD,
                "outcome": _KEYWORD,
                "details": _TEXT,
                "summary": _TEXT,
                "ai_summary": _TEXT,
                "reporter_type": _KEYWORD,
                "source_channel": _KEYWORD,
                "location": {
                    "properties": {"city": _KEYWORD, "state": _KEYWORD, "country": _KEYWORD},
                },
                "intake_timestamp": _DATE,
                "released_at": _DATE,
                "created_at": _DATE,
                "updated_at": _DATE,
                "associations": {
                    "properties": {
                        "persons": {
                            "type": "nested",
                            "properties": {
                                "association_id": _KEYWORD,
                                "person_id": _KEYWORD,
                                "label": _KEYWORD,
                                "evidentiary_status": _KEYWORD,
                                "is_active": _BOOL,
                                "started_at": _DATE,
                                "ended_at": _DATE,
                                "created_at": _DATE,
                                "person_name": _NAME,
                                "person_email": _KEYWORD,
                            },
                        },
                        "records": {
                            "type": "nested",
                            "properties": {
                                "association_id": _KEYWORD,
                                "record_id": _KEYWORD,
                                "association_type": _KEYWORD,
                                "reference_number": _KEYWORD,
                                "record_type": _KEYWORD,
                                "created_at": _DATE,
                            },
                        },
                        "linked_cases": {
                            "type": "nested",
                            "properties": {
                                "association_id": _KEYWORD,
                                "case_id": _KEYWORD,
                                "label": _KEYWORD,
                                "direction": _KEYWORD,
                                "reference_number": _KEYWORD,
                                "created_at": _DATE,
                            },
                        },
                    }
                },
                "person_ids": _KEYWORD,
                "subject_person_ids": _KEYWORD,
                "witness_person_ids": _KEYWORD,
                "reporter_person_ids": _KEYWORD,
                "investigator_person_ids": _KEYWORD,
                "active_person_ids": _KEYWORD,
                "record_ids": _KEYWORD,
                "linked_case_ids": _KEYWORD,
                "assignee_id": _KEYWORD,
                "assignee_name": _KEYWORD,
            },
        },
    },
)

RECORD_SCHEMA = IndexSchema(
    entity_type="records",
    version=1,
    body={
        "settings": _INDEX_SETTINGS,
        "mappings": {
            "dynamic": "strict",
            "properties": {
                "id": _KEYWORD,
                "tenant_id": _KEYWORD,
                "reference_number": _KEYWORD,
                "record_type": _KEYWORD,
                "status": _KEYWORD,
                "severity": _KEYWORD,
                "details": _TEXT,
                "summary": _TEXT,
                "created_at": _DATE,
                "associations": {
                    "properties": {
                        "persons": {
                            "type": "nested",
                            "properties": {
                                "association_id": _KEYWORD,
                                "person_id": _KEYWORD,
                                "label": _KEYWORD,
                                "created_at": _DATE,
                                "person_name": _NAME,
                                "person_email": _KEYWORD,
                            },
                        },
                        "cases": {
                            "type": "nested",
                            "properties": {
                                "association_id": _KEYWORD,
                                "case_id": _KEYWORD,
                                "association_type": _KEYWORD,
                                "reference_number": _KEYWORD,
                                "created_at": _DATE,
                            },
                        },
                    }
                },
                "person_ids": _KEYWORD,
                "reporter_person_ids": _KEYWORD,
                "mentioned_person_ids": _KEYWORD,
                "linked_case_ids": _KEYWORD,
            },
        },
    },
)

ENTITY_SCHEMAS: dict[str, IndexSchema] = {
    CASE_SCHEMA.entity_type: CASE_SCHEMA,
    RECORD_SCHEMA.entity_type: RECORD_SCHEMA,
}
ENTITY_TYPES = tuple(sorted(ENTITY_SCHEMAS))


def validate_tenant_id(tenant_id: str) -> str:
    if not isinstance(tenant_id, str) or not _TENANT_RE.fullmatch(tenant_id):
        raise ValueError(f"invalid tenant id for index naming: {tenant_id!r}")
    return tenant_id


def validate_entity_type(entity_type: str) -> str:
    if entity_type not in ENTITY_SCHEMAS:
        raise ValueError(f"unknown entity type: {entity_type!r}")
    return entity_type


def _validate_prefix(prefix: str) -> str:
    if not _PREFIX_RE.fullmatch(prefix):
        raise ValueError(f"invalid index prefix: {prefix!r}")
    return prefix


def mapping_for(entity_type: str) -> IndexSchema:
    return ENTITY_SCHEMAS[validate_entity_type(entity_type)]


def alias_name(tenant_id: str, entity_type: str, *, prefix: str = "org") -> str:
    """Version-less name that readers and writers address."""
    return f"{_validate_prefix(prefix)}_{validate_tenant_id(tenant_id)}_{validate_entity_type(entity_type)}"


def index_name(tenant_id: str, entity_type: str, *, prefix: str = "org", version: int | None = None) -> str:
    """Concrete, versioned index name for one tenant and entity type.

    Tenant ids are validated rather than normalised so two tenants can never
    collapse onto the same index.
    """
    schema = mapping_for(entity_type)
    ver = schema.version if version is None else int(version)
    if ver < 1:
        raise ValueError("index version must be >= 1")
    return f"{alias_name(tenant_id, entity_type, prefix=prefix)}_v{ver}"


def tenant_index_pattern(tenant_id: str, *, prefix: str = "org") -> str:
    """Wildcard for listing; it over-matches tenants sharing a prefix, so filter with owns_index."""
    return f"{_validate_prefix(prefix)}_{validate_tenant_id(tenant_id)}_*"


def owns_index(tenant_id: str, name: str, *, prefix: str = "org") -> bool:
    entities = "|".join(re.escape(e) for e in ENTITY_TYPES)
    pattern = rf"{re.escape(_validate_prefix(prefix))}_{re.escape(validate_tenant_id(tenant_id))}_({entities})_v\d+"
    return re.fullmatch(pattern, name) is not None


def create_index_body(tenant_id: str, entity_type: str, *, prefix: str = "org") -> dict[str, Any]:
    schema = mapping_for(entity_type)
    return {
        "settings": schema.settings(),
        "mappings": schema.mappings(),
        "aliases": {alias_name(tenant_id, entity_type, prefix=prefix): {}},
    }
