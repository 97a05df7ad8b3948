from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

PERSONS_PATH = "associations.persons"

CASE_SUMMARY_FIELDS = [
    "id",
    "reference_number",
    "status",
    "severity",
    "case_type",
    "created_at",
    "assignee_id",
    "assignee_name",
]

CASE_LISTING_SORT: list[dict[str, Any]] = [
    {"created_at": {"order": "desc", "missing": "_last"}},
    {"id": {"order": "asc"}},
]


@dataclass(frozen=True)
class PersonCriterion:
    """One person that must appear in a case, optionally restricted to labels."""

    person_id: str
    labels: tuple[str, ...] = field(default_factory=tuple)


def _nested_person_clause(criterion: PersonCriterion) -> dict[str, Any]:
    inner: list[dict[str, Any]] = [{"term": {f"{PERSONS_PATH}.person_id": criterion.person_id}}]
    if criterion.labels:
        inner.append({"terms": {f"{PERSONS_PATH}.label": list(criterion.labels)}})
    return {"nested": {"path": PERSONS_PATH, "query": {"bool": {"filter": inner}}}}


def joint_persons_query(criteria: list[PersonCriterion], *, limit: int, offset: int) -> dict[str, Any]:
    # person id and label must hold inside the same nested entry
    return {
        "query": {"bool": {"filter": [_nested_person_clause(c) for c in criteria]}},
        "sort": CASE_LISTING_SORT,
        "from": offset,
        "size": limit,
        "_source": CASE_SUMMARY_FIELDS,
        "track_total_hits": True,
    }


def all_persons_flat_query(person_ids: list[str], *, limit: int, offset: int) -> dict[str, Any]:
    return {
        "query": {"bool": {"filter": [{"term": {"person_ids": pid}} for pid in person_ids]}},
        "sort": CASE_LISTING_SORT,
        "from": offset,
        "size": limit,
        "_source": CASE_SUMMARY_FIELDS,
        "track_total_hits": True,
    }


def person_cases_query(person_id: str, *, limit: int, offset: int) -> dict[str, Any]:
    return {
        "query": {"bool": {"filter": [{"term": {"person_ids": person_id}}]}},
        "sort": CASE_LISTING_SORT,
        "from": offset,
        "size": limit,
        "_source": CASE_SUMMARY_FIELDS,
        "track_total_hits": True,
    }


def involvement_summary_query(person_id: str, *, max_labels: int = 20) -> dict[str, Any]:
    distinct_cases = {"cases": {"reverse_nested": {}}}
    return {
        "size": 0,
        "track_total_hits": True,
        "query": {"bool": {"filter": [{"term": {"person_ids": person_id}}]}},
        "aggs": {
            "persons": {
                "nested": {"path": PERSONS_PATH},
                "aggs": {
                    "person": {
                        "filter": {"term": {f"{PERSONS_PATH}.person_id": person_id}},
                        "aggs": {
                            "by_label": {
                                "terms": {"field": f"{PERSONS_PATH}.label", "size": max_labels},
                                "aggs": {
                                    **distinct_cases,
                                    "by_status": {
                                        "terms": {"field": f"{PERSONS_PATH}.evidentiary_status", "size": 10},
                                        "aggs": distinct_cases,
                                    },
                                },
                            }
                        },
                    }
                },
            }
        },
    }


def repeat_involvements_query(label: str, *, min_count: int, size: int) -> dict[str, Any]:
    # min_doc_count counts nested entries, an upper bound on distinct cases
    return {
        "size": 0,
        "query": {
            "nested": {
                "path": PERSONS_PATH,
                "query": {"term": {f"{PERSONS_PATH}.label": label}},
            }
        },
        "aggs": {
            "persons": {
                "nested": {"path": PERSONS_PATH},
                "aggs": {
                    "labelled": {
                        "filter": {"term": {f"{PERSONS_PATH}.label": label}},
                        "aggs": {
                            "by_person": {
                                "terms": {
                                    "field": f"{PERSONS_PATH}.person_id",
                                    "min_doc_count": min_count,
                                    "size": size,
                                },
                                "aggs": {"cases": {"reverse_nested": {}}},
                            }
                        },
                    }
                },
            }
        },
    }
