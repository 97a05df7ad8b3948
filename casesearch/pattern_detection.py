from __future__ import annotations

import logging
from typing import Any

from casesearch.index_schema import alias_name, validate_tenant_id
from casesearch.labels import PERSON_CASE_LABELS
from casesearch.pattern_queries import (
    PersonCriterion,
    all_persons_flat_query,
    involvement_summary_query,
    joint_persons_query,
    person_cases_query,
    repeat_involvements_query,
)
from casesearch.relational import RelationalStore

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def _empty_page(limit: int, offset: int) -> dict[str, Any]:
    return {"total": 0, "items": [], "limit": limit, "offset": offset}


def _check_page(limit: int, offset: int) -> None:
    if not 1 <= int(limit) <= MAX_PAGE_SIZE:
        raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if int(offset) < 0:
        raise ValueError("offset must be >= 0")


def _case_item(hit: dict[str, Any]) -> dict[str, Any]:
    src = hit.get("_source") or {}
    return {
        "case_id": str(src.get("id") or hit.get("_id")),
        "reference_number": src.get("reference_number"),
        "status": src.get("status"),
        "severity": src.get("severity"),
        "case_type": src.get("case_type"),
        "created_at": src.get("created_at"),
        "assignee_id": src.get("assignee_id"),
        "assignee_name": src.get("assignee_name"),
    }


def _total(resp: dict[str, Any]) -> int:
    total = (resp.get("hits") or {}).get("total") or 0
    if isinstance(total, dict):
        return int(total.get("value", 0))
    return int(total)


def reporter_badge_text(count: int) -> str | None:
    if count <= 0:
        return None
    return "1 previous report" if count == 1 else f"{count} previous reports"


class PatternDetectionService:
    """Cross-entity pattern queries over a tenant's case index.

    Index-backed methods degrade to an empty result when the engine fails; the
    failure is logged. Relational lookups (reporter history, related cases) do
    not touch the index at all.
    """

    def __init__(self, *, engine: Any, store: RelationalStore, index_prefix: str = "org") -> None:
        self.engine = engine
        self.store = store
        self.index_prefix = index_prefix

    def _cases_alias(self, tenant_id: str) -> str:
        return alias_name(validate_tenant_id(tenant_id), "cases", prefix=self.index_prefix)

    def _search(self, *, tenant_id: str, body: dict[str, Any], op: str) -> dict[str, Any] | None:
        index = self._cases_alias(tenant_id)
        try:
            return self.engine.search(index, body)
        except Exception:
            logger.error("pattern_query_failed op=%s tenant=%s index=%s", op, tenant_id, index, exc_info=True)
            return None

    def _case_page(self, *, tenant_id: str, body: dict[str, Any], op: str, limit: int, offset: int) -> dict[str, Any]:
        resp = self._search(tenant_id=tenant_id, body=body, op=op)
        if resp is None:
            return _empty_page(limit, offset)
        hits = (resp.get("hits") or {}).get("hits") or []
        return {
            "total": _total(resp),
            "items": [_case_item(h) for h in hits],
            "limit": limit,
            "offset": offset,
        }

    def find_cases_with_persons(
        self,
        tenant_id: str,
        criteria: list[PersonCriterion],
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """Cases where every criterion is met by a single association entry."""
        _check_page(limit, offset)
        if not criteria:
            raise ValueError("at least one person criterion is required")
        for criterion in criteria:
            unknown = set(criterion.labels) - PERSON_CASE_LABELS
            if unknown:
                raise ValueError(f"unknown person-case labels: {sorted(unknown)}")
        body = joint_persons_query(list(criteria), limit=limit, offset=offset)
        return self._case_page(tenant_id=tenant_id, body=body, op="joint_persons", limit=limit, offset=offset)

    def find_cases_with_all_persons(
        self,
        tenant_id: str,
        person_ids: list[str],
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """Cases where each person appears in some role; labels are not correlated."""
        _check_page(limit, offset)
        if not person_ids:
            raise ValueError("at least one person id is required")
        body = all_persons_flat_query(list(person_ids), limit=limit, offset=offset)
        return self._case_page(tenant_id=tenant_id, body=body, op="all_persons", limit=limit, offset=offset)

    def find_cases_by_person(
        self,
        tenant_id: str,
        person_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        _check_page(limit, offset)
        body = person_cases_query(person_id, limit=limit, offset=offset)
        return self._case_page(tenant_id=tenant_id, body=body, op="person_cases", limit=limit, offset=offset)

    def person_involvement_summary(self, tenant_id: str, person_id: str) -> dict[str, Any]:
        summary: dict[str, Any] = {"person_id": person_id, "total_cases": 0, "by_label": []}
        resp = self._search(tenant_id=tenant_id, body=involvement_summary_query(person_id), op="involvement_summary")
        if resp is None:
            return summary
        summary["total_cases"] = _total(resp)
        person = ((resp.get("aggregations") or {}).get("persons") or {}).get("person") or {}
        for bucket in (person.get("by_label") or {}).get("buckets") or []:
            statuses = [
                {"status": sb["key"], "case_count": int(sb["cases"]["doc_count"])}
                for sb in (bucket.get("by_status") or {}).get("buckets") or []
            ]
            summary["by_label"].append(
                {
                    "label": bucket["key"],
                    "case_count": int(bucket["cases"]["doc_count"]),
                    "by_status": sorted(statuses, key=lambda s: str(s["status"])),
                }
            )
        summary["by_label"].sort(key=lambda b: (-b["case_count"], str(b["label"])))
        return summary

    def find_repeat_involvements(
        self,
        tenant_id: str,
        label: str,
        *,
        min_count: int = 2,
        size: int = 100,
    ) -> list[dict[str, Any]]:
        """Persons holding ``label`` in at least ``min_count`` distinct cases."""
        if label not in PERSON_CASE_LABELS:
            raise ValueError(f"unknown person-case label: {label}")
        threshold = max(1, int(min_count))
        body = repeat_involvements_query(label, min_count=threshold, size=max(1, int(size)))
        resp = self._search(tenant_id=tenant_id, body=body, op="repeat_involvements")
        if resp is None:
            return []
        aggs = (((resp.get("aggregations") or {}).get("persons") or {}).get("labelled") or {}).get("by_person") or {}
        out = [
            {
                "person_id": str(bucket["key"]),
                "label": label,
                "case_count": int(bucket["cases"]["doc_count"]),
            }
            for bucket in aggs.get("buckets") or []
            if int(bucket["cases"]["doc_count"]) >= threshold
        ]
        out.sort(key=lambda x: (-x["case_count"], x["person_id"]))
        return out

    def reporter_history(
        self,
        tenant_id: str,
        person_id: str,
        *,
        exclude_record_id: str | None = None,
    ) -> dict[str, Any]:
        try:
            count = self.store.associations.count_person_records(
                tenant_id=tenant_id,
                person_id=person_id,
                label="REPORTER",
                exclude_record_id=exclude_record_id,
            )
        except Exception:
            logger.error("reporter_history_failed tenant=%s person=%s", tenant_id, person_id, exc_info=True)
            count = 0
        return {
            "person_id": person_id,
            "previous_report_count": int(count),
            "show_badge": count > 0,
            "badge_text": reporter_badge_text(int(count)),
        }

    def related_cases(self, tenant_id: str, case_id: str) -> list[dict[str, Any]]:
        try:
            rows = self.store.associations.case_case_for_case(tenant_id=tenant_id, case_id=case_id)
            out: list[dict[str, Any]] = []
            for row in rows:
                outgoing = row["source_case_id"] == case_id
                other_id = str(row["target_case_id"] if outgoing else row["source_case_id"])
                other = self.store.cases.get(tenant_id=tenant_id, case_id=other_id)
                out.append(
                    {
                        "association_id": str(row["id"]),
                        "case_id": other_id,
                        "label": row["label"],
                        "direction": "outgoing" if outgoing else "incoming",
                        "reference_number": other.get("reference_number") if other else None,
                        "status": other.get("status") if other else None,
                        "created_at": row.get("created_at"),
                    }
                )
        except Exception:
            logger.error("related_cases_failed tenant=%s case=%s", tenant_id, case_id, exc_info=True)
            return []
        return sorted(out, key=lambda r: (str(r["created_at"] or ""), r["association_id"]))
