from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from casesearch.errors import RelationalStoreUnavailable
from casesearch.relational import RelationalStore

logger = logging.getLogger(__name__)

# (document field, labels that feed it or None for every label, only active entries)
PERSON_LABEL_ARRAYS: tuple[tuple[str, frozenset[str] | None, bool], ...] = (
    ("person_ids", None, False),
    ("subject_person_ids", frozenset({"SUBJECT"}), False),
    ("witness_person_ids", frozenset({"WITNESS"}), False),
    ("reporter_person_ids", frozenset({"REPORTER"}), False),
    ("investigator_person_ids", frozenset({"ASSIGNED_INVESTIGATOR"}), False),
    ("active_person_ids", None, True),
)

RECORD_PERSON_LABEL_ARRAYS: tuple[tuple[str, frozenset[str] | None, bool], ...] = (
    ("person_ids", None, False),
    ("reporter_person_ids", frozenset({"REPORTER"}), False),
    ("mentioned_person_ids", frozenset({"SUBJECT_MENTIONED", "WITNESS_MENTIONED"}), False),
)


def _sorted_unique(values: Iterable[Any]) -> list[str]:
    return sorted({str(v) for v in values if v})


def _person_arrays(
    persons: list[dict[str, Any]],
    rules: tuple[tuple[str, frozenset[str] | None, bool], ...],
) -> dict[str, list[str]]:
    out: dict[str, list[str]] = {}
    for field, labels, active_only in rules:
        out[field] = _sorted_unique(
            p["person_id"]
            for p in persons
            if (labels is None or p.get("label") in labels) and (not active_only or p.get("is_active", True))
        )
    return out


def derive_flattened_fields(associations: dict[str, list[dict[str, Any]]]) -> dict[str, list[str]]:
    """Flattened id arrays of a case document, computed only from its nested lists."""
    out = _person_arrays(associations.get("persons") or [], PERSON_LABEL_ARRAYS)
    out["record_ids"] = _sorted_unique(r["record_id"] for r in associations.get("records") or [])
    out["linked_case_ids"] = _sorted_unique(c["case_id"] for c in associations.get("linked_cases") or [])
    return out


def derive_record_flattened_fields(associations: dict[str, list[dict[str, Any]]]) -> dict[str, list[str]]:
    out = _person_arrays(associations.get("persons") or [], RECORD_PERSON_LABEL_ARRAYS)
    out["linked_case_ids"] = _sorted_unique(c["case_id"] for c in associations.get("cases") or [])
    return out


def select_assignee(persons: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Active ASSIGNED_INVESTIGATOR with the latest started_at, then created_at, then association id."""
    candidates = [p for p in persons if p.get("label") == "ASSIGNED_INVESTIGATOR" and p.get("is_active")]
    if not candidates:
        return None
    return max(
        candidates,
        key=lambda p: (p.get("started_at") or "", p.get("created_at") or "", str(p.get("association_id"))),
    )


def _entry_order(entry: dict[str, Any]) -> tuple[str, str]:
    return (str(entry.get("created_at") or ""), str(entry.get("association_id")))


def _display_name(person: dict[str, Any] | None) -> str | None:
    if person is None:
        return None
    name = f"{person.get('first_name') or ''} {person.get('last_name') or ''}".strip()
    return name or None


class _BuilderBase:
    entity_type = ""

    def __init__(self, store: RelationalStore) -> None:
        self._store = store

    def _resolve(
        self,
        *,
        tenant_id: str,
        owner_id: str,
        row: dict[str, Any],
        lookup: Callable[[], dict[str, Any] | None],
    ) -> tuple[bool, dict[str, Any] | None]:
        """Returns (keep_entry, related_row); transient store failures propagate."""
        try:
            return True, lookup()
        except RelationalStoreUnavailable:
            raise
        except Exception:
            logger.warning(
                "association_lookup_failed tenant=%s entity=%s owner=%s association=%s",
                tenant_id,
                self.entity_type,
                owner_id,
                row.get("id"),
                exc_info=True,
            )
            return False, None


class CaseDocumentBuilder(_BuilderBase):
    """Builds the composite case document from authoritative relational state."""

    entity_type = "cases"

    def build(self, tenant_id: str, case_id: str) -> dict[str, Any] | None:
        case = self._store.cases.get(tenant_id=tenant_id, case_id=case_id)
        if case is None:
            return None
        associations = self.build_associations(tenant_id, case_id)
        assignee = select_assignee(associations["persons"])
        document: dict[str, Any] = {
            "id": case_id,
            "tenant_id": tenant_id,
            "reference_number": case.get("reference_number"),
            "status": case.get("status"),
            "severity": case.get("severity") or "MEDIUM",
            "case_type": case.get("case_type"),
            "category_id": case.get("primary_category_id"),
            "pipeline_stage": case.get("pipeline_stage"),
            "outcome": case.get("outcome"),
            "details": case.get("details"),
            "summary": case.get("summary"),
            "ai_summary": case.get("ai_summary"),
            "reporter_type": case.get("reporter_type"),
            "source_channel": case.get("source_channel"),
            "location": {
                "city": case.get("location_city"),
                "state": case.get("location_state"),
                "country": case.get("location_country"),
            },
            "intake_timestamp": case.get("intake_timestamp"),
            "released_at": case.get("released_at"),
            "created_at": case.get("created_at"),
            "updated_at": case.get("updated_at"),
            "associations": associations,
            "assignee_id": assignee["person_id"] if assignee else None,
            "assignee_name": assignee["person_name"] if assignee else None,
        }
        document.update(derive_flattened_fields(associations))
        return document

    def build_associations(self, tenant_id: str, case_id: str) -> dict[str, list[dict[str, Any]]]:
        assoc = self._store.associations
        person_rows = assoc.person_case_for_case(tenant_id=tenant_id, case_id=case_id)
        record_rows = assoc.record_case_for_case(tenant_id=tenant_id, case_id=case_id)
        case_rows = assoc.case_case_for_case(tenant_id=tenant_id, case_id=case_id)
        return {
            "persons": self._persons(tenant_id, case_id, person_rows),
            "records": self._records(tenant_id, case_id, record_rows),
            "linked_cases": self._linked(tenant_id, case_id, case_rows),
        }

    def _persons(self, tenant_id: str, case_id: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for row in rows:
            keep, person = self._resolve(
                tenant_id=tenant_id,
                owner_id=case_id,
                row=row,
                lookup=lambda pid=row["person_id"]: self._store.persons.get(tenant_id=tenant_id, person_id=pid),
            )
            if not keep:
                continue
            out.append(
                {
                    "association_id": str(row["id"]),
                    "person_id": str(row["person_id"]),
                    "label": row["label"],
                    "evidentiary_status": row.get("evidentiary_status"),
                    "is_active": row.get("ended_at") is None,
                    "started_at": row.get("started_at"),
                    "ended_at": row.get("ended_at"),
                    "created_at": row.get("created_at"),
                    "person_name": _display_name(person),
                    "person_email": person.get("email") if person else None,
                }
            )
        return sorted(out, key=_entry_order)

    def _records(self, tenant_id: str, case_id: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for row in rows:
            keep, record = self._resolve(
                tenant_id=tenant_id,
                owner_id=case_id,
                row=row,
                lookup=lambda rid=row["record_id"]: self._store.records.get(tenant_id=tenant_id, record_id=rid),
            )
            if not keep:
                continue
            out.append(
                {
                    "association_id": str(row["id"]),
                    "record_id": str(row["record_id"]),
                    "association_type": row.get("association_type"),
                    "reference_number": record.get("reference_number") if record else None,
                    "record_type": record.get("type") if record else None,
                    "created_at": row.get("created_at"),
                }
            )
        return sorted(out, key=_entry_order)

    def _linked(self, tenant_id: str, case_id: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for row in rows:
            outgoing = row["source_case_id"] == case_id
            other_id = str(row["target_case_id"] if outgoing else row["source_case_id"])
            keep, other = self._resolve(
                tenant_id=tenant_id,
                owner_id=case_id,
                row=row,
                lookup=lambda oid=other_id: self._store.cases.get(tenant_id=tenant_id, case_id=oid),
            )
            if not keep:
                continue
            out.append(
                {
                    "association_id": str(row["id"]),
                    "case_id": other_id,
                    "label": row["label"],
                    "direction": "outgoing" if outgoing else "incoming",
                    "reference_number": other.get("reference_number") if other else None,
                    "created_at": row.get("created_at"),
                }
            )
        return sorted(out, key=_entry_order)


class RecordDocumentBuilder(_BuilderBase):
    entity_type = "records"

    def build(self, tenant_id: str, record_id: str) -> dict[str, Any] | None:
        record = self._store.records.get(tenant_id=tenant_id, record_id=record_id)
        if record is None:
            return None
        assoc = self._store.associations
        associations = {
            "persons": self._persons(
                tenant_id, record_id, assoc.person_record_for_record(tenant_id=tenant_id, record_id=record_id)
            ),
            "cases": self._cases(
                tenant_id, record_id, assoc.record_case_for_record(tenant_id=tenant_id, record_id=record_id)
            ),
        }
        document: dict[str, Any] = {
            "id": record_id,
            "tenant_id": tenant_id,
            "reference_number": record.get("reference_number"),
            "record_type": record.get("type"),
            "status": record.get("status"),
            "severity": record.get("severity"),
            "details": record.get("details"),
            "summary": record.get("summary"),
            "created_at": record.get("created_at"),
            "associations": associations,
        }
        document.update(derive_record_flattened_fields(associations))
        return document

    def _persons(self, tenant_id: str, record_id: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for row in rows:
            keep, person = self._resolve(
                tenant_id=tenant_id,
                owner_id=record_id,
                row=row,
                lookup=lambda pid=row["person_id"]: self._store.persons.get(tenant_id=tenant_id, person_id=pid),
            )
            if not keep:
                continue
            out.append(
                {
                    "association_id": str(row["id"]),
                    "person_id": str(row["person_id"]),
                    "label": row["label"],
                    "created_at": row.get("created_at"),
                    "person_name": _display_name(person),
                    "person_email": person.get("email") if person else None,
                }
            )
        return sorted(out, key=_entry_order)

    def _cases(self, tenant_id: str, record_id: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for row in rows:
            keep, case = self._resolve(
                tenant_id=tenant_id,
                owner_id=record_id,
                row=row,
                lookup=lambda cid=row["case_id"]: self._store.cases.get(tenant_id=tenant_id, case_id=cid),
            )
            if not keep:
                continue
            out.append(
                {
                    "association_id": str(row["id"]),
                    "case_id": str(row["case_id"]),
                    "association_type": row.get("association_type"),
                    "reference_number": case.get("reference_number") if case else None,
                    "created_at": row.get("created_at"),
                }
            )
        return sorted(out, key=_entry_order)


DocumentBuilder = CaseDocumentBuilder | RecordDocumentBuilder


def create_builders(store: RelationalStore) -> dict[str, DocumentBuilder]:
    return {
        CaseDocumentBuilder.entity_type: CaseDocumentBuilder(store),
        RecordDocumentBuilder.entity_type: RecordDocumentBuilder(store),
    }
