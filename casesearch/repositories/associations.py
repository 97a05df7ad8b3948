from __future__ import annotations

import threading
from typing import Any

from casesearch.db.postgres import PostgresTxRunner
from casesearch.repositories._common import _validate_identifier, rows_to_dicts

PERSON_CASE_COLUMNS = (
    "id",
    "tenant_id",
    "person_id",
    "case_id",
    "label",
    "evidentiary_status",
    "started_at",
    "ended_at",
    "created_at",
)
RECORD_CASE_COLUMNS = ("id", "tenant_id", "record_id", "case_id", "association_type", "created_at")
CASE_CASE_COLUMNS = ("id", "tenant_id", "source_case_id", "target_case_id", "label", "created_at")
PERSON_RECORD_COLUMNS = ("id", "tenant_id", "person_id", "record_id", "label", "created_at")

ASSOCIATION_COLUMNS: dict[str, tuple[str, ...]] = {
    "person-case": PERSON_CASE_COLUMNS,
    "record-case": RECORD_CASE_COLUMNS,
    "case-case": CASE_CASE_COLUMNS,
    "person-record": PERSON_RECORD_COLUMNS,
}
_TIMESTAMPS = frozenset({"started_at", "ended_at", "created_at"})


class InMemoryAssociationsRepository:
    """All four association families in one process-local store.

    Rows are plain dicts keyed by (tenant_id, association id); every read filters by tenant.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rows: dict[str, dict[tuple[str, str], dict[str, Any]]] = {family: {} for family in ASSOCIATION_COLUMNS}

    def _family(self, family: str) -> dict[tuple[str, str], dict[str, Any]]:
        if family not in self._rows:
            raise ValueError(f"unknown association family: {family}")
        return self._rows[family]

    def add(self, family: str, *, item: dict[str, Any]) -> dict[str, Any]:
        columns = ASSOCIATION_COLUMNS.get(family)
        if columns is None:
            raise ValueError(f"unknown association family: {family}")
        row = {col: item.get(col) for col in columns}
        with self._lock:
            self._family(family)[(str(row["tenant_id"]), str(row["id"]))] = row
        return dict(row)

    def update(self, family: str, *, tenant_id: str, association_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            row = self._family(family).get((tenant_id, association_id))
            if row is None:
                raise KeyError(association_id)
            for key, value in changes.items():
                if key in ("id", "tenant_id") or key not in row:
                    continue
                row[key] = value
            return dict(row)

    def remove(self, family: str, *, tenant_id: str, association_id: str) -> bool:
        with self._lock:
            rows = self._family(family)
            row = rows.get((tenant_id, association_id))
            if row is None:
                return False
            del rows[(tenant_id, association_id)]
            return True

    def _select(self, family: str, tenant_id: str, **match: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                dict(row)
                for row in self._family(family).values()
                if row.get("tenant_id") == tenant_id and all(row.get(k) == v for k, v in match.items())
            ]
        rows.sort(key=lambda r: (str(r.get("created_at") or ""), str(r.get("id"))))
        return rows

    def person_case_for_case(self, *, tenant_id: str, case_id: str) -> list[dict[str, Any]]:
        return self._select("person-case", tenant_id, case_id=case_id)

    def record_case_for_case(self, *, tenant_id: str, case_id: str) -> list[dict[str, Any]]:
        return self._select("record-case", tenant_id, case_id=case_id)

    def record_case_for_record(self, *, tenant_id: str, record_id: str) -> list[dict[str, Any]]:
        return self._select("record-case", tenant_id, record_id=record_id)

    def case_case_for_case(self, *, tenant_id: str, case_id: str) -> list[dict[str, Any]]:
        outgoing = self._select("case-case", tenant_id, source_case_id=case_id)
        incoming = self._select("case-case", tenant_id, target_case_id=case_id)
        seen = {row["id"] for row in outgoing}
        return outgoing + [row for row in incoming if row["id"] not in seen]

    def person_record_for_record(self, *, tenant_id: str, record_id: str) -> list[dict[str, Any]]:
        return self._select("person-record", tenant_id, record_id=record_id)

    def count_person_records(
        self,
        *,
        tenant_id: str,
        person_id: str,
        label: str,
        exclude_record_id: str | None = None,
    ) -> int:
        rows = self._select("person-record", tenant_id, person_id=person_id, label=label)
        return len({row["record_id"] for row in rows if row["record_id"] != exclude_record_id})


class PostgresAssociationsRepository:
    """Reads association rows from the relational schema's association tables."""

    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        person_case_table: str = "person_case_associations",
        record_case_table: str = "riu_case_associations",
        case_case_table: str = "case_case_associations",
        person_record_table: str = "person_riu_associations",
    ) -> None:
        self._tx_runner = tx_runner
        self._person_case_table = _validate_identifier(person_case_table)
        self._record_case_table = _validate_identifier(record_case_table)
        self._case_case_table = _validate_identifier(case_case_table)
        self._person_record_table = _validate_identifier(person_record_table)

    def _fetch(
        self,
        *,
        tenant_id: str,
        sql: str,
        params: tuple[Any, ...],
        columns: tuple[str, ...],
    ) -> list[dict[str, Any]]:
        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            return rows_to_dicts(columns, rows, timestamp_columns=_TIMESTAMPS)

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def person_case_for_case(self, *, tenant_id: str, case_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT id, organization_id, person_id, case_id, label::text, evidentiary_status::text,
                   started_at, ended_at, created_at
            FROM {self._person_case_table}
            WHERE organization_id = %s AND case_id = %s
            ORDER BY created_at ASC, id ASC
        """
        return self._fetch(tenant_id=tenant_id, sql=sql, params=(tenant_id, case_id), columns=PERSON_CASE_COLUMNS)

    def record_case_for_case(self, *, tenant_id: str, case_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT id, organization_id, riu_id, case_id, association_type::text, created_at
            FROM {self._record_case_table}
            WHERE organization_id = %s AND case_id = %s
            ORDER BY created_at ASC, id ASC
        """
        return self._fetch(tenant_id=tenant_id, sql=sql, params=(tenant_id, case_id), columns=RECORD_CASE_COLUMNS)

    def record_case_for_record(self, *, tenant_id: str, record_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT id, organization_id, riu_id, case_id, association_type::text, created_at
            FROM {self._record_case_table}
            WHERE organization_id = %s AND riu_id = %s
            ORDER BY created_at ASC, id ASC
        """
        return self._fetch(tenant_id=tenant_id, sql=sql, params=(tenant_id, record_id), columns=RECORD_CASE_COLUMNS)

    def case_case_for_case(self, *, tenant_id: str, case_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT id, organization_id, source_case_id, target_case_id, label::text, created_at
            FROM {self._case_case_table}
            WHERE organization_id = %s AND (source_case_id = %s OR target_case_id = %s)
            ORDER BY created_at ASC, id ASC
        """
        return self._fetch(
            tenant_id=tenant_id,
            sql=sql,
            params=(tenant_id, case_id, case_id),
            columns=CASE_CASE_COLUMNS,
        )

    def person_record_for_record(self, *, tenant_id: str, record_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT id, organization_id, person_id, riu_id, label::text, created_at
            FROM {self._person_record_table}
            WHERE organization_id = %s AND riu_id = %s
            ORDER BY created_at ASC, id ASC
        """
        return self._fetch(
            tenant_id=tenant_id,
            sql=sql,
            params=(tenant_id, record_id),
            columns=PERSON_RECORD_COLUMNS,
        )

    def count_person_records(
        self,
        *,
        tenant_id: str,
        person_id: str,
        label: str,
        exclude_record_id: str | None = None,
    ) -> int:
        sql = f"""
            SELECT COUNT(DISTINCT riu_id)
            FROM {self._person_record_table}
            WHERE organization_id = %s AND person_id = %s AND label::text = %s
              AND (%s::text IS NULL OR riu_id <> %s)
        """

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, person_id, label, exclude_record_id, exclude_record_id))
                row = cur.fetchone()
            return int(row[0]) if row is not None else 0

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
