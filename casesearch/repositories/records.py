from __future__ import annotations

from typing import Any

from casesearch.db.postgres import PostgresTxRunner
from casesearch.repositories._common import TenantRows, _validate_identifier, page_ids, rows_to_dicts

RECORD_COLUMNS = (
    "id",
    "tenant_id",
    "reference_number",
    "type",
    "status",
    "severity",
    "details",
    "summary",
    "created_at",
)


class InMemoryRecordsRepository:
    """Intake records (risk intelligence units)."""

    def __init__(self) -> None:
        self._rows = TenantRows(RECORD_COLUMNS)

    def upsert(self, *, item: dict[str, Any]) -> dict[str, Any]:
        return self._rows.upsert(item)

    def delete(self, *, tenant_id: str, record_id: str) -> bool:
        return self._rows.delete(tenant_id, record_id)

    def get(self, *, tenant_id: str, record_id: str) -> dict[str, Any] | None:
        return self._rows.get(tenant_id, record_id)

    def list_ids(self, *, tenant_id: str, after: str | None = None, limit: int = 500) -> list[str]:
        return page_ids(self._rows.ids(tenant_id), after=after, limit=limit)


class PostgresRecordsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "risk_intelligence_units") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def get(self, *, tenant_id: str, record_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT id, organization_id, reference_number, type, status, severity, details, summary, created_at
            FROM {self._table_name}
            WHERE organization_id = %s AND id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, record_id))
                row = cur.fetchone()
            if row is None:
                return None
            return rows_to_dicts(RECORD_COLUMNS, [row], timestamp_columns=frozenset({"created_at"}))[0]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list_ids(self, *, tenant_id: str, after: str | None = None, limit: int = 500) -> list[str]:
        sql = f"""
            SELECT id
            FROM {self._table_name}
            WHERE organization_id = %s AND (%s::text IS NULL OR id > %s)
            ORDER BY id ASC
            LIMIT %s
        """

        def _op(conn: Any) -> list[str]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, after, after, max(1, int(limit))))
                rows = cur.fetchall() or []
            return [str(row[0]) for row in rows]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
