from __future__ import annotations

from typing import Any

from casesearch.db.postgres import PostgresTxRunner
from casesearch.repositories._common import TenantRows, _validate_identifier, page_ids, rows_to_dicts

CASE_COLUMNS = (
    "id",
    "tenant_id",
    "reference_number",
    "status",
    "severity",
    "case_type",
    "primary_category_id",
    "pipeline_stage",
    "outcome",
    "details",
    "summary",
    "ai_summary",
    "reporter_type",
    "source_channel",
    "location_city",
    "location_state",
    "location_country",
    "intake_timestamp",
    "released_at",
    "created_at",
    "updated_at",
)
_CASE_TIMESTAMPS = frozenset({"intake_timestamp", "released_at", "created_at", "updated_at"})


class InMemoryCasesRepository:
    def __init__(self) -> None:
        self._rows = TenantRows(CASE_COLUMNS)

    def upsert(self, *, item: dict[str, Any]) -> dict[str, Any]:
        return self._rows.upsert(item)

    def delete(self, *, tenant_id: str, case_id: str) -> bool:
        return self._rows.delete(tenant_id, case_id)

    def get(self, *, tenant_id: str, case_id: str) -> dict[str, Any] | None:
        return self._rows.get(tenant_id, case_id)

    def list_ids(self, *, tenant_id: str, after: str | None = None, limit: int = 500) -> list[str]:
        return page_ids(self._rows.ids(tenant_id), after=after, limit=limit)


class PostgresCasesRepository:
    """Read-only access to the ``cases`` table, always filtered by organization."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "cases") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def _select_list(self) -> str:
        cols = ["id", "organization_id AS tenant_id", *CASE_COLUMNS[2:]]
        return ", ".join(cols)

    def get(self, *, tenant_id: str, case_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {self._select_list()}
            FROM {self._table_name}
            WHERE organization_id = %s AND id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, case_id))
                row = cur.fetchone()
            if row is None:
                return None
            return rows_to_dicts(CASE_COLUMNS, [row], timestamp_columns=_CASE_TIMESTAMPS)[0]

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
