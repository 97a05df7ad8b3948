from __future__ import annotations

from typing import Any

from casesearch.db.postgres import PostgresTxRunner
from casesearch.repositories._common import TenantRows, _validate_identifier, rows_to_dicts

PERSON_COLUMNS = ("id", "tenant_id", "first_name", "last_name", "email")


class InMemoryPersonsRepository:
    def __init__(self) -> None:
        self._rows = TenantRows(PERSON_COLUMNS)

    def upsert(self, *, item: dict[str, Any]) -> dict[str, Any]:
        return self._rows.upsert(item)

    def delete(self, *, tenant_id: str, person_id: str) -> bool:
        return self._rows.delete(tenant_id, person_id)

    def get(self, *, tenant_id: str, person_id: str) -> dict[str, Any] | None:
        return self._rows.get(tenant_id, person_id)


class PostgresPersonsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "persons") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def get(self, *, tenant_id: str, person_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT id, organization_id, first_name, last_name, email
            FROM {self._table_name}
            WHERE organization_id = %s AND id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, person_id))
                row = cur.fetchone()
            return None if row is None else rows_to_dicts(PERSON_COLUMNS, [row])[0]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
