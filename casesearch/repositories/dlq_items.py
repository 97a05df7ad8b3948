from __future__ import annotations

import json
import threading
from typing import Any

from casesearch.db.postgres import PostgresTxRunner
from casesearch.repositories._common import _validate_identifier

DLQ_STATUSES = frozenset({"open", "requeued", "discarded"})


class InMemoryDlqItemsRepository:
    """Dead-lettered indexing jobs, one dict per item keyed by dlq_id."""

    def __init__(self, items: dict[str, dict[str, Any]] | None = None) -> None:
        self._items = items if items is not None else {}
        self._lock = threading.RLock()

    def upsert(self, *, item: dict[str, Any]) -> dict[str, Any]:
        row = dict(item)
        if row.get("status", "open") not in DLQ_STATUSES:
            raise ValueError(f"invalid dlq status: {row.get('status')}")
        with self._lock:
            self._items[str(row["dlq_id"])] = row
        return dict(row)

    def get(self, *, tenant_id: str, dlq_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._items.get(dlq_id)
        if row is None or row.get("tenant_id") != tenant_id:
            return None
        return dict(row)

    def list(self, *, tenant_id: str, status: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                dict(x)
                for x in self._items.values()
                if x.get("tenant_id") == tenant_id and (status is None or x.get("status") == status)
            ]
        rows.sort(key=lambda x: (str(x.get("created_at", "")), str(x.get("dlq_id", ""))))
        return rows

    def reset(self) -> None:
        with self._lock:
            self._items.clear()


class PostgresDlqItemsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "indexing_dlq_items") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def upsert(self, *, item: dict[str, Any]) -> dict[str, Any]:
        row = dict(item)
        tenant_id = str(row.get("tenant_id") or "")
        status = str(row.get("status") or "open")
        if status not in DLQ_STATUSES:
            raise ValueError(f"invalid dlq status: {status}")
        sql = f"""
            INSERT INTO {self._table_name} (
                dlq_id, tenant_id, status, created_at, payload
            ) VALUES (%s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(dlq_id) DO UPDATE
            SET status = EXCLUDED.status,
                payload = EXCLUDED.payload
            WHERE {self._table_name}.tenant_id = EXCLUDED.tenant_id
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        row["dlq_id"],
                        tenant_id,
                        status,
                        row.get("created_at"),
                        json.dumps(row, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return row

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def get(self, *, tenant_id: str, dlq_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tenant_id = %s AND dlq_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, dlq_id))
                row = cur.fetchone()
            if row is None:
                return None
            payload = row[0]
            return payload if isinstance(payload, dict) else None

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list(self, *, tenant_id: str, status: str | None = None) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tenant_id = %s AND (%s::text IS NULL OR status = %s)
            ORDER BY created_at ASC, dlq_id ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, status, status))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
