from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def iso_or_none(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def rows_to_dicts(
    columns: Sequence[str],
    rows: Iterable[Sequence[Any]],
    *,
    timestamp_columns: frozenset[str] = frozenset(),
) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for row in rows:
        item = dict(zip(columns, row))
        for col in timestamp_columns:
            if col in item:
                item[col] = iso_or_none(item[col])
        out.append(item)
    return out


def page_ids(ids: Iterable[str], *, after: str | None, limit: int) -> list[str]:
    ordered = sorted(ids)
    if after is not None:
        ordered = [x for x in ordered if x > after]
    return ordered[: max(1, int(limit))]


class TenantRows:
    """Process-local rows keyed by (tenant_id, id) so ids may repeat across tenants."""

    def __init__(self, columns: Sequence[str], items: dict[tuple[str, str], dict[str, Any]] | None = None) -> None:
        self._columns = tuple(columns)
        self._items = items if items is not None else {}

    def upsert(self, item: dict[str, Any]) -> dict[str, Any]:
        row = {col: item.get(col) for col in self._columns}
        if not row.get("tenant_id") or not row.get("id"):
            raise ValueError("tenant_id and id are required")
        self._items[(str(row["tenant_id"]), str(row["id"]))] = row
        return dict(row)

    def delete(self, tenant_id: str, row_id: str) -> bool:
        return self._items.pop((tenant_id, row_id), None) is not None

    def get(self, tenant_id: str, row_id: str) -> dict[str, Any] | None:
        row = self._items.get((tenant_id, row_id))
        return None if row is None else dict(row)

    def ids(self, tenant_id: str) -> list[str]:
        return [row_id for (owner, row_id) in self._items if owner == tenant_id]
