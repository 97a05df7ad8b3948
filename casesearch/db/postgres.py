from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from casesearch.errors import RelationalStoreUnavailable

logger = logging.getLogger(__name__)


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for CSI_RELATIONAL_BACKEND=postgres; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run a callback in one read-committed transaction bound to a tenant.

    The tenant is published as ``app.current_tenant`` so row-level security
    policies apply on top of the explicit ``organization_id`` filters.
    """

    def __init__(self, dsn: str, *, timeout_s: float = 5.0) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self._timeout_s = max(0.1, float(timeout_s))

    def run_in_tx(
        self,
        *,
        tenant_id: str,
        fn: Callable[[Any], Any],
    ) -> Any:
        if not tenant_id.strip():
            raise ValueError("tenant_id must not be empty")

        psycopg = _import_psycopg()
        try:
            with psycopg.connect(self._dsn, connect_timeout=max(1, int(self._timeout_s))) as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT set_config('app.current_tenant', %s, true)", (tenant_id,))
                    cur.execute(
                        "SELECT set_config('statement_timeout', %s, true)",
                        (str(int(self._timeout_s * 1000)),),
                    )
                result = fn(conn)
                conn.commit()
                return result
        except psycopg.OperationalError as exc:
            logger.warning("postgres_unavailable tenant=%s error=%s", tenant_id, exc)
            raise RelationalStoreUnavailable(str(exc)) from exc
