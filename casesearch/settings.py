from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _env_str(env: Mapping[str, str], name: str, *, default: str) -> str:
    return str(env.get(name, default)).strip() or default


@dataclass(frozen=True)
class IndexingSettings:
    queue_backend: str = "memory"
    queue_sqlite_path: str = ".runtime/csi_queue.sqlite3"
    queue_key_prefix: str = "csi"
    queue_name: str = "indexing"
    queue_lease_ms: int = 30000
    redis_dsn: str = ""
    search_backend: str = "memory"
    opensearch_url: str = "http://localhost:9200"
    opensearch_user: str = ""
    opensearch_password: str = ""
    opensearch_verify_certs: bool = True
    index_prefix: str = "org"
    relational_backend: str = "memory"
    postgres_dsn: str = ""
    search_timeout_s: float = 10.0
    relational_timeout_s: float = 5.0
    worker_max_attempts: int = 5
    worker_retry_backoff_base_ms: int = 1000
    worker_retry_backoff_max_ms: int = 30000
    worker_tenant_burst_limit: int = 1
    worker_max_messages_per_iteration: int = 20
    worker_poll_interval_ms: int = 200
    worker_concurrency: int = 1
    reindex_batch_size: int = 500
    staleness_target_ms: int = 5000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "IndexingSettings":
        env = os.environ if environ is None else environ
        base_ms = _env_int(env, "CSI_WORKER_RETRY_BACKOFF_BASE_MS", default=1000, minimum=0)
        return cls(
            queue_backend=_env_str(env, "CSI_QUEUE_BACKEND", default="memory").lower(),
            queue_sqlite_path=_env_str(env, "CSI_QUEUE_SQLITE_PATH", default=".runtime/csi_queue.sqlite3"),
            queue_key_prefix=_env_str(env, "CSI_QUEUE_KEY_PREFIX", default="csi"),
            queue_name=_env_str(env, "CSI_QUEUE_NAME", default="indexing"),
            queue_lease_ms=_env_int(env, "CSI_QUEUE_LEASE_MS", default=30000, minimum=1),
            redis_dsn=str(env.get("REDIS_DSN", "")).strip(),
            search_backend=_env_str(env, "CSI_SEARCH_BACKEND", default="memory").lower(),
            opensearch_url=_env_str(env, "OPENSEARCH_URL", default="http://localhost:9200"),
            opensearch_user=str(env.get("OPENSEARCH_USER", "")).strip(),
            opensearch_password=str(env.get("OPENSEARCH_PASSWORD", "")),
            opensearch_verify_certs=_env_bool(env, "OPENSEARCH_VERIFY_CERTS", default=True),
            index_prefix=_env_str(env, "CSI_INDEX_PREFIX", default="org").lower(),
            relational_backend=_env_str(env, "CSI_RELATIONAL_BACKEND", default="memory").lower(),
            postgres_dsn=str(env.get("POSTGRES_DSN", "")).strip(),
            search_timeout_s=_env_float(env, "CSI_SEARCH_TIMEOUT_S", default=10.0, minimum=0.1),
            relational_timeout_s=_env_float(env, "CSI_RELATIONAL_TIMEOUT_S", default=5.0, minimum=0.1),
            worker_max_attempts=_env_int(env, "CSI_WORKER_MAX_ATTEMPTS", default=5, minimum=1),
            worker_retry_backoff_base_ms=base_ms,
            worker_retry_backoff_max_ms=_env_int(
                env, "CSI_WORKER_RETRY_BACKOFF_MAX_MS", default=30000, minimum=base_ms
            ),
            worker_tenant_burst_limit=_env_int(env, "CSI_WORKER_TENANT_BURST_LIMIT", default=1, minimum=1),
            worker_max_messages_per_iteration=_env_int(
                env, "CSI_WORKER_MAX_MESSAGES_PER_ITERATION", default=20, minimum=1
            ),
            worker_poll_interval_ms=_env_int(env, "CSI_WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
            worker_concurrency=_env_int(env, "CSI_WORKER_CONCURRENCY", default=1, minimum=1),
            reindex_batch_size=_env_int(env, "CSI_REINDEX_BATCH_SIZE", default=500, minimum=1),
            staleness_target_ms=_env_int(env, "CSI_STALENESS_TARGET_MS", default=5000, minimum=1),
        )
