from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from casesearch.runtime_profile import true_stack_required
from casesearch.settings import IndexingSettings

logger = logging.getLogger(__name__)

DEFAULT_LEASE_MS = 30000


@dataclass
class QueueMessage:
    message_id: str
    tenant_id: str
    queue_name: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempt: int = 0
    available_at: str | None = None


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _due_iso(delay_ms: int) -> str:
    return (datetime.now(UTC) + timedelta(milliseconds=max(0, int(delay_ms)))).isoformat()


def _is_due(available_at: str | None) -> bool:
    if not available_at:
        return True
    try:
        dt = datetime.fromisoformat(available_at)
    except ValueError:
        return True
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt <= datetime.now(UTC)


def _new_message(
    *,
    tenant_id: str,
    queue_name: str,
    payload: dict[str, Any],
    available_at: datetime | None,
) -> QueueMessage:
    if not tenant_id.strip():
        raise ValueError("tenant_id must not be empty")
    return QueueMessage(
        message_id=f"msg_{uuid.uuid4().hex[:16]}",
        tenant_id=tenant_id,
        queue_name=queue_name,
        payload=dict(payload),
        attempt=0,
        available_at=(
            available_at.astimezone(UTC).isoformat() if isinstance(available_at, datetime) else _utcnow_iso()
        ),
    )


class InMemoryQueueBackend:
    """Process-local queue; messages are lost on restart."""

    def __init__(self, *, namespace: str = "csi", lease_ms: int = DEFAULT_LEASE_MS) -> None:
        self._namespace = namespace.strip() or "csi"
        self._lease_s = max(0, int(lease_ms)) / 1000
        self._lock = threading.RLock()
        self._queues: dict[str, deque[QueueMessage]] = {}
        self._inflight: dict[str, QueueMessage] = {}
        self._leases: dict[str, float] = {}

    def queue_key(self, *, tenant_id: str, queue_name: str) -> str:
        return f"{self._namespace}:{tenant_id}:queue:{queue_name}"

    def enqueue(
        self,
        *,
        tenant_id: str,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        msg = _new_message(tenant_id=tenant_id, queue_name=queue_name, payload=payload, available_at=available_at)
        with self._lock:
            self._queues.setdefault(self.queue_key(tenant_id=tenant_id, queue_name=queue_name), deque()).append(msg)
        return msg

    def _reclaim_expired(self, *, queue_name: str) -> int:
        now = time.monotonic()
        expired = [
            message_id
            for message_id, deadline in self._leases.items()
            if deadline <= now and self._inflight[message_id].queue_name == queue_name
        ]
        for message_id in expired:
            del self._leases[message_id]
            msg = self._inflight.pop(message_id)
            msg.attempt += 1
            msg.available_at = _utcnow_iso()
            key = self.queue_key(tenant_id=msg.tenant_id, queue_name=queue_name)
            self._queues.setdefault(key, deque()).append(msg)
        if expired:
            logger.warning("queue_lease_expired queue=%s requeued=%s", queue_name, len(expired))
        return len(expired)

    def dequeue(self, *, tenant_id: str, queue_name: str) -> QueueMessage | None:
        with self._lock:
            self._reclaim_expired(queue_name=queue_name)
            queue = self._queues.get(self.queue_key(tenant_id=tenant_id, queue_name=queue_name))
            if not queue:
                return None
            for _ in range(len(queue)):
                msg = queue.popleft()
                if _is_due(msg.available_at):
                    self._inflight[msg.message_id] = msg
                    self._leases[msg.message_id] = time.monotonic() + self._lease_s
                    return msg
                queue.append(msg)
            return None

    def ack(self, *, tenant_id: str, message_id: str) -> None:
        with self._lock:
            msg = self._inflight.get(message_id)
            if msg is None:
                return
            if msg.tenant_id != tenant_id:
                raise RuntimeError("tenant mismatch for queue message")
            del self._inflight[message_id]
            self._leases.pop(message_id, None)

    def nack(
        self,
        *,
        tenant_id: str,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock:
            msg = self._inflight.get(message_id)
            if msg is None:
                return None
            if msg.tenant_id != tenant_id:
                raise RuntimeError("tenant mismatch for queue message")
            del self._inflight[message_id]
            self._leases.pop(message_id, None)
            msg.attempt += 1
            if requeue:
                msg.available_at = _due_iso(delay_ms)
                key = self.queue_key(tenant_id=msg.tenant_id, queue_name=msg.queue_name)
                self._queues.setdefault(key, deque()).append(msg)
            return msg

    def pending_count(self, *, tenant_id: str, queue_name: str) -> int:
        with self._lock:
            return len(self._queues.get(self.queue_key(tenant_id=tenant_id, queue_name=queue_name), ()))

    def inflight_count(self) -> int:
        with self._lock:
            return len(self._inflight)

    def list_tenants(self, *, queue_name: str) -> list[str]:
        prefix = f"{self._namespace}:"
        suffix = f":queue:{queue_name}"
        with self._lock:
            self._reclaim_expired(queue_name=queue_name)
            tenants = {
                key[len(prefix) : -len(suffix)]
                for key, queue in self._queues.items()
                if queue and key.startswith(prefix) and key.endswith(suffix)
            }
        return sorted(t for t in tenants if t)

    def reset(self) -> None:
        with self._lock:
            self._queues.clear()
            self._inflight.clear()
            self._leases.clear()


class SqliteQueueBackend:
    """SQLite-backed queue for single-host deployments and restart-safe local runs."""

    def __init__(self, db_path: str | Path, *, namespace: str = "csi", lease_ms: int = DEFAULT_LEASE_MS) -> None:
        self._namespace = namespace.strip() or "csi"
        self._lease_ms = max(0, int(lease_ms))
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS indexing_queue (
                    message_id TEXT PRIMARY KEY,
                    namespace TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    queue_name TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    available_at TEXT NOT NULL,
                    inflight_until TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(indexing_queue)")}
            if "inflight_until" not in columns:
                conn.execute("ALTER TABLE indexing_queue ADD COLUMN inflight_until TEXT")
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_indexing_queue_due
                ON indexing_queue(namespace, tenant_id, queue_name, status, available_at)
                """
            )
            conn.commit()

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> QueueMessage:
        return QueueMessage(
            message_id=row["message_id"],
            tenant_id=row["tenant_id"],
            queue_name=row["queue_name"],
            payload=json.loads(row["payload"]),
            attempt=int(row["attempt"]),
            available_at=row["available_at"],
        )

    def enqueue(
        self,
        *,
        tenant_id: str,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        msg = _new_message(tenant_id=tenant_id, queue_name=queue_name, payload=payload, available_at=available_at)
        now = _utcnow_iso()
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO indexing_queue(
                    message_id, namespace, tenant_id, queue_name, payload, attempt, status,
                    available_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, 0, 'pending', ?, ?, ?)
                """,
                (
                    msg.message_id,
                    self._namespace,
                    tenant_id,
                    queue_name,
                    json.dumps(msg.payload, ensure_ascii=True, sort_keys=True),
                    msg.available_at,
                    now,
                    now,
                ),
            )
            conn.commit()
        return msg

    def _reclaim_expired(self, conn: sqlite3.Connection, *, queue_name: str) -> int:
        """Move messages whose lease ran out back to pending; rows leased before the
        ``inflight_until`` column existed count as expired."""
        now = _utcnow_iso()
        cursor = conn.execute(
            """
            UPDATE indexing_queue
            SET status = 'pending', attempt = attempt + 1, available_at = ?, inflight_until = NULL, updated_at = ?
            WHERE namespace = ? AND queue_name = ? AND status = 'inflight'
              AND (inflight_until IS NULL OR inflight_until <= ?)
            """,
            (now, now, self._namespace, queue_name, now),
        )
        if cursor.rowcount > 0:
            logger.warning("queue_lease_expired queue=%s requeued=%s", queue_name, cursor.rowcount)
        return max(0, cursor.rowcount)

    def dequeue(self, *, tenant_id: str, queue_name: str) -> QueueMessage | None:
        with self._lock, self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            self._reclaim_expired(conn, queue_name=queue_name)
            row = conn.execute(
                """
                SELECT message_id, tenant_id, queue_name, payload, attempt, available_at
                FROM indexing_queue
                WHERE namespace = ? AND tenant_id = ? AND queue_name = ?
                  AND status = 'pending' AND available_at <= ?
                ORDER BY available_at ASC, created_at ASC
                LIMIT 1
                """,
                (self._namespace, tenant_id, queue_name, _utcnow_iso()),
            ).fetchone()
            if row is None:
                conn.commit()
                return None
            conn.execute(
                """
                UPDATE indexing_queue SET status = 'inflight', inflight_until = ?, updated_at = ?
                WHERE message_id = ?
                """,
                (_due_iso(self._lease_ms), _utcnow_iso(), row["message_id"]),
            )
            conn.commit()
            return self._row_to_message(row)

    def _inflight_tenant(self, conn: sqlite3.Connection, message_id: str) -> str | None:
        row = conn.execute(
            "SELECT tenant_id FROM indexing_queue WHERE message_id = ? AND status = 'inflight'",
            (message_id,),
        ).fetchone()
        return None if row is None else str(row["tenant_id"])

    def ack(self, *, tenant_id: str, message_id: str) -> None:
        with self._lock, self._connect() as conn:
            owner = self._inflight_tenant(conn, message_id)
            if owner is None:
                return
            if owner != tenant_id:
                raise RuntimeError("tenant mismatch for queue message")
            conn.execute("DELETE FROM indexing_queue WHERE message_id = ?", (message_id,))
            conn.commit()

    def nack(
        self,
        *,
        tenant_id: str,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock, self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT message_id, tenant_id, queue_name, payload, attempt, available_at
                FROM indexing_queue
                WHERE message_id = ? AND status = 'inflight'
                """,
                (message_id,),
            ).fetchone()
            if row is None:
                conn.commit()
                return None
            if row["tenant_id"] != tenant_id:
                conn.commit()
                raise RuntimeError("tenant mismatch for queue message")
            msg = self._row_to_message(row)
            msg.attempt += 1
            if requeue:
                msg.available_at = _due_iso(delay_ms)
                conn.execute(
                    """
                    UPDATE indexing_queue
                    SET status = 'pending', attempt = ?, available_at = ?, inflight_until = NULL, updated_at = ?
                    WHERE message_id = ?
                    """,
                    (msg.attempt, msg.available_at, _utcnow_iso(), message_id),
                )
            else:
                conn.execute("DELETE FROM indexing_queue WHERE message_id = ?", (message_id,))
            conn.commit()
            return msg

    def pending_count(self, *, tenant_id: str, queue_name: str) -> int:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(1) AS cnt FROM indexing_queue
                WHERE namespace = ? AND tenant_id = ? AND queue_name = ? AND status = 'pending'
                """,
                (self._namespace, tenant_id, queue_name),
            ).fetchone()
        return int(row["cnt"]) if row is not None else 0

    def list_tenants(self, *, queue_name: str) -> list[str]:
        with self._lock, self._connect() as conn:
            self._reclaim_expired(conn, queue_name=queue_name)
            conn.commit()
            rows = conn.execute(
                """
                SELECT DISTINCT tenant_id FROM indexing_queue
                WHERE namespace = ? AND queue_name = ? AND status = 'pending'
                ORDER BY tenant_id ASC
                """,
                (self._namespace, queue_name),
            ).fetchall()
        return [str(row["tenant_id"]) for row in rows if row["tenant_id"]]

    def reset(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM indexing_queue WHERE namespace = ?", (self._namespace,))
            conn.commit()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for CSI_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisQueueBackend:
    """Redis-backed queue shared by worker processes on several hosts.

    Pending ids live in a per-tenant list, message bodies in plain keys and a
    registry set tracks which tenant lists exist so workers can discover them.
    Leased ids sit in a per-queue sorted set scored by lease deadline (epoch ms),
    also listed in the registry so reset clears it.
    """

    def __init__(
        self,
        *,
        dsn: str,
        namespace: str = "csi",
        socket_timeout_s: float = 5.0,
        lease_ms: int = DEFAULT_LEASE_MS,
    ) -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis queue backend")
        self._namespace = namespace.strip() or "csi"
        self._lease_ms = max(0, int(lease_ms))
        self._lock = threading.RLock()
        redis = _import_redis()
        self._client = redis.Redis.from_url(
            dsn.strip(),
            decode_responses=True,
            socket_timeout=socket_timeout_s,
        )

    def _registry_key(self) -> str:
        return f"{self._namespace}:queue:registry"

    def _pending_key(self, *, tenant_id: str, queue_name: str) -> str:
        return f"{self._namespace}:{tenant_id}:queue:{queue_name}:pending"

    def _msg_key(self, message_id: str) -> str:
        return f"{self._namespace}:msg:{message_id}"

    def _inflight_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:inflight"

    def _load(self, message_id: str) -> dict[str, Any] | None:
        raw = self._client.get(self._msg_key(message_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _save(self, message_id: str, data: dict[str, Any]) -> None:
        self._client.set(
            self._msg_key(message_id),
            json.dumps(data, sort_keys=True, ensure_ascii=True, separators=(",", ":")),
        )

    @staticmethod
    def _to_message(message_id: str, data: dict[str, Any]) -> QueueMessage:
        return QueueMessage(
            message_id=message_id,
            tenant_id=str(data.get("tenant_id", "")),
            queue_name=str(data.get("queue_name", "")),
            payload=dict(data.get("payload") or {}),
            attempt=int(data.get("attempt", 0)),
            available_at=str(data.get("available_at", "")) or None,
        )

    def enqueue(
        self,
        *,
        tenant_id: str,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        msg = _new_message(tenant_id=tenant_id, queue_name=queue_name, payload=payload, available_at=available_at)
        pending_key = self._pending_key(tenant_id=tenant_id, queue_name=queue_name)
        with self._lock:
            self._save(
                msg.message_id,
                {
                    "tenant_id": tenant_id,
                    "queue_name": queue_name,
                    "payload": msg.payload,
                    "attempt": 0,
                    "status": "pending",
                    "available_at": msg.available_at,
                },
            )
            self._client.rpush(pending_key, msg.message_id)
            self._client.sadd(self._registry_key(), pending_key)
        return msg

    def _reclaim_expired(self, *, queue_name: str) -> int:
        inflight_key = self._inflight_key(queue_name)
        requeued = 0
        for message_id in self._client.zrangebyscore(inflight_key, "-inf", int(time.time() * 1000)):
            # zrem is atomic, so only one worker host requeues a given message
            if not self._client.zrem(inflight_key, message_id):
                continue
            data = self._load(message_id)
            if data is None or data.get("status") != "inflight":
                continue
            data["attempt"] = int(data.get("attempt", 0)) + 1
            data["status"] = "pending"
            data["available_at"] = _utcnow_iso()
            self._save(message_id, data)
            pending_key = self._pending_key(tenant_id=str(data["tenant_id"]), queue_name=queue_name)
            self._client.rpush(pending_key, message_id)
            self._client.sadd(self._registry_key(), pending_key)
            requeued += 1
        if requeued:
            logger.warning("queue_lease_expired queue=%s requeued=%s", queue_name, requeued)
        return requeued

    def dequeue(self, *, tenant_id: str, queue_name: str) -> QueueMessage | None:
        pending_key = self._pending_key(tenant_id=tenant_id, queue_name=queue_name)
        with self._lock:
            self._reclaim_expired(queue_name=queue_name)
            for _ in range(int(self._client.llen(pending_key))):
                message_id = self._client.lpop(pending_key)
                if not isinstance(message_id, str) or not message_id:
                    return None
                data = self._load(message_id)
                if data is None:
                    continue
                if not _is_due(data.get("available_at")):
                    self._client.rpush(pending_key, message_id)
                    continue
                data["status"] = "inflight"
                self._save(message_id, data)
                inflight_key = self._inflight_key(queue_name)
                self._client.zadd(inflight_key, {message_id: int(time.time() * 1000) + self._lease_ms})
                self._client.sadd(self._registry_key(), inflight_key)
                return self._to_message(message_id, data)
            return None

    def _load_inflight(self, *, tenant_id: str, message_id: str) -> dict[str, Any] | None:
        data = self._load(message_id)
        if data is None or data.get("status") != "inflight":
            return None
        if data.get("tenant_id") != tenant_id:
            raise RuntimeError("tenant mismatch for queue message")
        return data

    def ack(self, *, tenant_id: str, message_id: str) -> None:
        with self._lock:
            data = self._load_inflight(tenant_id=tenant_id, message_id=message_id)
            if data is None:
                return
            self._client.zrem(self._inflight_key(str(data["queue_name"])), message_id)
            self._client.delete(self._msg_key(message_id))

    def nack(
        self,
        *,
        tenant_id: str,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock:
            data = self._load_inflight(tenant_id=tenant_id, message_id=message_id)
            if data is None:
                return None
            self._client.zrem(self._inflight_key(str(data["queue_name"])), message_id)
            data["attempt"] = int(data.get("attempt", 0)) + 1
            if requeue:
                data["status"] = "pending"
                data["available_at"] = _due_iso(delay_ms)
                self._save(message_id, data)
                self._client.rpush(
                    self._pending_key(tenant_id=tenant_id, queue_name=str(data["queue_name"])),
                    message_id,
                )
            else:
                self._client.delete(self._msg_key(message_id))
            return self._to_message(message_id, data)

    def pending_count(self, *, tenant_id: str, queue_name: str) -> int:
        with self._lock:
            return int(self._client.llen(self._pending_key(tenant_id=tenant_id, queue_name=queue_name)))

    def list_tenants(self, *, queue_name: str) -> list[str]:
        prefix = f"{self._namespace}:"
        suffix = f":queue:{queue_name}:pending"
        tenants: set[str] = set()
        with self._lock:
            self._reclaim_expired(queue_name=queue_name)
            for key in self._client.smembers(self._registry_key()):
                if not isinstance(key, str) or not key.startswith(prefix) or not key.endswith(suffix):
                    continue
                if int(self._client.llen(key)) <= 0:
                    continue
                tenants.add(key[len(prefix) : -len(suffix)])
        return sorted(t for t in tenants if t)

    def reset(self) -> None:
        with self._lock:
            keys = list(self._client.smembers(self._registry_key()))
            if keys:
                self._client.delete(*keys)
            self._client.delete(self._registry_key())


QueueBackend = InMemoryQueueBackend | SqliteQueueBackend | RedisQueueBackend


def create_queue_backend(settings: IndexingSettings) -> QueueBackend:
    backend = settings.queue_backend
    if backend == "memory":
        return InMemoryQueueBackend(namespace=settings.queue_key_prefix, lease_ms=settings.queue_lease_ms)
    if backend == "sqlite":
        return SqliteQueueBackend(
            settings.queue_sqlite_path,
            namespace=settings.queue_key_prefix,
            lease_ms=settings.queue_lease_ms,
        )
    if backend == "redis":
        if not settings.redis_dsn:
            raise ValueError("REDIS_DSN must be set when CSI_QUEUE_BACKEND=redis")
        return RedisQueueBackend(
            dsn=settings.redis_dsn,
            namespace=settings.queue_key_prefix,
            socket_timeout_s=settings.relational_timeout_s,
            lease_ms=settings.queue_lease_ms,
        )
    raise RuntimeError(f"unsupported queue backend: {backend}")


def create_queue_for_runtime(settings: IndexingSettings) -> QueueBackend:
    """Like create_queue_backend, but a redis backend without REDIS_DSN degrades to memory
    unless the true stack is required."""
    try:
        return create_queue_backend(settings)
    except ValueError:
        if true_stack_required():
            raise
        return InMemoryQueueBackend(namespace=settings.queue_key_prefix, lease_ms=settings.queue_lease_ms)
