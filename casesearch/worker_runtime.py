from __future__ import annotations

import hashlib
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, fields
from typing import Any

from casesearch.dead_letters import DeadLetterService
from casesearch.errors import is_retryable
from casesearch.indexing_queue import IndexingJob, IndexingQueue, InvalidIndexingJob
from casesearch.indexing_service import IndexingService
from casesearch.metrics import IndexingMetrics
from casesearch.settings import IndexingSettings

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    processed: int = 0
    succeeded: int = 0
    retrying: int = 0
    dead_lettered: int = 0
    acked: int = 0
    requeued: int = 0

    def as_dict(self) -> dict[str, int]:
        return {f.name: int(getattr(self, f.name)) for f in fields(self)}

    def merge(self, other: dict[str, int]) -> None:
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + int(other.get(f.name, 0)))


def retry_jitter_ms(*, job_key: str, attempt: int) -> int:
    seed = f"{job_key}:{attempt}".encode("utf-8")
    digest = hashlib.sha256(seed).digest()
    return int.from_bytes(digest[:2], byteorder="big") % 301


def retry_backoff_ms(*, job_key: str, attempt: int, base_ms: int, max_ms: int) -> int:
    normalized = max(1, int(attempt))
    base = max(0, int(base_ms))
    ceiling = max(base, int(max_ms))
    if base == 0:
        return 0
    exponential = base * (2 ** (normalized - 1))
    return min(ceiling, exponential) + retry_jitter_ms(job_key=job_key, attempt=normalized)


class WorkerRuntime:
    """Drains the indexing queue with per-tenant fairness, retries and dead-lettering."""

    def __init__(
        self,
        *,
        queue: IndexingQueue,
        indexing_service: IndexingService,
        dead_letters: DeadLetterService,
        metrics: IndexingMetrics | None = None,
        max_attempts: int = 5,
        retry_backoff_base_ms: int = 1000,
        retry_backoff_max_ms: int = 30000,
        tenant_burst_limit: int = 1,
        max_messages_per_iteration: int = 20,
        poll_interval_ms: int = 200,
    ) -> None:
        self.queue = queue
        self.queue_backend = queue.backend
        self.queue_name = queue.queue_name
        self.indexing_service = indexing_service
        self.dead_letters = dead_letters
        self.metrics = metrics or IndexingMetrics()
        self.max_attempts = max(1, int(max_attempts))
        self.retry_backoff_base_ms = max(0, int(retry_backoff_base_ms))
        self.retry_backoff_max_ms = max(self.retry_backoff_base_ms, int(retry_backoff_max_ms))
        self.tenant_burst_limit = max(1, int(tenant_burst_limit))
        self.max_messages_per_iteration = max(1, int(max_messages_per_iteration))
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self._stop = threading.Event()

    def _list_tenants(self) -> list[str]:
        tenants = self.queue_backend.list_tenants(queue_name=self.queue_name)
        return [str(x) for x in tenants if str(x)]

    def _dead_letter(
        self,
        *,
        tenant_id: str,
        msg: Any,
        error: BaseException,
        attempts: int,
        stats: WorkerRunStats,
    ) -> None:
        self.dead_letters.record(
            tenant_id=tenant_id,
            payload=msg.payload,
            error=error,
            attempts=attempts,
            retryable=is_retryable(error),
        )
        self.queue_backend.ack(tenant_id=tenant_id, message_id=msg.message_id)
        stats.acked += 1
        stats.dead_lettered += 1
        self.metrics.incr("jobs_dead_lettered")

    def _process_message(self, *, tenant_id: str, stats: WorkerRunStats) -> bool:
        msg = self.queue_backend.dequeue(tenant_id=tenant_id, queue_name=self.queue_name)
        if msg is None:
            return False
        stats.processed += 1
        attempts = int(msg.attempt) + 1

        try:
            job = IndexingJob.from_payload(msg.payload)
            if job.tenant_id != tenant_id:
                raise InvalidIndexingJob("job tenant does not match queue tenant")
        except InvalidIndexingJob as exc:
            logger.error("indexing_job_invalid tenant=%s message_id=%s error=%s", tenant_id, msg.message_id, exc)
            self._dead_letter(tenant_id=tenant_id, msg=msg, error=exc, attempts=attempts, stats=stats)
            return True

        try:
            outcome = self.indexing_service.process(job)
        except Exception as exc:
            if is_retryable(exc) and attempts < self.max_attempts:
                delay_ms = retry_backoff_ms(
                    job_key=job.job_key,
                    attempt=attempts,
                    base_ms=self.retry_backoff_base_ms,
                    max_ms=self.retry_backoff_max_ms,
                )
                logger.warning(
                    "indexing_job_retry tenant=%s job_key=%s attempt=%s delay_ms=%s error=%s",
                    tenant_id,
                    job.job_key,
                    attempts,
                    delay_ms,
                    exc,
                )
                self.queue_backend.nack(
                    tenant_id=tenant_id,
                    message_id=msg.message_id,
                    requeue=True,
                    delay_ms=delay_ms,
                )
                stats.requeued += 1
                stats.retrying += 1
                self.metrics.incr("jobs_retried")
                return True
            self._dead_letter(tenant_id=tenant_id, msg=msg, error=exc, attempts=attempts, stats=stats)
            return True

        self.queue_backend.ack(tenant_id=tenant_id, message_id=msg.message_id)
        stats.acked += 1
        stats.succeeded += 1
        self.metrics.incr(f"jobs_{outcome}")
        lag_ms = self.metrics.observe_completion(submitted_at=job.submitted_at)
        logger.debug("indexing_job_done job_key=%s outcome=%s lag_ms=%s", job.job_key, outcome, lag_ms)
        return True

    def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        while stats.processed < self.max_messages_per_iteration:
            tenants = self._list_tenants()
            if not tenants:
                break
            progressed = False
            for tenant_id in tenants:
                for _ in range(self.tenant_burst_limit):
                    if stats.processed >= self.max_messages_per_iteration:
                        break
                    handled = self._process_message(tenant_id=tenant_id, stats=stats)
                    progressed = progressed or handled
                    if not handled:
                        break
            if not progressed:
                break
        return stats.as_dict()

    def stop(self) -> None:
        self._stop.set()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while not self._stop.is_set():
            current = self.run_once()
            aggregate.merge(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["processed"]) == 0:
                self._stop.wait(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()

    def run_pool(self, *, workers: int, stop_after_iterations: int | None = None) -> dict[str, int]:
        """Run ``workers`` loops concurrently against the shared queue and sum their stats."""
        count = max(1, int(workers))
        aggregate = WorkerRunStats()
        with ThreadPoolExecutor(max_workers=count, thread_name_prefix="csi-worker") as pool:
            futures = [
                pool.submit(self.run_forever, stop_after_iterations=stop_after_iterations) for _ in range(count)
            ]
            for future in futures:
                aggregate.merge(future.result())
        return aggregate.as_dict()

    def drain(self, *, max_rounds: int = 1000) -> dict[str, int]:
        """Process until nothing is immediately due; delayed retries stay queued."""
        aggregate = WorkerRunStats()
        started = time.monotonic()
        for _ in range(max(1, max_rounds)):
            current = self.run_once()
            aggregate.merge(current)
            if int(current["processed"]) == 0:
                break
        logger.debug("worker_drain_done elapsed_s=%.3f stats=%s", time.monotonic() - started, aggregate.as_dict())
        return aggregate.as_dict()


def create_worker_runtime(
    *,
    settings: IndexingSettings,
    queue: IndexingQueue,
    indexing_service: IndexingService,
    dead_letters: DeadLetterService,
    metrics: IndexingMetrics,
) -> WorkerRuntime:
    return WorkerRuntime(
        queue=queue,
        indexing_service=indexing_service,
        dead_letters=dead_letters,
        metrics=metrics,
        max_attempts=settings.worker_max_attempts,
        retry_backoff_base_ms=settings.worker_retry_backoff_base_ms,
        retry_backoff_max_ms=settings.worker_retry_backoff_max_ms,
        tenant_burst_limit=settings.worker_tenant_burst_limit,
        max_messages_per_iteration=settings.worker_max_messages_per_iteration,
        poll_interval_ms=settings.worker_poll_interval_ms,
    )
