from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from casesearch.dead_letters import DeadLetterService
from casesearch.db.postgres import PostgresTxRunner
from casesearch.denormalizer import create_builders
from casesearch.events import EventBus
from casesearch.indexing_queue import IndexingQueue
from casesearch.indexing_service import IndexingService
from casesearch.metrics import IndexingMetrics
from casesearch.pattern_detection import PatternDetectionService
from casesearch.queue_backend import create_queue_for_runtime
from casesearch.reindex import ReindexDriver
from casesearch.relational import RelationalStore, create_relational_store
from casesearch.repositories import InMemoryDlqItemsRepository, PostgresDlqItemsRepository
from casesearch.search_engine import create_search_engine_for_runtime
from casesearch.settings import IndexingSettings
from casesearch.triggers import IndexingTriggers
from casesearch.worker_runtime import WorkerRuntime, create_worker_runtime

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: IndexingSettings
    store: RelationalStore
    engine: Any
    queue: IndexingQueue
    indexing: IndexingService
    dead_letters: DeadLetterService
    metrics: IndexingMetrics
    worker: WorkerRuntime
    patterns: PatternDetectionService
    reindex: ReindexDriver
    triggers: IndexingTriggers
    bus: EventBus

    def reset(self) -> None:
        """Clear process-local state; used between tests and local runs."""
        self.queue.backend.reset()
        self.metrics.reset()
        self.indexing.forget_cached_indices()
        reset_dlq = getattr(self.dead_letters.repository, "reset", None)
        if callable(reset_dlq):
            reset_dlq()


def _dlq_repository(settings: IndexingSettings) -> Any:
    if settings.relational_backend == "postgres" and settings.postgres_dsn:
        runner = PostgresTxRunner(settings.postgres_dsn, timeout_s=settings.relational_timeout_s)
        return PostgresDlqItemsRepository(tx_runner=runner)
    return InMemoryDlqItemsRepository()


def build_services(
    settings: IndexingSettings | None = None,
    *,
    store: RelationalStore | None = None,
    engine: Any = None,
    queue_backend: Any = None,
    dlq_repository: Any = None,
) -> Services:
    """Wire builders, queue, worker, query layer and triggers from settings.

    Any collaborator can be passed in explicitly; the rest come from the
    backend factories selected by ``settings``.
    """
    cfg = settings or IndexingSettings.from_env()
    store = store if store is not None else create_relational_store(cfg)
    engine = engine if engine is not None else create_search_engine_for_runtime(cfg)
    backend = queue_backend if queue_backend is not None else create_queue_for_runtime(cfg)
    queue = IndexingQueue(backend, queue_name=cfg.queue_name)
    metrics = IndexingMetrics(staleness_target_ms=cfg.staleness_target_ms)
    indexing = IndexingService(engine=engine, builders=create_builders(store), index_prefix=cfg.index_prefix)
    dead_letters = DeadLetterService(
        repository=dlq_repository if dlq_repository is not None else _dlq_repository(cfg),
        queue=queue,
    )
    worker = create_worker_runtime(
        settings=cfg,
        queue=queue,
        indexing_service=indexing,
        dead_letters=dead_letters,
        metrics=metrics,
    )
    triggers = IndexingTriggers(queue)
    bus = EventBus()
    triggers.register(bus)
    logger.info(
        "services_built queue=%s search=%s relational=%s",
        type(backend).__name__,
        type(engine).__name__,
        cfg.relational_backend,
    )
    return Services(
        settings=cfg,
        store=store,
        engine=engine,
        queue=queue,
        indexing=indexing,
        dead_letters=dead_letters,
        metrics=metrics,
        worker=worker,
        patterns=PatternDetectionService(engine=engine, store=store, index_prefix=cfg.index_prefix),
        reindex=ReindexDriver(store=store, queue=queue, indexing_service=indexing, batch_size=cfg.reindex_batch_size),
        triggers=triggers,
        bus=bus,
    )
