from __future__ import annotations

import pytest

from casesearch.runtime_profile import true_stack_required
from casesearch.search_engine import InMemorySearchEngine, create_search_engine_for_runtime
from casesearch.settings import IndexingSettings


def test_defaults_select_process_local_backends():
    settings = IndexingSettings.from_env({})
    assert settings.queue_backend == "memory"
    assert settings.search_backend == "memory"
    assert settings.relational_backend == "memory"
    assert settings.index_prefix == "org"
    assert settings.worker_max_attempts == 5
    assert settings.staleness_target_ms == 5000
    assert settings.queue_lease_ms == 30000


def test_env_overrides_are_parsed_and_clamped():
    settings = IndexingSettings.from_env(
        {
            "CSI_QUEUE_BACKEND": "Redis",
            "REDIS_DSN": " redis://cache:6379/2 ",
            "CSI_SEARCH_BACKEND": "opensearch",
            "OPENSEARCH_VERIFY_CERTS": "false",
            "CSI_WORKER_MAX_ATTEMPTS": "0",
            "CSI_WORKER_RETRY_BACKOFF_BASE_MS": "2000",
            "CSI_WORKER_RETRY_BACKOFF_MAX_MS": "500",
            "CSI_WORKER_CONCURRENCY": "4",
            "CSI_REINDEX_BATCH_SIZE": "not-a-number",
            "CSI_QUEUE_LEASE_MS": "0",
        }
    )
    assert settings.queue_backend == "redis"
    assert settings.redis_dsn == "redis://cache:6379/2"
    assert settings.search_backend == "opensearch"
    assert settings.opensearch_verify_certs is False
    assert settings.worker_max_attempts == 1
    assert settings.worker_retry_backoff_max_ms == 2000
    assert settings.worker_concurrency == 4
    assert settings.reindex_batch_size == 500
    assert settings.queue_lease_ms == 1


def test_true_stack_flag():
    assert true_stack_required({}) is False
    assert true_stack_required({"CSI_REQUIRE_TRUESTACK": "yes"}) is True


def test_memory_search_engine_refused_when_true_stack_required(monkeypatch):
    monkeypatch.delenv("CSI_REQUIRE_TRUESTACK", raising=False)
    assert isinstance(create_search_engine_for_runtime(IndexingSettings()), InMemorySearchEngine)
    monkeypatch.setenv("CSI_REQUIRE_TRUESTACK", "true")
    with pytest.raises(ValueError, match="CSI_REQUIRE_TRUESTACK"):
        create_search_engine_for_runtime(IndexingSettings())
