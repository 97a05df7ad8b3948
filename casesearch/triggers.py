from __future__ import annotations

import logging

from casesearch.events import TOPIC_SCHEMAS, DomainEvent, EventBus, validate_event
from casesearch.indexing_queue import IndexingJob, IndexingQueue

logger = logging.getLogger(__name__)


def affected_entities(event: DomainEvent) -> list[tuple[str, str, str]]:
    """(entity_type, entity_id, operation) triples an event invalidates."""
    payload = event.payload
    kind, _, rest = event.topic.partition(".")
    if kind == "case":
        return [("cases", payload["case_id"], "delete" if rest == "deleted" else "update")]
    if kind == "record":
        return [("records", payload["record_id"], "delete" if rest == "deleted" else "update")]

    family = rest.rpartition(".")[0]
    if family == "person-case":
        return [("cases", payload["case_id"], "update")]
    if family == "record-case":
        return [("cases", payload["case_id"], "update"), ("records", payload["record_id"], "update")]
    if family == "case-case":
        targets = [("cases", payload["source_case_id"], "update")]
        if payload["target_case_id"] != payload["source_case_id"]:
            targets.append(("cases", payload["target_case_id"], "update"))
        return targets
    if family == "person-record":
        return [("records", payload["record_id"], "update")]
    return []


class IndexingTriggers:
    """Turns relational change events into indexing jobs and nothing else."""

    def __init__(self, queue: IndexingQueue) -> None:
        self.queue = queue

    def handle(self, event: DomainEvent) -> list[IndexingJob]:
        validate_event(event.topic, event.payload)
        jobs = [
            self.queue.enqueue(
                tenant_id=event.tenant_id,
                entity_type=entity_type,
                entity_id=str(entity_id),
                operation=operation,
            )
            for entity_type, entity_id, operation in affected_entities(event)
        ]
        logger.debug("event_enqueued topic=%s event_id=%s jobs=%s", event.topic, event.event_id, len(jobs))
        return jobs

    def register(self, bus: EventBus) -> None:
        for topic in sorted(TOPIC_SCHEMAS):
            bus.subscribe(topic, self.handle)
