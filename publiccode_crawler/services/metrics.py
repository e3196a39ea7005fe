"""Prometheus counters for crawl progress."""

from __future__ import annotations

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, generate_latest

logger = logging.getLogger(__name__)

REPOSITORY_PROCESSED = "repository_processed"
REPOSITORY_FILE_SAVED = "repository_file_saved"
REPOSITORY_FILE_INDEXED = "repository_file_indexed"
REPOSITORY_CLONED = "repository_cloned"

COUNTER_DESCRIPTIONS = {
    REPOSITORY_PROCESSED: "Number of repository processed.",
    REPOSITORY_FILE_SAVED: "Number of file saved.",
    REPOSITORY_FILE_INDEXED: "Number of file indexed.",
    REPOSITORY_CLONED: "Number of repository cloned",
}


class CounterSink:
    """Fire-and-forget counters labelled with the index being populated."""

    def __init__(self, index: str, *, registry: Optional[CollectorRegistry] = None) -> None:
        self._index = index
        self.registry = registry or CollectorRegistry()
        self._counters = {
            name: Counter(name, description, ["index"], registry=self.registry)
            for name, description in COUNTER_DESCRIPTIONS.items()
        }

    def increment(self, name: str) -> None:
        counter = self._counters.get(name)
        if counter is None:
            logger.debug(f"Ignoring increment of unregistered counter {name}")
            return
        try:
            counter.labels(index=self._index).inc()
        except Exception as exc:
            logger.debug(f"Counter {name} increment failed: {exc}")

    def value(self, name: str) -> float:
        sample = self.registry.get_sample_value(f"{name}_total", {"index": self._index})
        return float(sample or 0.0)

    def exposition(self) -> bytes:
        return generate_latest(self.registry)
