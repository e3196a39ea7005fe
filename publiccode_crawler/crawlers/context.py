"""Per-run collaborators shared by every pipeline stage."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from publiccode_crawler.crawlers.domains import DomainRegistry, RandomSource
from publiccode_crawler.services.activity import ActivityCalculator
from publiccode_crawler.services.dead_letter import DeadLetterLog
from publiccode_crawler.services.index_publisher import IndexPublisher
from publiccode_crawler.services.manifest import PubliccodeParser
from publiccode_crawler.services.metrics import CounterSink


@dataclass(slots=True)
class CrawlContext:
    """Explicitly constructed crawl state; stages never reach for globals."""

    client: Any
    domains: DomainRegistry
    index: IndexPublisher
    git: Any
    parser: PubliccodeParser
    activity: ActivityCalculator
    dead_letter: DeadLetterLog
    counters: CounterSink
    random_source: Optional[RandomSource] = None
