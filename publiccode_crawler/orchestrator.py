"""Crawl orchestrator: producer, blacklist filter, worker pool and index publication."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from publiccode_crawler.config.settings import settings
from publiccode_crawler.crawlers.blacklist_stage import BlacklistStage
from publiccode_crawler.crawlers.client import HttpClient, sanitize_log_extra
from publiccode_crawler.crawlers.context import CrawlContext
from publiccode_crawler.crawlers.contracts import END_OF_STREAM, ConfigurationError, CrawlError
from publiccode_crawler.crawlers.domains import DomainRegistry, RandomSource, load_domains
from publiccode_crawler.crawlers.producer_stage import ProducerStage
from publiccode_crawler.crawlers.repository_stage import RepositoryOutcome, RepositoryStage
from publiccode_crawler.services.activity import ActivityCalculator
from publiccode_crawler.services.blacklist import load_blacklist
from publiccode_crawler.services.dead_letter import DeadLetterLog
from publiccode_crawler.services.git_client import GitClient
from publiccode_crawler.services.index_publisher import IndexPublisher, SQLIndexStore
from publiccode_crawler.services.manifest import PubliccodeParser
from publiccode_crawler.services.metrics import CounterSink
from publiccode_crawler.services.publishers import Publisher

logger = logging.getLogger(__name__)


class CrawlerOrchestrator:
    """Coordinates one crawl run end to end.

    Construction performs the fatal startup checks: the data directory must exist,
    the domain list must parse and the index store must accept the schema.
    """

    def __init__(
        self,
        *,
        data_dir: Optional[str | Path] = None,
        domains: Optional[DomainRegistry] = None,
        store: Optional[Any] = None,
        http_client_factory: Callable[[], Any] = HttpClient,
        git_client: Optional[Any] = None,
        parser: Optional[PubliccodeParser] = None,
        counters: Optional[CounterSink] = None,
        dead_letter: Optional[DeadLetterLog] = None,
        blacklist_loader: Callable[[], Mapping[str, str]] = load_blacklist,
        random_source: Optional[RandomSource] = None,
        workers: Optional[int] = None,
        work_buffer: Optional[int] = None,
        activity_days: Optional[int] = None,
        index_options: Optional[dict[str, Any]] = None,
    ) -> None:
        self._data_dir = Path(data_dir or settings.CRAWLER_DATADIR)
        if not self._data_dir.is_dir():
            raise ConfigurationError(f"The configured data directory ({self._data_dir}) does not exist")

        try:
            self._domains = domains if domains is not None else load_domains(settings.DOMAINS_FILE)
        except (OSError, ValueError) as exc:
            raise ConfigurationError(f"Unable to read the domain list: {exc}") from exc

        self._store = store if store is not None else SQLIndexStore()
        try:
            if hasattr(self._store, "ensure_schema"):
                self._store.ensure_schema()
        except Exception as exc:
            raise ConfigurationError(f"Index store is unreachable: {exc}") from exc

        self._index_options = dict(index_options or {})
        self._http_client_factory = http_client_factory
        self._git_client = git_client or GitClient(self._data_dir)
        self._parser = parser or PubliccodeParser()
        self._counters = counters or CounterSink(self._index_options.get("index_base") or settings.PUBLICCODE_INDEX)
        self._dead_letter = dead_letter or DeadLetterLog(self._data_dir / settings.DEAD_LETTER_FILE)
        self._blacklist_loader = blacklist_loader
        self._random_source = random_source
        self._workers = max(int(workers or settings.CRAWLER_WORKERS), 1)
        self._work_buffer = max(int(work_buffer or settings.CRAWLER_INTAKE_BUFFER), 1)
        self._activity = ActivityCalculator(days=activity_days)
        self.last_stats: dict[str, Any] = {}

    @property
    def counters(self) -> CounterSink:
        return self._counters

    async def crawl_single_repository(self, repo_url: str, publisher: Publisher) -> dict[str, Any]:
        """Crawl one repository into the generation the alias currently serves."""

        async with self._http_client_factory() as client:
            context = self._build_context(client, rotate=False)
            intake: asyncio.Queue = asyncio.Queue()
            producer = ProducerStage(context)

            async def produce() -> None:
                try:
                    await producer.produce_single(repo_url, publisher, intake)
                finally:
                    await intake.put(END_OF_STREAM)

            _, stats = await self._run_pipeline(
                context, produce(), intake, blacklist={}, mode="repository"
            )
        stats["producer"] = asdict(producer.stats)
        self.last_stats = stats
        return stats

    async def crawl_publishers(
        self,
        publishers: Sequence[Publisher],
        *,
        blacklist: Optional[Mapping[str, str]] = None,
        rotate: bool = True,
    ) -> list[str]:
        """Crawl publishers and return the removal ids of blacklisted candidates.

        With `rotate` the run writes a fresh generation that replaces the served
        catalog, so it must cover the whole whitelist. Partial crawls pass
        `rotate=False` and update the served generation in place.
        """

        if not publishers:
            raise ConfigurationError("No publishers to crawl; the served index is left untouched")

        snapshot = dict(blacklist if blacklist is not None else self._blacklist_loader())
        async with self._http_client_factory() as client:
            context = self._build_context(client, rotate=rotate)
            intake: asyncio.Queue = asyncio.Queue()
            producer = ProducerStage(context)

            removed, stats = await self._run_pipeline(
                context,
                producer.produce_publishers(publishers, intake),
                intake,
                blacklist=snapshot,
                mode="publishers",
            )
        stats["producer"] = asdict(producer.stats)
        self.last_stats = stats
        return removed

    async def remove_from_index(self, removal_ids: Sequence[str]) -> int:
        """Delete blacklisted documents from what the alias currently serves."""
        index = IndexPublisher(self._store, **self._index_options)
        deleted = await index.remove(removal_ids)
        if deleted:
            logger.info(f"Removed {deleted} blacklisted documents from the index")
        return deleted

    def _build_context(self, client: Any, *, rotate: bool) -> CrawlContext:
        index = IndexPublisher(self._store, **self._index_options)
        index.open_generation(rotate=rotate)
        return CrawlContext(
            client=client,
            domains=self._domains,
            index=index,
            git=self._git_client,
            parser=self._parser,
            activity=self._activity,
            dead_letter=self._dead_letter,
            counters=self._counters,
            random_source=self._random_source,
        )

    async def _run_pipeline(
        self,
        context: CrawlContext,
        production: Awaitable[Any],
        intake: asyncio.Queue,
        *,
        blacklist: Mapping[str, str],
        mode: str,
    ) -> tuple[list[str], dict[str, Any]]:
        """Run producer, filter and workers to completion, then flush and swap the alias."""

        started_at = datetime.utcnow().isoformat()
        work: asyncio.Queue = asyncio.Queue(maxsize=self._work_buffer)
        outcomes: list[RepositoryOutcome] = []
        blacklist_stage = BlacklistStage()
        repository_stage = RepositoryStage(context)

        producer_task = asyncio.create_task(production)
        filter_task = asyncio.create_task(
            blacklist_stage.filter(intake, work, blacklist, consumers=self._workers)
        )
        worker_tasks = [
            asyncio.create_task(repository_stage.run_worker(work, outcomes)) for _ in range(self._workers)
        ]
        tasks = [producer_task, filter_task, *worker_tasks]

        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        removed = filter_task.result()
        stats: dict[str, Any] = {
            "mode": mode,
            "started_at": started_at,
            "generation": context.index.generation,
            "forwarded": blacklist_stage.forwarded,
            "blacklisted": len(removed),
            "outcomes": dict(Counter(outcome.status for outcome in outcomes)),
        }

        await self._finalize(context)
        stats["completed_at"] = datetime.utcnow().isoformat()
        logger.info("Crawl completed", extra=sanitize_log_extra(**stats))
        return removed, stats

    @staticmethod
    async def _finalize(context: CrawlContext) -> None:
        try:
            await context.index.flush()
        except Exception as exc:
            logger.error(f"Error flushing the index: {exc}")
            raise CrawlError(f"Error flushing the index: {exc}") from exc

        try:
            await context.index.swap_alias()
        except Exception as exc:
            logger.error(f"Error updating the index alias: {exc}")
            raise CrawlError(f"Error updating the index alias: {exc}") from exc
