"""Producer stage: publishers and organizations to repository candidates."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from publiccode_crawler.crawlers.client import sanitize_log_extra
from publiccode_crawler.crawlers.context import CrawlContext
from publiccode_crawler.crawlers.contracts import END_OF_STREAM, PaginationError, Repository
from publiccode_crawler.crawlers.domains import Domain, UnknownHostError
from publiccode_crawler.crawlers.providers import ProviderDriver, get_driver
from publiccode_crawler.services.index_publisher import normalize_clone_url
from publiccode_crawler.services.publishers import Publisher

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProducerStats:
    publishers: int = 0
    organizations: int = 0
    pages: int = 0
    candidates: int = 0
    failed_organizations: int = 0
    failed_repositories: int = 0


class _CountingSink:
    """Forwards candidates to the intake, dropping repeats within one organization."""

    def __init__(self, intake: asyncio.Queue, stats: ProducerStats) -> None:
        self._intake = intake
        self._stats = stats
        self._seen: set[str] = set()

    async def put(self, repository: Repository) -> None:
        key = normalize_clone_url(repository.git_clone_url)
        if key in self._seen:
            return
        self._seen.add(key)
        self._stats.candidates += 1
        await self._intake.put(repository)


class ProducerStage:
    """Drives the listing drivers and pushes every candidate onto the intake queue."""

    def __init__(
        self,
        context: CrawlContext,
        *,
        driver_factory: Callable[..., ProviderDriver] = get_driver,
    ) -> None:
        self._context = context
        self._driver_factory = driver_factory
        self.stats = ProducerStats()

    async def produce_single(self, repo_url: str, publisher: Publisher, intake: asyncio.Queue) -> None:
        """Push one repository. Unknown hosts and API failures propagate to the caller."""
        logger.info(f"Processing repository: {repo_url}")
        domain = self._context.domains.resolve(repo_url)
        driver = self._driver(domain)
        await driver.process_single_repo(repo_url, _CountingSink(intake, self.stats), publisher)

    async def produce_publishers(self, publishers: Sequence[Publisher], intake: asyncio.Queue) -> ProducerStats:
        """Crawl every publisher concurrently, then close the intake exactly once."""

        org_count = sum(len(publisher.organizations) for publisher in publishers)
        logger.info(
            f"{org_count} organizations belonging to {len(publishers)} publishers are going to be scanned"
        )

        try:
            results = await asyncio.gather(
                *(self.crawl_publisher(publisher, intake) for publisher in publishers),
                return_exceptions=True,
            )
            for publisher, result in zip(publishers, results):
                if isinstance(result, Exception):
                    logger.error(
                        "Publisher crawl aborted",
                        extra=sanitize_log_extra(publisher=publisher.name, error=str(result)),
                    )
        finally:
            await intake.put(END_OF_STREAM)
        return self.stats

    async def crawl_publisher(self, publisher: Publisher, intake: asyncio.Queue) -> None:
        logger.info(f"Processing publisher: {publisher.name}")
        self.stats.publishers += 1

        for org_url in publisher.organizations:
            try:
                domain = self._context.domains.resolve(org_url)
            except UnknownHostError as exc:
                self.stats.failed_organizations += 1
                logger.error(f"Skipping organization {org_url}: {exc}")
                continue
            await self.crawl_org(org_url, domain, publisher, intake)

        for repo_url in publisher.repositories:
            try:
                domain = self._context.domains.resolve(repo_url)
                await self._driver(domain).process_single_repo(repo_url, _CountingSink(intake, self.stats), publisher)
            except (UnknownHostError, PaginationError, ValueError) as exc:
                self.stats.failed_repositories += 1
                logger.error(f"Skipping repository {repo_url}: {exc}")

    async def crawl_org(self, org_url: str, domain: Domain, publisher: Publisher, intake: asyncio.Queue) -> None:
        """Traverse one organization's listing pages.

        Seed URLs are alternative API shapes for the same organization (e.g. orgs
        and users): a failing seed moves on to the next one, and the first seed that
        reaches its last page completes the organization.
        """

        self.stats.organizations += 1
        driver = self._driver(domain)
        try:
            seeds = driver.generate_api_urls(org_url)
        except ValueError as exc:
            self.stats.failed_organizations += 1
            logger.error(f"generate_api_urls error for {org_url}: {exc}")
            return

        sink = _CountingSink(intake, self.stats)
        for seed in seeds:
            url = seed
            try:
                while url:
                    url = await driver.process_and_get_next_url(url, sink, publisher)
                    self.stats.pages += 1
            except PaginationError as exc:
                logger.warning(
                    "Abandoning organization listing",
                    extra=sanitize_log_extra(organization=org_url, seed=seed, error=str(exc)),
                )
                continue
            return

        self.stats.failed_organizations += 1
        logger.error(f"No listing endpoint of {org_url} could be read")

    def _driver(self, domain: Domain) -> Any:
        return self._driver_factory(self._context.client, domain, random_source=self._context.random_source)
