"""Repository stage: fetch, validate, clone, score and publish one candidate."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from publiccode_crawler.crawlers.client import sanitize_log_extra
from publiccode_crawler.crawlers.context import CrawlContext
from publiccode_crawler.crawlers.contracts import END_OF_STREAM, FetchState, Repository
from publiccode_crawler.services.activity import ActivityRecord
from publiccode_crawler.services.manifest import (
    ManifestError,
    ParsedManifest,
    manifest_base_url,
    validate_whitelist,
)
from publiccode_crawler.services.metrics import (
    REPOSITORY_CLONED,
    REPOSITORY_FILE_INDEXED,
    REPOSITORY_FILE_SAVED,
    REPOSITORY_PROCESSED,
)

logger = logging.getLogger(__name__)

OUTCOME_PUBLISHED = "published"
OUTCOME_SKIPPED = "skipped"
OUTCOME_REJECTED = "rejected"
OUTCOME_FAILED = "failed"


@dataclass(slots=True)
class RepositoryOutcome:
    """Terminal state of one candidate."""

    name: str
    git_clone_url: str
    status: str
    reason: Optional[str] = None
    document_key: Optional[str] = None


class RepositoryStage:
    """Processes candidates one at a time; run `run_worker` once per pool slot."""

    def __init__(self, context: CrawlContext) -> None:
        self._context = context

    async def run_worker(self, work: asyncio.Queue, outcomes: list[RepositoryOutcome]) -> None:
        while True:
            repository = await work.get()
            if repository is END_OF_STREAM:
                return
            try:
                outcome = await self.process(repository)
            except Exception as exc:
                logger.exception(
                    "Repository processing raised",
                    extra=sanitize_log_extra(repository=repository.name, error=str(exc)),
                )
                outcome = RepositoryOutcome(
                    name=repository.name,
                    git_clone_url=repository.git_clone_url,
                    status=OUTCOME_FAILED,
                    reason=str(exc),
                )
            outcomes.append(outcome)

    async def process(self, repository: Repository) -> RepositoryOutcome:
        context = self._context
        context.counters.increment(REPOSITORY_PROCESSED)

        response = await context.client.get_url(repository.file_raw_url, repository.headers)
        if response.state != FetchState.OK or response.data is None:
            logger.debug(
                f"[{repository.name}] no publiccode.yml at {repository.file_raw_url} "
                f"(status={response.status_code}, error={response.error})"
            )
            return self._outcome(repository, OUTCOME_SKIPPED, reason=f"manifest not found ({response.status_code})")

        content: bytes = response.data
        context.counters.increment(REPOSITORY_FILE_SAVED)
        logger.info(f"[{repository.name}] publiccode.yml found at {repository.file_raw_url}")

        manifest: Optional[ParsedManifest]
        if repository.publisher.unknown_ipa:
            logger.warning(
                f"[{repository.name}] publisher {repository.publisher.name} has an unknown IPA: "
                "whitelist match is skipped"
            )
            manifest = self._parse_quietly(repository, content)
        else:
            try:
                manifest = context.parser.parse(
                    content,
                    base_url=manifest_base_url(repository.file_raw_url),
                    domain=repository.domain,
                )
                validate_whitelist(repository.publisher, manifest, repository.file_raw_url)
            except ManifestError as exc:
                logger.warning(f"[{repository.name}] invalid publiccode.yml: {exc}")
                await context.dead_letter.append(repository.file_raw_url, str(exc), content)
                return self._outcome(repository, OUTCOME_REJECTED, reason=str(exc))

        try:
            await context.git.clone_or_update(
                hostname=repository.hostname,
                name=repository.name,
                clone_url=repository.git_clone_url,
                branch=repository.git_branch,
            )
            context.counters.increment(REPOSITORY_CLONED)
        except Exception as exc:
            logger.error(f"[{repository.name}] error while cloning: {exc}")

        record = await self._activity(repository)

        try:
            key = await context.index.publish(repository, record.index, record.vitality, content, manifest)
        except Exception as exc:
            logger.error(f"[{repository.name}] error saving to the index: {exc}")
            return self._outcome(repository, OUTCOME_FAILED, reason=f"publish failed: {exc}")

        context.counters.increment(REPOSITORY_FILE_INDEXED)
        return self._outcome(repository, OUTCOME_PUBLISHED, document_key=key)

    async def _activity(self, repository: Repository) -> ActivityRecord:
        context = self._context
        path = context.git.clone_path(repository.hostname, repository.name)
        record, error = await context.activity.calculate_for_clone(context.git, path)
        if error is not None:
            logger.error(f"[{repository.name}] error calculating activity index: {error}")
        logger.info(
            f"[{repository.name}] activity index in the last {context.activity.days} days: {record.index}"
        )
        return record

    def _parse_quietly(self, repository: Repository, content: bytes) -> Optional[ParsedManifest]:
        try:
            return self._context.parser.parse(
                content,
                base_url=manifest_base_url(repository.file_raw_url),
                domain=repository.domain,
            )
        except ManifestError as exc:
            logger.info(f"[{repository.name}] publishing raw publiccode.yml: {exc}")
            return None

    @staticmethod
    def _outcome(
        repository: Repository,
        status: str,
        *,
        reason: Optional[str] = None,
        document_key: Optional[str] = None,
    ) -> RepositoryOutcome:
        return RepositoryOutcome(
            name=repository.name,
            git_clone_url=repository.git_clone_url,
            status=status,
            reason=reason,
            document_key=document_key,
        )
