"""Crawl job entrypoints shared by the HTTP app and the event handler."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Sequence
from urllib.parse import urlsplit

from publiccode_crawler.config.settings import settings
from publiccode_crawler.orchestrator import CrawlerOrchestrator
from publiccode_crawler.services.blacklist import load_blacklist
from publiccode_crawler.services.publishers import Publisher, load_publishers

logger = logging.getLogger(__name__)


def parse_publisher_ids(raw: Any) -> list[str] | None:
    """Parse optional publisher IDs from event payloads/query params."""
    if raw is None:
        return None

    if isinstance(raw, str):
        values: Iterable[Any] = [part.strip() for part in raw.split(",")]
    elif isinstance(raw, (list, tuple, set)):
        values = raw
    else:
        values = [raw]

    parsed: list[str] = []
    for value in values:
        text = str(value).strip()
        if text and text not in parsed:
            parsed.append(text)
    return parsed or None


def select_publishers(publishers: Sequence[Publisher], publisher_ids: Sequence[str] | None) -> list[Publisher]:
    if not publisher_ids:
        return list(publishers)
    wanted = set(publisher_ids)
    return [publisher for publisher in publishers if publisher.id in wanted]


async def run_crawl_publishers(
    *,
    orchestrator: CrawlerOrchestrator | None = None,
    publisher_ids: Sequence[str] | None = None,
    whitelist: Sequence[str] | None = None,
    blacklist: Sequence[str] | None = None,
) -> dict[str, Any]:
    """Crawl whitelisted publishers, then drop blacklisted documents from the index."""
    job_orchestrator = orchestrator or CrawlerOrchestrator()
    started_at = datetime.utcnow().isoformat()

    publishers = select_publishers(load_publishers(whitelist or [settings.WHITELIST_DIR]), publisher_ids)
    snapshot = load_blacklist(blacklist)

    # Only a crawl of the whole whitelist may replace the served generation.
    full_crawl = not publisher_ids
    to_be_removed = await job_orchestrator.crawl_publishers(publishers, blacklist=snapshot, rotate=full_crawl)
    removed = await job_orchestrator.remove_from_index(to_be_removed) if to_be_removed else 0

    return {
        "success": True,
        "started_at": started_at,
        "completed_at": datetime.utcnow().isoformat(),
        "full_crawl": full_crawl,
        "publishers": len(publishers),
        "blacklisted": to_be_removed,
        "removed": removed,
        "stats": job_orchestrator.last_stats,
    }


async def run_crawl_repository(
    *,
    repo_url: str,
    orchestrator: CrawlerOrchestrator | None = None,
    publisher_id: str | None = None,
    whitelist: Sequence[str] | None = None,
) -> dict[str, Any]:
    """Crawl a single repository on behalf of a whitelisted or anonymous publisher."""
    job_orchestrator = orchestrator or CrawlerOrchestrator()
    publisher = _resolve_publisher(repo_url, publisher_id, whitelist)

    stats = await job_orchestrator.crawl_single_repository(repo_url, publisher)
    return {
        "success": True,
        "repository": repo_url,
        "publisher": publisher.id,
        "stats": stats,
    }


def _resolve_publisher(repo_url: str, publisher_id: str | None, whitelist: Sequence[str] | None) -> Publisher:
    if publisher_id:
        for publisher in load_publishers(whitelist or [settings.WHITELIST_DIR]):
            if publisher.id == publisher_id:
                return publisher
        raise ValueError(f"Unknown publisher id: {publisher_id}")

    # Without a whitelist entry there is no codiceIPA to match against.
    host = urlsplit(repo_url).hostname or "unknown"
    logger.info(f"Crawling {repo_url} without a whitelisted publisher")
    return Publisher(id=host, name=host, repositories=(repo_url,), unknown_ipa=True, whitelisted=False)
