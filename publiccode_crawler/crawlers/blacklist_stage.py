"""Blacklist stage: keeps blacklisted repositories away from the worker pool."""

from __future__ import annotations

import asyncio
import logging
from typing import Mapping

from publiccode_crawler.crawlers.contracts import END_OF_STREAM
from publiccode_crawler.services.index_publisher import normalize_clone_url

logger = logging.getLogger(__name__)


class BlacklistStage:
    """Streams the intake into the work queue, diverting blacklisted candidates."""

    def __init__(self) -> None:
        self.forwarded = 0

    async def filter(
        self,
        intake: asyncio.Queue,
        work: asyncio.Queue,
        blacklist: Mapping[str, str],
        *,
        consumers: int,
    ) -> list[str]:
        """Drain `intake` until closed and return removal ids, each listed once.

        `blacklist` is a snapshot taken before filtering starts. The work queue is
        closed with one sentinel per consumer even if filtering fails.
        """

        snapshot = {normalize_clone_url(url): removal_id for url, removal_id in blacklist.items()}
        to_be_removed: list[str] = []
        seen: set[str] = set()

        try:
            while True:
                repository = await intake.get()
                if repository is END_OF_STREAM:
                    break

                removal_id = snapshot.get(normalize_clone_url(repository.git_clone_url))
                if removal_id is None:
                    await work.put(repository)
                    self.forwarded += 1
                    continue

                if removal_id not in seen:
                    seen.add(removal_id)
                    to_be_removed.append(removal_id)
                logger.warning(f"marked as blacklisted {repository.git_clone_url} ({removal_id})")
        finally:
            for _ in range(consumers):
                await work.put(END_OF_STREAM)

        return to_be_removed
