"""Shared behaviour of the per-provider listing drivers."""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional, Protocol
from urllib.parse import urlparse, urlsplit, urlunsplit

from publiccode_crawler.config.settings import settings
from publiccode_crawler.crawlers.contracts import FetchState, PaginationError, Repository
from publiccode_crawler.crawlers.domains import Domain, RandomSource
from publiccode_crawler.services.publishers import Publisher

logger = logging.getLogger(__name__)

_LINK_NEXT_PATTERN = re.compile(r'<([^>]+)>\s*;\s*rel="?next"?')


class RepositorySink(Protocol):
    """Anything candidates can be pushed to (an `asyncio.Queue` or a wrapper)."""

    async def put(self, item: Repository) -> None:
        ...


class ProviderDriver(ABC):
    """Turns organization URLs into listing requests and listing pages into candidates."""

    def __init__(
        self,
        client: Any,
        domain: Domain,
        *,
        random_source: Optional[RandomSource] = None,
        crawled_filename: Optional[str] = None,
    ) -> None:
        self._client = client
        self._domain = domain
        self._random_source = random_source
        self._crawled_filename = crawled_filename or settings.CRAWLED_FILENAME

    @property
    def domain(self) -> Domain:
        return self._domain

    @abstractmethod
    def generate_api_urls(self, org_url: str) -> list[str]:
        """Return the listing seed URLs for an organization, most specific first."""

    @abstractmethod
    def parse_listing(self, payload: Any, headers: Mapping[str, str], url: str) -> tuple[list[dict[str, Any]], str]:
        """Split one decoded listing page into repository items and the next page URL."""

    @abstractmethod
    def build_repository(self, item: dict[str, Any], publisher: Publisher) -> Optional[Repository]:
        """Map one provider item to a candidate, or `None` when it must be skipped."""

    @abstractmethod
    def repository_api_url(self, repo_url: str) -> str:
        """API URL describing a single repository."""

    def generate_api_url(self, org_url: str) -> str:
        return self.generate_api_urls(org_url)[0]

    async def process_and_get_next_url(self, url: str, intake: RepositorySink, publisher: Publisher) -> str:
        """Fetch one listing page, push its candidates and return the next page URL.

        An empty string means the last page was reached. Remote and decode failures
        raise `PaginationError`; nothing is pushed for a page that fails to decode.
        """

        response = await self._client.get_json(url, self.request_headers())
        if response.state == FetchState.EMPTY:
            return ""
        if response.state != FetchState.OK:
            raise PaginationError(url, response.error or f"HTTP {response.status_code}")

        try:
            items, next_url = self.parse_listing(response.data, response.headers or {}, url)
        except (KeyError, TypeError, ValueError) as exc:
            raise PaginationError(url, f"unexpected listing payload: {exc}") from exc

        for item in items:
            repository = self.build_repository(item, publisher)
            if repository is not None:
                await intake.put(repository)
        return next_url

    async def process_single_repo(self, repo_url: str, intake: RepositorySink, publisher: Publisher) -> None:
        api_url = self.repository_api_url(repo_url)
        response = await self._client.get_json(api_url, self.request_headers())
        if response.state != FetchState.OK or not isinstance(response.data, dict):
            raise PaginationError(api_url, response.error or f"HTTP {response.status_code}")

        repository = self.build_repository(response.data, publisher)
        if repository is None:
            logger.info(f"Repository {repo_url} is not crawlable (private, archived or empty)")
            return
        await intake.put(repository)

    def request_headers(self) -> dict[str, str]:
        return self._domain.auth_headers(self._random_source)

    def _candidate(
        self,
        *,
        name: str,
        file_raw_url: str,
        git_clone_url: str,
        git_branch: str,
        publisher: Publisher,
        item: dict[str, Any],
    ) -> Repository:
        return Repository(
            name=name,
            hostname=self._domain.host,
            file_raw_url=file_raw_url,
            git_clone_url=git_clone_url,
            git_branch=git_branch,
            domain=self._domain,
            publisher=publisher,
            headers=self.request_headers(),
            metadata=json.dumps(item, sort_keys=True, default=str).encode("utf-8"),
        )


def url_path(url: str) -> str:
    """Path of `url` without surrounding slashes or a trailing `.git`."""
    path = urlparse(url).path.strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    return path


def next_link(headers: Mapping[str, str]) -> str:
    """Extract the `rel="next"` target from an RFC 8288 `Link` header."""
    link = header_value(headers, "link")
    if not link:
        return ""
    for part in link.split(","):
        match = _LINK_NEXT_PATTERN.search(part)
        if match:
            return match.group(1)
    return ""


def strip_userinfo(url: str) -> str:
    parts = urlsplit(url)
    if "@" not in parts.netloc:
        return url
    return urlunsplit((parts.scheme, parts.netloc.rsplit("@", 1)[1], parts.path, parts.query, parts.fragment))


def header_value(headers: Mapping[str, str], name: str) -> str:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return ""
