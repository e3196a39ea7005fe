"""Typed contracts shared by the crawl pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Mapping, Optional, TypeVar

from publiccode_crawler.crawlers.domains import Domain
from publiccode_crawler.services.publishers import Publisher

T = TypeVar("T")

# Enqueued once a channel's producers are done; consumers stop when they take it.
END_OF_STREAM: Any = object()


class FetchState(str, Enum):
    """Outcome of a remote fetch; never an exception for the caller."""

    OK = "ok"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass(slots=True)
class FetchResult(Generic[T]):
    """Result of one HTTP request issued through the crawler client."""

    state: FetchState
    data: Optional[T] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Repository:
    """A candidate repository travelling from the producer to one worker.

    `file_raw_url` is the direct URL of the raw manifest file.
    """

    name: str
    hostname: str
    file_raw_url: str
    git_clone_url: str
    git_branch: str
    domain: Domain
    publisher: Publisher
    headers: Mapping[str, str] = field(default_factory=dict)
    metadata: bytes = b""


class PaginationError(Exception):
    """A listing page could not be fetched or decoded."""

    def __init__(self, url: str, reason: Any) -> None:
        super().__init__(f"error reading {url}: {reason}")
        self.url = url
        self.reason = reason


class CrawlError(Exception):
    """The crawl could not be finalized (flush or alias swap failed)."""


class ConfigurationError(Exception):
    """Startup configuration is unusable; crawling must not start."""
