"""Per-provider listing drivers."""

from typing import Any, Optional

from publiccode_crawler.crawlers.domains import (
    PROVIDER_BITBUCKET,
    PROVIDER_GITHUB,
    PROVIDER_GITLAB,
    Domain,
    RandomSource,
)
from publiccode_crawler.crawlers.providers.base import ProviderDriver
from publiccode_crawler.crawlers.providers.bitbucket import BitbucketDriver
from publiccode_crawler.crawlers.providers.github import GitHubDriver
from publiccode_crawler.crawlers.providers.gitlab import GitLabDriver

_DRIVERS: dict[str, type[ProviderDriver]] = {
    PROVIDER_GITHUB: GitHubDriver,
    PROVIDER_GITLAB: GitLabDriver,
    PROVIDER_BITBUCKET: BitbucketDriver,
}


def get_driver(client: Any, domain: Domain, *, random_source: Optional[RandomSource] = None) -> ProviderDriver:
    """Return the listing driver for `domain`'s provider."""
    driver_cls = _DRIVERS.get(domain.provider)
    if driver_cls is None:
        raise ValueError(f"no listing driver for provider {domain.provider}")
    return driver_cls(client, domain, random_source=random_source)


__all__ = [
    "BitbucketDriver",
    "GitHubDriver",
    "GitLabDriver",
    "ProviderDriver",
    "get_driver",
]
