"""Bitbucket Cloud listing driver."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from publiccode_crawler.crawlers.contracts import Repository
from publiccode_crawler.crawlers.providers.base import ProviderDriver, strip_userinfo, url_path
from publiccode_crawler.services.publishers import Publisher

BITBUCKET_API_URL = "https://api.bitbucket.org/2.0"
PAGE_LEN = 100


class BitbucketDriver(ProviderDriver):
    """Lists `/repositories/{workspace}`; pages are linked through the `next` field."""

    def generate_api_urls(self, org_url: str) -> list[str]:
        workspace = url_path(org_url).split("/", 1)[0]
        if not workspace:
            raise ValueError(f"{org_url} does not name a Bitbucket workspace")
        return [f"{self._api_base()}/repositories/{workspace}?pagelen={PAGE_LEN}"]

    def parse_listing(self, payload: Any, headers: Mapping[str, str], url: str) -> tuple[list[dict[str, Any]], str]:
        if not isinstance(payload, dict):
            raise ValueError(f"expected a paginated object, got {type(payload).__name__}")
        values = payload.get("values") or []
        if not isinstance(values, list):
            raise ValueError("`values` is not a list")
        return [item for item in values if isinstance(item, dict)], str(payload.get("next") or "")

    def build_repository(self, item: dict[str, Any], publisher: Publisher) -> Optional[Repository]:
        if item.get("is_private"):
            return None

        full_name = str(item.get("full_name") or "").strip()
        mainbranch = item.get("mainbranch") if isinstance(item.get("mainbranch"), dict) else {}
        branch = str(mainbranch.get("name") or "").strip()
        clone_url = self._https_clone_url(item)
        if not full_name or not branch or not clone_url:
            return None

        return self._candidate(
            name=full_name,
            file_raw_url=f"https://{self._domain.host}/{full_name}/raw/{branch}/{self._crawled_filename}",
            git_clone_url=clone_url,
            git_branch=branch,
            publisher=publisher,
            item=item,
        )

    def repository_api_url(self, repo_url: str) -> str:
        parts = url_path(repo_url).split("/")
        if len(parts) < 2 or not parts[0] or not parts[1]:
            raise ValueError(f"{repo_url} is not a Bitbucket repository URL")
        return f"{self._api_base()}/repositories/{parts[0]}/{parts[1]}"

    def _api_base(self) -> str:
        return self._domain.api_base_url or BITBUCKET_API_URL

    @staticmethod
    def _https_clone_url(item: dict[str, Any]) -> str:
        links = item.get("links") if isinstance(item.get("links"), dict) else {}
        for link in links.get("clone") or []:
            if isinstance(link, dict) and link.get("name") == "https" and link.get("href"):
                return strip_userinfo(str(link["href"]))
        return ""
