"""GitHub (and GitHub Enterprise) listing driver."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from publiccode_crawler.config.settings import settings
from publiccode_crawler.crawlers.contracts import Repository
from publiccode_crawler.crawlers.providers.base import ProviderDriver, next_link, url_path
from publiccode_crawler.services.publishers import Publisher

GITHUB_API_URL = "https://api.github.com"
GITHUB_RAW_URL = "https://raw.githubusercontent.com"
PER_PAGE = 100


class GitHubDriver(ProviderDriver):
    """Lists `/orgs/{org}/repos`, falling back to `/users/{org}/repos`."""

    def generate_api_urls(self, org_url: str) -> list[str]:
        owner = url_path(org_url).split("/", 1)[0]
        if not owner:
            raise ValueError(f"{org_url} does not name a GitHub organization")
        base = self._api_base()
        return [
            f"{base}/orgs/{owner}/repos?per_page={PER_PAGE}",
            f"{base}/users/{owner}/repos?per_page={PER_PAGE}",
        ]

    def parse_listing(self, payload: Any, headers: Mapping[str, str], url: str) -> tuple[list[dict[str, Any]], str]:
        if not isinstance(payload, list):
            raise ValueError(f"expected a list of repositories, got {type(payload).__name__}")
        return [item for item in payload if isinstance(item, dict)], next_link(headers)

    def build_repository(self, item: dict[str, Any], publisher: Publisher) -> Optional[Repository]:
        if item.get("private") or item.get("archived"):
            return None

        full_name = str(item.get("full_name") or "").strip()
        branch = str(item.get("default_branch") or "").strip()
        clone_url = str(item.get("clone_url") or "").strip()
        if not full_name or not branch or not clone_url:
            return None

        return self._candidate(
            name=full_name,
            file_raw_url=self._raw_url(full_name, branch),
            git_clone_url=clone_url,
            git_branch=branch,
            publisher=publisher,
            item=item,
        )

    def repository_api_url(self, repo_url: str) -> str:
        parts = url_path(repo_url).split("/")
        if len(parts) < 2 or not parts[0] or not parts[1]:
            raise ValueError(f"{repo_url} is not a GitHub repository URL")
        return f"{self._api_base()}/repos/{parts[0]}/{parts[1]}"

    def request_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        auth = super().request_headers()
        if auth:
            headers.update(auth)
        elif settings.GITHUB_TOKEN:
            headers["Authorization"] = f"Bearer {settings.GITHUB_TOKEN}"
        return headers

    def _api_base(self) -> str:
        if self._domain.api_base_url:
            return self._domain.api_base_url
        if self._domain.host == "github.com":
            return GITHUB_API_URL
        return f"https://{self._domain.host}/api/v3"

    def _raw_url(self, full_name: str, branch: str) -> str:
        if self._domain.host == "github.com":
            return f"{GITHUB_RAW_URL}/{full_name}/{branch}/{self._crawled_filename}"
        return f"https://{self._domain.host}/{full_name}/raw/{branch}/{self._crawled_filename}"
