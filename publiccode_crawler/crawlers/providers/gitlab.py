"""GitLab (gitlab.com and self-managed instances) listing driver."""

from __future__ import annotations

from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from publiccode_crawler.config.settings import settings
from publiccode_crawler.crawlers.contracts import Repository
from publiccode_crawler.crawlers.providers.base import ProviderDriver, header_value, next_link, url_path
from publiccode_crawler.services.publishers import Publisher

PER_PAGE = 100


class GitLabDriver(ProviderDriver):
    """Lists group projects (subgroups included), falling back to user projects."""

    def generate_api_urls(self, org_url: str) -> list[str]:
        path = url_path(org_url)
        if not path:
            raise ValueError(f"{org_url} does not name a GitLab group")
        encoded = quote(path, safe="")
        base = self._api_base()
        return [
            f"{base}/groups/{encoded}/projects?include_subgroups=true&per_page={PER_PAGE}",
            f"{base}/users/{encoded}/projects?per_page={PER_PAGE}",
        ]

    def parse_listing(self, payload: Any, headers: Mapping[str, str], url: str) -> tuple[list[dict[str, Any]], str]:
        if not isinstance(payload, list):
            raise ValueError(f"expected a list of projects, got {type(payload).__name__}")
        items = [item for item in payload if isinstance(item, dict)]

        next_url = next_link(headers)
        if not next_url:
            next_page = header_value(headers, "x-next-page").strip()
            if next_page:
                next_url = _with_query(url, page=next_page)
        return items, next_url

    def build_repository(self, item: dict[str, Any], publisher: Publisher) -> Optional[Repository]:
        if item.get("archived") or item.get("visibility") == "private":
            return None

        name = str(item.get("path_with_namespace") or "").strip()
        web_url = str(item.get("web_url") or "").strip().rstrip("/")
        clone_url = str(item.get("http_url_to_repo") or "").strip()
        branch = str(item.get("default_branch") or "").strip()
        if not name or not web_url or not clone_url or not branch:
            return None

        return self._candidate(
            name=name,
            file_raw_url=f"{web_url}/raw/{branch}/{self._crawled_filename}",
            git_clone_url=clone_url,
            git_branch=branch,
            publisher=publisher,
            item=item,
        )

    def repository_api_url(self, repo_url: str) -> str:
        path = url_path(repo_url)
        if "/" not in path:
            raise ValueError(f"{repo_url} is not a GitLab project URL")
        return f"{self._api_base()}/projects/{quote(path, safe='')}"

    def request_headers(self) -> dict[str, str]:
        headers = super().request_headers()
        if not headers and settings.GITLAB_TOKEN and self._domain.host == "gitlab.com":
            headers["PRIVATE-TOKEN"] = settings.GITLAB_TOKEN
        return headers

    def _api_base(self) -> str:
        return self._domain.api_base_url or f"https://{self._domain.host}/api/v4"


def _with_query(url: str, **params: str) -> str:
    parts = urlsplit(url)
    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    query.update(params)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))
