"""Code hosting domains loaded from `domains.yml`."""

from __future__ import annotations

import base64
import logging
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol
from urllib.parse import urlparse

import yaml

logger = logging.getLogger(__name__)

PROVIDER_GITHUB = "github"
PROVIDER_GITLAB = "gitlab"
PROVIDER_BITBUCKET = "bitbucket"

KNOWN_PROVIDERS = (PROVIDER_GITHUB, PROVIDER_GITLAB, PROVIDER_BITBUCKET)


class UnknownHostError(Exception):
    """A URL's hostname matches none of the configured domains."""


class RandomSource(Protocol):
    def randbelow(self, upper: int) -> int:
        ...


class SecretsRandom:
    """Uniform integers in `[0, upper)` from the OS CSPRNG."""

    def randbelow(self, upper: int) -> int:
        return secrets.randbelow(upper)


@dataclass(frozen=True, slots=True)
class Domain:
    """One code hosting provider and the credentials used against it."""

    host: str
    provider: str
    api_base_url: str = ""
    use_token_for: tuple[str, ...] = ()
    basic_auth: tuple[str, ...] = ()

    def auth_headers(self, random_source: Optional[RandomSource] = None) -> dict[str, str]:
        """Pick one configured basic-auth credential at random."""
        if not self.basic_auth:
            return {}
        source = random_source or SecretsRandom()
        credential = self.basic_auth[source.randbelow(len(self.basic_auth))]
        encoded = base64.b64encode(credential.encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {encoded}"}

    def uses_token_for(self, host: str) -> bool:
        return _normalize_host(host) in self.use_token_for


class DomainRegistry:
    """Resolves crawlable URLs to exactly one configured `Domain`."""

    def __init__(self, domains: Iterable[Domain]) -> None:
        self._by_host: dict[str, Domain] = {}
        for domain in domains:
            if domain.host in self._by_host:
                raise ValueError(f"domain {domain.host} is configured more than once")
            self._by_host[domain.host] = domain

    def __len__(self) -> int:
        return len(self._by_host)

    @property
    def domains(self) -> list[Domain]:
        return list(self._by_host.values())

    def resolve(self, url: str) -> Domain:
        hostname = _normalize_host(urlparse(url).hostname or "")
        if not hostname:
            raise UnknownHostError(f"{url} has no hostname")
        domain = self._by_host.get(hostname)
        if domain is None:
            raise UnknownHostError(f"{hostname} is not a known code hosting domain")
        return domain


def domain_from_mapping(raw: dict[str, Any]) -> Domain:
    host = _normalize_host(str(raw.get("host") or ""))
    if not host:
        raise ValueError("domain entry without host")

    provider = str(raw.get("provider") or _infer_provider(host)).strip().lower()
    if provider not in KNOWN_PROVIDERS:
        raise ValueError(f"domain {host} has unsupported provider {provider}")

    return Domain(
        host=host,
        provider=provider,
        api_base_url=str(raw.get("api-base-url") or raw.get("api_base_url") or "").rstrip("/"),
        use_token_for=tuple(_normalize_host(str(item)) for item in raw.get("use-token-for") or ()),
        basic_auth=tuple(str(item) for item in raw.get("basic-auth") or () if str(item).strip()),
    )


def load_domains(path: str | Path) -> DomainRegistry:
    """Read and parse the domain list.

    Raises `ValueError` or `OSError` when the file is missing or invalid; callers
    treat both as fatal startup errors.
    """

    with open(path, "r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or []
    if not isinstance(payload, list):
        raise ValueError(f"{path} must contain a list of domains")

    registry = DomainRegistry(domain_from_mapping(raw) for raw in payload if isinstance(raw, dict))
    logger.info(f"Loaded {len(registry)} code hosting domains from {path}")
    return registry


def _infer_provider(host: str) -> str:
    if "github" in host:
        return PROVIDER_GITHUB
    if "bitbucket" in host:
        return PROVIDER_BITBUCKET
    return PROVIDER_GITLAB


def _normalize_host(host: str) -> str:
    normalized = host.strip().lower()
    if normalized.startswith("www."):
        normalized = normalized[4:]
    return normalized
