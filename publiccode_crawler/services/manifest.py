"""publiccode.yml parsing and whitelist validation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urljoin, urlparse

import yaml

from publiccode_crawler.config.settings import settings
from publiccode_crawler.crawlers.domains import Domain
from publiccode_crawler.services.publishers import Publisher

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("publiccodeYmlVersion", "name", "url")
IPA_URN_PREFIX = "urn:x-italian-pa:"


class ManifestError(Exception):
    """Content is not a usable publiccode.yml."""


class WhitelistMismatchError(ManifestError):
    """The manifest's codiceIPA differs from the publisher's whitelist entry."""


@dataclass(slots=True)
class ParsedManifest:
    """A syntactically valid manifest plus the fields the crawler relies on."""

    data: dict[str, Any]
    base_url: str
    codice_ipa: str = ""
    warnings: list[str] = field(default_factory=list)


def manifest_base_url(file_raw_url: str, crawled_filename: Optional[str] = None) -> str:
    """Directory URL relative references inside the manifest resolve against."""
    filename = crawled_filename or settings.CRAWLED_FILENAME
    return file_raw_url.removesuffix(filename)


class PubliccodeParser:
    """Non-strict publiccode.yml parser.

    Relative `logo` and screenshot paths are resolved against the manifest's base
    URL; hosts listed in the domain's `use-token-for` are flagged as needing the
    domain credentials when those assets are fetched.
    """

    def __init__(self, *, strict: bool = False) -> None:
        self._strict = strict

    def parse(self, content: bytes, *, base_url: str, domain: Domain) -> ParsedManifest:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as exc:
            raise ManifestError(f"invalid YAML: {exc}") from exc

        if not isinstance(data, dict):
            raise ManifestError("publiccode.yml must be a mapping")

        missing = [key for key in REQUIRED_KEYS if not data.get(key)]
        if missing:
            raise ManifestError(f"missing required keys: {', '.join(missing)}")

        manifest = ParsedManifest(data=data, base_url=base_url, codice_ipa=_codice_ipa(data))
        self._resolve_assets(manifest, domain)

        if self._strict and manifest.warnings:
            raise ManifestError("; ".join(manifest.warnings))
        return manifest

    @staticmethod
    def _resolve_assets(manifest: ParsedManifest, domain: Domain) -> None:
        data = manifest.data
        if isinstance(data.get("logo"), str):
            data["logo"] = _absolute(data["logo"], manifest.base_url)

        descriptions = data.get("description")
        if isinstance(descriptions, dict):
            for language, description in descriptions.items():
                if not isinstance(description, dict):
                    manifest.warnings.append(f"description.{language} is not a mapping")
                    continue
                screenshots = description.get("screenshots")
                if isinstance(screenshots, list):
                    description["screenshots"] = [
                        _absolute(item, manifest.base_url) for item in screenshots if isinstance(item, str)
                    ]

        asset_host = urlparse(manifest.base_url).hostname or ""
        if domain.uses_token_for(asset_host):
            data.setdefault("x-crawler", {})["authenticatedAssets"] = True


def validate_whitelist(publisher: Publisher, manifest: ParsedManifest, file_raw_url: str) -> None:
    """Require the manifest's codiceIPA to match the publisher's (case-insensitive, trimmed)."""
    expected = publisher.codice_ipa.strip()
    found = manifest.codice_ipa.strip()
    if expected.casefold() != found.casefold():
        raise WhitelistMismatchError(
            f"codiceIPA for {file_raw_url} is {found!r}, which differs from the one "
            f"assigned to the org in the whitelist: {expected!r}"
        )


def _codice_ipa(data: dict[str, Any]) -> str:
    italian = data.get("it") if isinstance(data.get("it"), dict) else {}
    riuso = italian.get("riuso") if isinstance(italian.get("riuso"), dict) else {}
    codice = riuso.get("codiceIPA")
    if codice:
        return str(codice)

    organisation = data.get("organisation") if isinstance(data.get("organisation"), dict) else {}
    uri = str(organisation.get("uri") or "")
    if uri.lower().startswith(IPA_URN_PREFIX):
        return uri[len(IPA_URN_PREFIX):]
    return ""


def _absolute(reference: str, base_url: str) -> str:
    if urlparse(reference).scheme:
        return reference
    return urljoin(base_url, reference)
