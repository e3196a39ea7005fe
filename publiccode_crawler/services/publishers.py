"""Publisher whitelist loading."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import yaml

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Publisher:
    """A public administration and the code hosting locations it owns.

    `unknown_ipa` disables the `codiceIPA` whitelist check for this publisher.
    `whitelisted` is false for the stand-in built for an ad hoc repository crawl;
    such publishers are never written to the publishers index.
    """

    id: str
    name: str
    codice_ipa: str = ""
    organizations: tuple[str, ...] = ()
    repositories: tuple[str, ...] = ()
    unknown_ipa: bool = False
    whitelisted: bool = True


def publisher_from_mapping(raw: dict[str, Any]) -> Publisher:
    codice_ipa = str(raw.get("codiceIPA") or raw.get("codice_ipa") or "").strip()
    name = str(raw.get("name") or "").strip()
    return Publisher(
        id=str(raw.get("id") or codice_ipa or name).strip(),
        name=name,
        codice_ipa=codice_ipa,
        organizations=_as_urls(raw.get("orgs") or raw.get("organizations")),
        repositories=_as_urls(raw.get("repos") or raw.get("repositories")),
        unknown_ipa=bool(raw.get("unknown_ipa") or raw.get("unknownIPA") or False),
    )


def load_publishers(paths: Iterable[str | Path]) -> list[Publisher]:
    """Load publishers from whitelist YAML files or directories of them.

    Duplicate ids keep the first occurrence.
    """

    publishers: list[Publisher] = []
    seen: set[str] = set()
    for path in _expand_yaml_paths(paths):
        with open(path, "r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle) or []
        if not isinstance(payload, list):
            raise ValueError(f"whitelist {path} must contain a list of publishers")

        for raw in payload:
            if not isinstance(raw, dict):
                continue
            publisher = publisher_from_mapping(raw)
            if not publisher.id or publisher.id in seen:
                logger.warning(
                    "Skipping duplicate or anonymous publisher",
                    extra={"whitelist": str(path), "publisher": publisher.name},
                )
                continue
            seen.add(publisher.id)
            publishers.append(publisher)

    logger.info(f"Loaded {len(publishers)} publishers from whitelist")
    return publishers


def _as_urls(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = [raw]
    return tuple(str(item).strip() for item in raw if str(item).strip())


def _expand_yaml_paths(paths: Iterable[str | Path]) -> list[Path]:
    expanded: list[Path] = []
    for raw_path in paths:
        path = Path(raw_path)
        if path.is_dir():
            expanded.extend(sorted([*path.glob("*.yml"), *path.glob("*.yaml")]))
        elif path.exists():
            expanded.append(path)
        else:
            logger.warning("Whitelist path does not exist", extra={"path": str(path)})
    return expanded
