"""Blacklisted repositories loaded from YAML files."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional

import yaml

from publiccode_crawler.config.settings import settings
from publiccode_crawler.services.index_publisher import document_key, normalize_clone_url

logger = logging.getLogger(__name__)


def load_blacklist(paths: Optional[Iterable[str | Path]] = None) -> dict[str, str]:
    """Snapshot of `normalized clone URL -> removal id`.

    Each YAML file holds a list of `{url, reason, id}` entries; `id` defaults to
    the document key the repository is published under.
    """

    snapshot: dict[str, str] = {}
    for path in _yaml_files(paths or [settings.BLACKLIST_DIR]):
        with open(path, "r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle) or []
        if not isinstance(payload, list):
            raise ValueError(f"blacklist {path} must contain a list of entries")

        for entry in payload:
            if not isinstance(entry, dict) or not str(entry.get("url") or "").strip():
                continue
            url = normalize_clone_url(str(entry["url"]))
            snapshot[url] = str(entry.get("id") or document_key(url))

    logger.info(f"Loaded {len(snapshot)} blacklisted repositories")
    return snapshot


def _yaml_files(paths: Iterable[str | Path]) -> list[Path]:
    files: list[Path] = []
    for raw_path in paths:
        path = Path(raw_path)
        if path.is_dir():
            files.extend(sorted([*path.glob("*.yml"), *path.glob("*.yaml")]))
        elif path.exists():
            files.append(path)
    return files
