"""Append-only log of manifests that failed validation."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from publiccode_crawler.config.settings import settings

logger = logging.getLogger(__name__)


class DeadLetterLog:
    """JSON-lines file, one `{url, reason, content, logged_at}` record per rejection."""

    def __init__(self, path: Optional[str | Path] = None) -> None:
        self._path = Path(path) if path else Path(settings.CRAWLER_DATADIR) / settings.DEAD_LETTER_FILE
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def append(self, url: str, reason: str, content: bytes) -> None:
        record = {
            "url": url,
            "reason": reason,
            "content": content.decode("utf-8", errors="replace"),
            "logged_at": datetime.now(timezone.utc).isoformat(),
        }
        async with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")

    def read(self) -> list[dict[str, Any]]:
        if not self._path.exists():
            return []
        with open(self._path, "r", encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]
