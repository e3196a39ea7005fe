"""Activity index and vitality series derived from commit history."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from publiccode_crawler.config.settings import activity_days, settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ActivityRecord:
    """Scalar activity index in `[0, 100)` and per-bucket commit counts, oldest first."""

    index: float
    vitality: tuple[int, ...]

    @classmethod
    def empty(cls, buckets: int) -> "ActivityRecord":
        return cls(index=0.0, vitality=(0,) * buckets)


class ActivityCalculator:
    """Buckets commits over a trailing window and scores them by recency."""

    def __init__(self, *, days: Optional[int] = None, bucket_days: Optional[int] = None) -> None:
        self._days = max(int(days if days is not None else activity_days()), 1)
        self._bucket_days = max(int(bucket_days or settings.ACTIVITY_BUCKET_DAYS), 1)

    @property
    def days(self) -> int:
        return self._days

    @property
    def bucket_count(self) -> int:
        return math.ceil(self._days / self._bucket_days)

    def calculate(self, commit_times: Iterable[datetime], *, now: Optional[datetime] = None) -> ActivityRecord:
        """Commits outside `(now - days, now]` are ignored."""

        end = _as_utc(now or datetime.now(timezone.utc))
        start = end - timedelta(days=self._days)
        bucket_width = timedelta(days=self._bucket_days)
        buckets = [0] * self.bucket_count

        for raw in commit_times:
            moment = _as_utc(raw)
            if moment <= start or moment > end:
                continue
            position = int((moment - start) / bucket_width)
            buckets[min(position, self.bucket_count - 1)] += 1

        return ActivityRecord(index=self._score(buckets), vitality=tuple(buckets))

    async def calculate_for_clone(
        self,
        git_client: Any,
        path: str | Path,
        *,
        now: Optional[datetime] = None,
    ) -> tuple[ActivityRecord, Optional[Exception]]:
        """Read history from a local clone; failures yield the zero record plus the error."""

        try:
            history = await git_client.read_commit_history(path, self._days)
        except Exception as exc:
            return ActivityRecord.empty(self.bucket_count), exc
        return self.calculate(history, now=now), None

    def _score(self, buckets: list[int]) -> float:
        # Linear recency weight, newest bucket weighs 1; saturates towards 100.
        count = len(buckets)
        weighted = sum(commits * (position + 1) / count for position, commits in enumerate(buckets))
        if weighted <= 0:
            return 0.0
        return round(100.0 * (1.0 - math.exp(-weighted / count)), 2)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
