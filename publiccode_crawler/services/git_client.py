"""
Git access for cloned repositories.

All git commands run as asyncio subprocesses so a slow clone only blocks the
worker that issued it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dateutil import parser as date_parser

from publiccode_crawler.config.settings import settings

logger = logging.getLogger(__name__)


class GitError(Exception):
    """A git command exited with a non-zero status."""


class GitClient:
    """Clones repositories under `{data_dir}/repos/{hostname}/{name}/gitClone`."""

    def __init__(self, data_dir: Optional[str | Path] = None, *, timeout: Optional[int] = None) -> None:
        self._data_dir = Path(data_dir or settings.CRAWLER_DATADIR)
        self._timeout = timeout or settings.GIT_TIMEOUT_SECONDS

    def clone_path(self, hostname: str, name: str) -> Path:
        return self._data_dir / "repos" / hostname / name / "gitClone"

    async def clone_or_update(self, *, hostname: str, name: str, clone_url: str, branch: str) -> Path:
        """Clone the repository, or fetch and hard-reset an existing clone."""
        path = self.clone_path(hostname, name)

        if (path / ".git").exists():
            await self._check(["git", "fetch", "--quiet", "origin", branch], cwd=path)
            await self._check(["git", "reset", "--quiet", "--hard", f"origin/{branch}"], cwd=path)
            return path

        if path.exists():
            # Leftover of an interrupted clone; git refuses to clone into it.
            shutil.rmtree(path, ignore_errors=True)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await self._check(
                ["git", "clone", "--quiet", "--single-branch", "--branch", branch, clone_url, str(path)],
                cwd=path.parent,
            )
        except GitError:
            shutil.rmtree(path, ignore_errors=True)
            raise
        return path

    async def read_commit_history(self, path: str | Path, since_days: int) -> list[datetime]:
        """Commit timestamps (UTC) of the checked-out branch within the last `since_days`."""
        output, code = await self._run(
            ["git", "log", f"--since={int(since_days)}.days", "--format=%cI"],
            cwd=Path(path),
        )
        if code != 0:
            raise GitError(f"git log failed in {path}")

        timestamps: list[datetime] = []
        for line in (output or "").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                timestamps.append(date_parser.isoparse(line).astimezone(timezone.utc))
            except (TypeError, ValueError):
                logger.debug(f"Ignoring unparsable commit date {line!r} in {path}")
        return timestamps

    async def _check(self, cmd: list[str], *, cwd: Path) -> str:
        output, code = await self._run(cmd, cwd=cwd)
        if code != 0:
            raise GitError(f"{' '.join(cmd[:2])} exited with {code}: {output or ''}".strip())
        return output or ""

    async def _run(self, cmd: list[str], *, cwd: Path) -> tuple[Optional[str], int]:
        """Run a git command and return `(output, returncode)`; -1 on timeout or spawn failure."""
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            )
        except OSError as e:
            logger.error(f"Git command failed to start: {cmd[:2]} - {e}")
            return None, -1

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning(f"Git command timed out: {' '.join(cmd[:2])} in {cwd}")
            return None, -1

        if process.returncode != 0:
            return stderr.decode("utf-8", errors="replace").strip(), process.returncode
        return stdout.decode("utf-8", errors="replace").strip(), process.returncode
