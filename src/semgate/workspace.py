from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import List, Optional

from .errors import AcquisitionError, WorkspaceError
from .logging import ScanLogger, mask_credentials

WORKSPACE_PREFIX = "semgate-"


class WorkspaceManager:
    """
    Per-run scratch directories holding one checked-out revision.

    Names combine a millisecond timestamp with mkdtemp's random suffix, so
    concurrent runs never share a directory and no locking is needed.
    """

    def __init__(
        self,
        root: Path,
        logger: ScanLogger,
        clone_base_url: str = "https://github.com",
        clone_timeout: int = 120,
        git_bin: str = "git",
    ):
        self.root = Path(root)
        self.logger = logger
        self.clone_base_url = clone_base_url.rstrip("/")
        self.clone_timeout = clone_timeout
        self.git_bin = git_bin

    def acquire(self) -> Path:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path = tempfile.mkdtemp(
                prefix=f"{WORKSPACE_PREFIX}{int(time.time() * 1000)}-",
                dir=str(self.root),
            )
        except OSError as exc:
            raise WorkspaceError(f"Failed to create workspace under {self.root}: {exc}") from exc
        self.logger.info("Workspace created", path=path)
        return Path(path)

    def clone_url(self, repository: str, token: str) -> str:
        scheme, _, host = self.clone_base_url.partition("://")
        return f"{scheme}://x-access-token:{token}@{host}/{repository}.git"

    async def populate(
        self,
        path: Path,
        repository: str,
        revision: str,
        token: str,
        fallback_ref: Optional[str] = None,
    ) -> None:
        """
        Check out exactly `revision` into `path` with a depth-1 fetch.

        The commit is fetched by SHA; when the server refuses that, `fallback_ref`
        (normally `refs/pull/<n>/head`, which also covers fork PRs) is fetched
        instead and must resolve to the same commit. The token is passed only on
        the command line and never written to the repository config.
        """
        url = self.clone_url(repository, token)
        await self._git(["init", "--quiet", str(path)])
        try:
            await self._fetch(path, url, revision)
        except AcquisitionError as exc:
            if not fallback_ref:
                raise
            self.logger.warning(
                "Fetch by revision failed; trying pull request ref",
                revision=revision,
                ref=fallback_ref,
                error=str(exc),
            )
            await self._fetch(path, url, fallback_ref)

        await self._git(["checkout", "--quiet", "--detach", "FETCH_HEAD"], cwd=path)
        head = (await self._git(["rev-parse", "HEAD"], cwd=path)).strip()
        if head != revision:
            raise AcquisitionError(
                f"Fetched revision {head or '<none>'} does not match requested revision {revision}"
            )
        self.logger.info("Repository checked out", repo=repository, revision=head)

    async def _fetch(self, path: Path, url: str, ref: str) -> None:
        await self._git(["fetch", "--quiet", "--depth", "1", "--no-tags", url, ref], cwd=path)

    def release(self, path: Optional[Path]) -> bool:
        """Remove the workspace; failures are logged and never raised."""
        if path is None:
            return True
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return True
        except OSError as exc:
            self.logger.warning("Failed to clean up workspace", path=str(path), error=str(exc))
            return False
        self.logger.info("Workspace cleaned up", path=str(path))
        return True

    async def _git(self, args: List[str], cwd: Optional[Path] = None) -> str:
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            proc = await asyncio.create_subprocess_exec(
                self.git_bin,
                *args,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as exc:
            raise AcquisitionError(f"git executable not found: {self.git_bin}") from exc

        try:
            stdout_b, stderr_b = await asyncio.wait_for(
                proc.communicate(), timeout=float(self.clone_timeout)
            )
        except TimeoutError as exc:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise AcquisitionError(
                f"git {args[0]} timed out after {self.clone_timeout} seconds"
            ) from exc

        if proc.returncode != 0:
            detail = mask_credentials((stderr_b or b"").decode("utf-8", errors="replace").strip())
            raise AcquisitionError(f"git {args[0]} failed with exit code {proc.returncode}: {detail}")
        return (stdout_b or b"").decode("utf-8", errors="replace")
