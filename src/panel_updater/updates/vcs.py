"""
Git client used by the version oracle and the update pipeline.

Each lookup is a blocking (awaited) git invocation in the application root
that returns its trimmed stdout or raises VersionCheckError. Mutating steps
(the pull) are not run here; the client only builds the Command so that the
PipelineRunner can stream its output.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from panel_updater.errors import VersionCheckError
from panel_updater.logging import get_logger
from panel_updater.updates.pipeline import Command, StepStage

logger = get_logger(__name__)

DEFAULT_GIT_TIMEOUT_SECONDS = 120.0


class GitClient:
    """
    Thin async wrapper around the git executable.

    Attributes:
        remote: Remote name (e.g., "origin").
        branch: Branch pulled during an update.
        timeout: Bound for each invocation in seconds.
    """

    def __init__(
        self,
        remote: str = "origin",
        branch: str = "main",
        timeout: float = DEFAULT_GIT_TIMEOUT_SECONDS,
        executable: str = "git",
    ) -> None:
        self.remote = remote
        self.branch = branch
        self.timeout = timeout
        self.executable = executable

    async def _run_git(self, cwd: Path, *args: str) -> str:
        """
        Run git and return its stripped stdout.

        Raises:
            VersionCheckError: If git is missing, times out, or exits non-zero.
        """
        command = [self.executable, *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise VersionCheckError(
                f"Failed to run git: {e}",
                details={"command": " ".join(command), "cwd": str(cwd)},
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout
            )
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise VersionCheckError(
                f"git {args[0]} timed out after {self.timeout}s",
                details={"command": " ".join(command)},
            ) from e

        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip() or (
                f"git {args[0]} exited with code {proc.returncode}"
            )
            raise VersionCheckError(
                message,
                details={
                    "command": " ".join(command),
                    "exit_code": proc.returncode,
                },
            )

        return stdout.decode("utf-8", errors="replace").strip()

    @property
    def upstream(self) -> str:
        """The remote-tracking ref compared against the local HEAD."""
        return f"{self.remote}/{self.branch}"

    async def remote_url(self, cwd: Path) -> str:
        """Return the configured URL of the remote."""
        return await self._run_git(cwd, "config", "--get", f"remote.{self.remote}.url")

    async def refresh_remote(self, cwd: Path) -> None:
        """Fetch remote references without touching the working tree."""
        await self._run_git(cwd, "fetch", self.remote)

    async def local_ref(self, cwd: Path) -> str:
        """Return the commit id of HEAD."""
        return await self._run_git(cwd, "rev-parse", "HEAD")

    async def remote_ref(self, cwd: Path) -> str:
        """Return the commit id of the remote-tracking branch."""
        return await self._run_git(cwd, "rev-parse", self.upstream)

    async def merge_base(self, cwd: Path) -> str:
        """Return the best common ancestor of HEAD and the remote branch."""
        return await self._run_git(cwd, "merge-base", "HEAD", self.upstream)

    def pull_latest(self, cwd: Path, timeout: float | None = None) -> Command:
        """Build the pipeline step that pulls the latest code."""
        return Command(
            name="pull latest code",
            argv=(self.executable, "pull", self.remote, self.branch),
            cwd=cwd,
            stage=StepStage.FETCH,
            timeout=timeout if timeout is not None else self.timeout,
        )
