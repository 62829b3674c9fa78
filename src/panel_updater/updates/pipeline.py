"""
Sequential command pipeline for the panel updater.

A pipeline is an ordered list of external commands (pull latest code,
install dependencies per subproject, rebuild). Each command runs as a child
process in its own working directory; every output line is forwarded to a
ProgressChannel as it is written. The runner stops at the first failing step
and returns the results gathered so far, so the caller can tell exactly how
far the pipeline got.

No step starts until the previous step's process has exited: dependency
installation must not race the code checkout, and a rebuild must not race
dependency installation.
"""

from __future__ import annotations

import asyncio
import os
import re
import shlex
import signal
import time
from collections.abc import Callable, Sequence
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from panel_updater.errors import (
    CommandExitError,
    CommandSpawnError,
    CommandTimeoutError,
    InternalError,
    UpdaterError,
)
from panel_updater.logging import get_logger

if TYPE_CHECKING:
    from panel_updater.updates.progress import ProgressChannel

logger = get_logger(__name__)

DEFAULT_STEP_TIMEOUT_SECONDS = 900.0

# Grace period for a killed child to be reaped.
_KILL_WAIT_SECONDS = 5.0

# Output without a line break is flushed as one line once it reaches this
# size; npm and bundlers can print very long lines.
_STREAM_LIMIT = 1024 * 1024
_READ_CHUNK = 64 * 1024

# Lines longer than this are cut before they reach the observer.
_MAX_LINE_CHARS = 8192

_LINE_BREAK = re.compile(rb"[\r\n]")


class StepStage(str, Enum):
    """What a pipeline step does; orchestrators map stages to phases."""

    FETCH = "fetch"
    EXTRACT = "extract"
    INSTALL = "install"
    BUILD = "build"


class Command(BaseModel):
    """
    One external command in a pipeline.

    Attributes:
        name: Short label shown to the observer (e.g., "install api-backend").
        argv: Program and arguments; never passed through a shell.
        cwd: Working directory.
        stage: What the step does.
        timeout: Upper bound on the step's run time in seconds.
        benign_stderr: Regexes for stderr lines that are progress output.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    argv: tuple[str, ...]
    cwd: Path
    stage: StepStage = StepStage.INSTALL
    timeout: float | None = Field(default=DEFAULT_STEP_TIMEOUT_SECONDS, gt=0)
    benign_stderr: tuple[str, ...] = ()

    @classmethod
    def from_string(
        cls,
        name: str,
        command: str,
        cwd: Path | str,
        **kwargs: object,
    ) -> Command:
        """Build a Command from a shell-style string (split, not executed by a shell)."""
        return cls(name=name, argv=tuple(shlex.split(command)), cwd=Path(cwd), **kwargs)

    @property
    def display(self) -> str:
        """The command line as the observer sees it."""
        return shlex.join(self.argv)


class StepOutcome(str, Enum):
    """Result category of a single step."""

    OK = "ok"
    SPAWN_FAILURE = "spawn_failure"
    NON_ZERO_EXIT = "non_zero_exit"
    TIMEOUT = "timeout"
    ERROR = "error"


class StepResult(BaseModel):
    """
    Result of running one Command.

    Attributes:
        command: The command that ran.
        outcome: ok, spawn_failure, non_zero_exit, timeout or error.
        exit_code: Process exit code, when the process ran.
        duration_seconds: Wall-clock duration.
        error: Description of the failure, if any.
    """

    command: Command
    outcome: StepOutcome
    exit_code: int | None = None
    duration_seconds: float = 0.0
    error: str | None = None

    @property
    def ok(self) -> bool:
        """Whether the step succeeded."""
        return self.outcome is StepOutcome.OK

    def to_error(self) -> UpdaterError:
        """
        Convert a failed result to the matching UpdaterError.

        Raises:
            ValueError: If the step succeeded.
        """
        details = {"step": self.command.name, "command": self.command.display}
        if self.outcome is StepOutcome.NON_ZERO_EXIT:
            return CommandExitError(
                f"Step '{self.command.name}' failed with exit code {self.exit_code}",
                exit_code=self.exit_code if self.exit_code is not None else -1,
                details=details,
            )
        if self.outcome is StepOutcome.TIMEOUT:
            return CommandTimeoutError(
                f"Step '{self.command.name}' timed out after {self.command.timeout}s",
                details=details,
            )
        if self.outcome is StepOutcome.SPAWN_FAILURE:
            return CommandSpawnError(
                f"Step '{self.command.name}' could not be started: {self.error}",
                details=details,
            )
        if self.outcome is StepOutcome.ERROR:
            return InternalError(
                f"Step '{self.command.name}' failed: {self.error}",
                details=details,
            )
        raise ValueError("Successful steps have no error")


def _default_cwd(command: Command) -> Path:
    return command.cwd


class PipelineRunner:
    """
    Runs commands one after another, streaming their output.

    Attributes:
        benign_stderr_patterns: Regexes applied to every command's stderr in
            addition to the command's own ``benign_stderr``.
    """

    def __init__(self, benign_stderr_patterns: Sequence[str] = ()) -> None:
        self.benign_stderr_patterns = [re.compile(p) for p in benign_stderr_patterns]

    def _is_benign(self, command: Command, line: str) -> bool:
        patterns = self.benign_stderr_patterns + [
            re.compile(p) for p in command.benign_stderr
        ]
        return any(p.search(line) for p in patterns)

    async def run(
        self,
        steps: Sequence[Command],
        sink: ProgressChannel,
        cwd_for: Callable[[Command], Path] = _default_cwd,
        on_step: Callable[[Command], None] | None = None,
    ) -> list[StepResult]:
        """
        Run steps in order, stopping at the first failure.

        Args:
            steps: Commands to run.
            sink: Channel receiving every output line.
            cwd_for: Maps a command to its working directory.
            on_step: Called with each command just before it starts.

        Returns:
            One result per step attempted. If step k fails, the list has
            exactly k entries and the last one is the failure.
        """
        results: list[StepResult] = []
        for command in steps:
            if on_step is not None:
                on_step(command)
            result = await self.run_step(command, sink, cwd=cwd_for(command))
            results.append(result)
            if not result.ok:
                logger.warning(
                    "Pipeline stopped",
                    extra={
                        "step": command.name,
                        "outcome": result.outcome.value,
                        "exit_code": result.exit_code,
                        "completed": len(results) - 1,
                        "remaining": len(steps) - len(results),
                    },
                )
                break
        return results

    async def run_step(
        self,
        command: Command,
        sink: ProgressChannel,
        cwd: Path | None = None,
    ) -> StepResult:
        """
        Run a single command, forwarding output lines to ``sink``.

        Never raises for process failures; they are reported in the result.
        """
        cwd = cwd if cwd is not None else command.cwd
        started = time.monotonic()

        logger.info(
            "Starting step",
            extra={"step": command.name, "command": command.display, "cwd": str(cwd)},
        )
        sink.emit(f">>> {command.name}: {command.display}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command.argv,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(
                "Failed to start step",
                extra={"step": command.name, "error": str(e)},
            )
            return StepResult(
                command=command,
                outcome=StepOutcome.SPAWN_FAILURE,
                duration_seconds=time.monotonic() - started,
                error=str(e),
            )

        readers = [
            asyncio.create_task(self._forward(process.stdout, command, sink, is_stderr=False)),
            asyncio.create_task(self._forward(process.stderr, command, sink, is_stderr=True)),
        ]
        try:
            await asyncio.wait_for(self._wait(process, readers), timeout=command.timeout)
        except TimeoutError:
            await self._kill(process, readers)
            logger.error(
                "Step timed out",
                extra={"step": command.name, "timeout": command.timeout},
            )
            return StepResult(
                command=command,
                outcome=StepOutcome.TIMEOUT,
                exit_code=process.returncode,
                duration_seconds=time.monotonic() - started,
                error=f"timed out after {command.timeout}s",
            )
        except asyncio.CancelledError:
            await self._kill(process, readers)
            raise
        except Exception as e:
            await self._kill(process, readers)
            logger.exception("Step aborted", extra={"step": command.name})
            return StepResult(
                command=command,
                outcome=StepOutcome.ERROR,
                exit_code=process.returncode,
                duration_seconds=time.monotonic() - started,
                error=str(e),
            )

        exit_code = process.returncode if process.returncode is not None else -1
        duration = time.monotonic() - started
        if exit_code != 0:
            logger.error(
                "Step failed",
                extra={"step": command.name, "exit_code": exit_code},
            )
            return StepResult(
                command=command,
                outcome=StepOutcome.NON_ZERO_EXIT,
                exit_code=exit_code,
                duration_seconds=duration,
                error=f"exit code {exit_code}",
            )

        logger.info(
            "Step finished",
            extra={"step": command.name, "duration_seconds": round(duration, 3)},
        )
        return StepResult(
            command=command,
            outcome=StepOutcome.OK,
            exit_code=0,
            duration_seconds=duration,
        )

    @staticmethod
    async def _wait(
        process: asyncio.subprocess.Process,
        readers: list[asyncio.Task[None]],
    ) -> None:
        await asyncio.gather(*readers)
        await process.wait()

    @staticmethod
    async def _kill(
        process: asyncio.subprocess.Process,
        readers: list[asyncio.Task[None]],
    ) -> None:
        for reader in readers:
            reader.cancel()
        # The step runs in its own session; kill the whole group so that
        # grandchildren (npm scripts) do not keep the pipes open.
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass  # already exited
        try:
            await asyncio.wait_for(process.wait(), timeout=_KILL_WAIT_SECONDS)
        except TimeoutError:
            logger.warning("Killed step did not exit", extra={"pid": process.pid})

    async def _forward(
        self,
        stream: asyncio.StreamReader | None,
        command: Command,
        sink: ProgressChannel,
        *,
        is_stderr: bool,
    ) -> None:
        if stream is None:
            return
        # Pipe output is split on both '\n' and '\r' so progress meters
        # arrive as separate lines.
        pending = b""
        while chunk := await stream.read(_READ_CHUNK):
            *lines, pending = _LINE_BREAK.split(pending + chunk)
            if len(pending) >= _STREAM_LIMIT:
                lines.append(pending)
                pending = b""
            for raw in lines:
                self._emit_line(raw, command, sink, is_stderr=is_stderr)
        if pending:
            self._emit_line(pending, command, sink, is_stderr=is_stderr)

    def _emit_line(
        self,
        raw: bytes,
        command: Command,
        sink: ProgressChannel,
        *,
        is_stderr: bool,
    ) -> None:
        line = raw.decode("utf-8", errors="replace").rstrip()
        if not line:
            return
        if len(line) > _MAX_LINE_CHARS:
            line = f"{line[:_MAX_LINE_CHARS]}... ({len(line) - _MAX_LINE_CHARS} characters cut)"
        warning = is_stderr and not self._is_benign(command, line)
        sink.emit(line, warning=warning)
