"""
Update and rollback orchestrators for the panel updater.

An orchestrator turns one request into one Operation: it takes the operation
lock, runs a sequential pipeline and reports progress on a ProgressChannel.
Every admitted operation ends with exactly one terminal status (success,
error or restarting) followed by the ``finished`` marker.

Update phases:
- idle → checking_remote (optional SSH remote guard)
- idle / checking_remote → backing_up
- backing_up → fetching → installing (one per subproject) → building
- installing / building → restarting (services restarted afterwards)
- installing / building → succeeded (no supervisor configured)
- any non-terminal phase → failed
- fetching / installing / building → rolling_back → failed
  (only with auto_rollback_on_failure)

Rollback phases:
- idle → validating → extracting → installing → building
- installing / building → restarting | succeeded
- any non-terminal phase → failed

Requests that are rejected (invalid snapshot name, unknown snapshot,
another operation running) raise from ``start()`` before anything is
emitted or mutated.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from panel_updater.errors import InternalError, UpdaterError
from panel_updater.logging import get_logger
from panel_updater.updates.pipeline import Command, StepResult, StepStage
from panel_updater.updates.progress import (
    FINISHED,
    ProgressChannel,
    ProgressEvent,
    TerminalStatus,
)
from panel_updater.updates.version import VersionStatus

if TYPE_CHECKING:
    from panel_updater.updates.archive import ArchiveStore, Snapshot
    from panel_updater.updates.lock import OperationLock
    from panel_updater.updates.pipeline import PipelineRunner
    from panel_updater.updates.supervisor import ProcessSupervisor
    from panel_updater.updates.vcs import GitClient
    from panel_updater.updates.version import VersionOracle, VersionState

logger = get_logger(__name__)


class OperationKind(str, Enum):
    """Kinds of operations that hold the operation lock."""

    UPDATE = "update"
    ROLLBACK = "rollback"
    CREATE_BACKUP = "create-backup"
    DELETE_BACKUP = "delete-backup"


class Phase(str, Enum):
    """Phases of an update or rollback."""

    IDLE = "idle"
    CHECKING_REMOTE = "checking_remote"
    BACKING_UP = "backing_up"
    VALIDATING = "validating"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    INSTALLING = "installing"
    BUILDING = "building"
    ROLLING_BACK = "rolling_back"
    RESTARTING = "restarting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TERMINAL_PHASES = {Phase.RESTARTING, Phase.SUCCEEDED, Phase.FAILED}

_UPDATE_TRANSITIONS: dict[Phase, set[Phase]] = {
    Phase.IDLE: {Phase.CHECKING_REMOTE, Phase.BACKING_UP, Phase.FAILED},
    Phase.CHECKING_REMOTE: {Phase.BACKING_UP, Phase.FAILED},
    Phase.BACKING_UP: {Phase.FETCHING, Phase.FAILED},
    Phase.FETCHING: {Phase.INSTALLING, Phase.BUILDING, Phase.RESTARTING,
                     Phase.SUCCEEDED, Phase.ROLLING_BACK, Phase.FAILED},
    Phase.INSTALLING: {Phase.INSTALLING, Phase.BUILDING, Phase.RESTARTING,
                       Phase.SUCCEEDED, Phase.ROLLING_BACK, Phase.FAILED},
    Phase.BUILDING: {Phase.RESTARTING, Phase.SUCCEEDED, Phase.ROLLING_BACK,
                     Phase.FAILED},
    Phase.ROLLING_BACK: {Phase.FAILED},
}

_ROLLBACK_TRANSITIONS: dict[Phase, set[Phase]] = {
    Phase.IDLE: {Phase.VALIDATING, Phase.FAILED},
    Phase.VALIDATING: {Phase.EXTRACTING, Phase.FAILED},
    Phase.EXTRACTING: {Phase.INSTALLING, Phase.BUILDING, Phase.RESTARTING,
                       Phase.SUCCEEDED, Phase.FAILED},
    Phase.INSTALLING: {Phase.INSTALLING, Phase.BUILDING, Phase.RESTARTING,
                       Phase.SUCCEEDED, Phase.FAILED},
    Phase.BUILDING: {Phase.RESTARTING, Phase.SUCCEEDED, Phase.FAILED},
}

_STAGE_PHASES = {
    StepStage.FETCH: Phase.FETCHING,
    StepStage.EXTRACT: Phase.EXTRACTING,
    StepStage.INSTALL: Phase.INSTALLING,
    StepStage.BUILD: Phase.BUILDING,
}


class Operation(BaseModel):
    """
    A single run of an update or rollback.

    Owned by the orchestrator that started it; only that orchestrator
    appends to ``steps``.

    Attributes:
        kind: update or rollback.
        phase: Current phase.
        steps: Log lines in the order they were emitted.
        terminal_status: success, error or restarting once reached.
        message: Message sent with the terminal status.
        closed: Whether the ``finished`` marker was emitted.
        snapshot: Snapshot created (update) or consumed (rollback).
        results: Results of the pipeline steps that ran.
    """

    kind: OperationKind
    phase: Phase = Phase.IDLE
    steps: list[str] = Field(default_factory=list)
    terminal_status: TerminalStatus | None = None
    message: str | None = None
    closed: bool = False
    snapshot: str | None = None
    results: list[StepResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        """Whether the operation ended without error."""
        return self.terminal_status in (TerminalStatus.SUCCESS, TerminalStatus.RESTARTING)


class _OperationSink(ProgressChannel):
    """Records events on the Operation and forwards them to the observer."""

    def __init__(self, operation: Operation, observer: ProgressChannel) -> None:
        super().__init__()
        self._operation = operation
        self._observer = observer

    def _deliver(self, event: ProgressEvent) -> None:
        if event.log is not None:
            self._operation.steps.append(event.log)
            self._observer.emit(event.log, warning=event.level == "warning")
        elif event.status == FINISHED:
            self._operation.closed = True
            self._observer.close()
        else:
            self._operation.terminal_status = TerminalStatus(event.status)
            self._operation.message = event.message
            self._observer.emit_status(event.status, event.message, version=event.version)


def converge_steps(
    root: Path,
    subprojects: list[str],
    install_command: str,
    build_command: str | None,
    build_cwd: str = ".",
    timeout: float | None = None,
) -> list[Command]:
    """
    Build the install-then-build steps shared by update and rollback.

    One install per subproject in the given order, then the optional build.
    """
    extra: dict[str, Any] = {} if timeout is None else {"timeout": timeout}
    steps = [
        Command.from_string(
            f"install {'root' if sub == '.' else sub}",
            install_command,
            root / sub,
            stage=StepStage.INSTALL,
            **extra,
        )
        for sub in subprojects
    ]
    if build_command:
        steps.append(
            Command.from_string(
                "build", build_command, root / build_cwd, stage=StepStage.BUILD, **extra
            )
        )
    return steps


class _Orchestrator:
    """Lock handling, phase tracking and the terminal-event guarantee."""

    kind: OperationKind
    transitions: dict[Phase, set[Phase]]

    def __init__(
        self,
        store: ArchiveStore,
        runner: PipelineRunner,
        lock: OperationLock,
        supervisor: ProcessSupervisor | None = None,
        *,
        converge: list[Command] | None = None,
        clean_restore: bool = False,
    ) -> None:
        self.store = store
        self.runner = runner
        self.lock = lock
        self.supervisor = supervisor
        self.converge = list(converge or [])
        self.clean_restore = clean_restore

    def _advance(self, operation: Operation, phase: Phase) -> None:
        current = operation.phase
        if phase not in self.transitions.get(current, set()):
            raise InternalError(
                f"Invalid phase transition from {current.value} to {phase.value}",
                details={
                    "operation": self.kind.value,
                    "current_phase": current.value,
                    "target_phase": phase.value,
                },
            )
        logger.info(
            f"Phase transition: {current.value} -> {phase.value}",
            extra={
                "operation": self.kind.value,
                "old_phase": current.value,
                "new_phase": phase.value,
            },
        )
        operation.phase = phase

    def _on_step(self, operation: Operation) -> Any:
        def on_step(command: Command) -> None:
            phase = _STAGE_PHASES[command.stage]
            if operation.phase is not phase or phase is Phase.INSTALLING:
                self._advance(operation, phase)

        return on_step

    def _launch(self, operation: Operation, channel: ProgressChannel, **kwargs: Any) -> asyncio.Task[Operation]:
        try:
            return asyncio.create_task(self._execute(operation, channel, **kwargs))
        except BaseException:
            self.lock.release()
            raise

    async def _execute(
        self,
        operation: Operation,
        channel: ProgressChannel,
        **kwargs: Any,
    ) -> Operation:
        sink = _OperationSink(operation, channel)
        restart = False
        try:
            restart = await self._pipeline(operation, sink, **kwargs)
        except UpdaterError as e:
            logger.error(
                f"{self.kind.value.capitalize()} failed",
                extra={"phase": operation.phase.value, "error": e.to_dict()},
            )
            self._fail(operation, sink, f"{self.kind.value.capitalize()} failed: {e.message}")
        except Exception:
            logger.exception(
                f"Unexpected error during {self.kind.value}",
                extra={"phase": operation.phase.value},
            )
            self._fail(operation, sink, "An internal error occurred; see the server log.")
        finally:
            try:
                if sink.terminal_status is None:
                    self._fail(operation, sink, f"{self.kind.value.capitalize()} was interrupted.")
                if not sink.closed:
                    sink.close()
            finally:
                operation.finished_at = datetime.now(UTC)
                if not (restart and self._schedule_restart()):
                    self.lock.release()

        logger.info(
            f"{self.kind.value.capitalize()} finished",
            extra={
                "terminal_status": operation.terminal_status.value
                if operation.terminal_status
                else None,
                "snapshot": operation.snapshot,
                "steps_run": len(operation.results),
            },
        )
        return operation

    def _schedule_restart(self) -> bool:
        """
        Schedule the service restart, handing the lock over to it.

        The lock stays held until the restart commands have been issued, so
        no other operation can start in a tree that is about to be restarted.
        Returns whether a restart was scheduled.
        """
        if self.supervisor is None:
            return False
        task = self.supervisor.schedule_restart()
        if task is None:
            return False
        task.add_done_callback(lambda _: self.lock.release())
        return True

    def _fail(self, operation: Operation, sink: ProgressChannel, message: str) -> None:
        if sink.terminal_status is not None:
            logger.error(
                "Failure after the terminal status was sent",
                extra={"terminal_status": sink.terminal_status.value, "error": message},
            )
            return
        if operation.phase not in _TERMINAL_PHASES:
            operation.phase = Phase.FAILED
        sink.emit_status(TerminalStatus.ERROR, message)

    def _finish(self, operation: Operation, sink: ProgressChannel, done: str) -> bool:
        """Emit the success status; return whether a restart must follow."""
        if self.supervisor is not None and self.supervisor.enabled:
            self._advance(operation, Phase.RESTARTING)
            sink.emit_status(
                TerminalStatus.RESTARTING,
                f"{done} Restarting the panel in {self.supervisor.restart_delay:g} seconds...",
            )
            return True
        self._advance(operation, Phase.SUCCEEDED)
        sink.emit_status(TerminalStatus.SUCCESS, done)
        return False

    async def _converge(self, operation: Operation, sink: ProgressChannel) -> StepResult | None:
        """Run the install and build steps; return the failed result, if any."""
        results = await self.runner.run(self.converge, sink, on_step=self._on_step(operation))
        operation.results.extend(results)
        if results and not results[-1].ok:
            return results[-1]
        return None

    def start(self, channel: ProgressChannel, *args: Any, **kwargs: Any) -> asyncio.Task[Operation]:
        raise NotImplementedError

    async def _pipeline(self, operation: Operation, sink: ProgressChannel, **kwargs: Any) -> bool:
        raise NotImplementedError

    async def run(self, channel: ProgressChannel, *args: Any, **kwargs: Any) -> Operation:
        """Start the operation and wait for it to finish."""
        return await self.start(channel, *args, **kwargs)


class UpdateOrchestrator(_Orchestrator):
    """
    Backs up the tree, pulls the latest code and re-converges dependencies.

    Attributes:
        git: Version-control client providing the pull step.
        oracle: Version oracle, used for the optional SSH remote guard.
        auto_rollback: Restore the pre-update snapshot when a pipeline step
            fails after the snapshot was taken.
    """

    kind = OperationKind.UPDATE
    transitions = _UPDATE_TRANSITIONS

    def __init__(
        self,
        store: ArchiveStore,
        runner: PipelineRunner,
        lock: OperationLock,
        git: GitClient,
        oracle: VersionOracle | None = None,
        supervisor: ProcessSupervisor | None = None,
        *,
        converge: list[Command] | None = None,
        clean_restore: bool = False,
        auto_rollback: bool = False,
        pull_timeout: float | None = None,
    ) -> None:
        super().__init__(
            store,
            runner,
            lock,
            supervisor,
            converge=converge,
            clean_restore=clean_restore,
        )
        self.git = git
        self.oracle = oracle
        self.auto_rollback = auto_rollback
        self.pull_timeout = pull_timeout

    def start(self, channel: ProgressChannel) -> asyncio.Task[Operation]:
        """
        Admit an update and run it in the background.

        Returns:
            Task resolving to the closed Operation.

        Raises:
            OperationInProgressError: If another operation holds the lock.
        """
        self.lock.acquire(self.kind.value)
        return self._launch(Operation(kind=self.kind), channel)

    async def _pipeline(self, operation: Operation, sink: ProgressChannel, **kwargs: Any) -> bool:
        if self.oracle is not None and self.oracle.require_ssh_remote:
            self._advance(operation, Phase.CHECKING_REMOTE)
            sink.emit(">>> Checking git remote URL...")
            url = await self.oracle.check_remote_url()
            sink.emit(f"Remote URL: {url}")

        self._advance(operation, Phase.BACKING_UP)
        sink.emit(">>> Creating a backup of the current version...")
        snapshot: Snapshot = await asyncio.to_thread(self.store.create)
        operation.snapshot = snapshot.name
        sink.emit(f"Backup created: {snapshot.name}")

        steps = [self.git.pull_latest(self.store.root, timeout=self.pull_timeout), *self.converge]
        results = await self.runner.run(steps, sink, on_step=self._on_step(operation))
        operation.results.extend(results)

        failed = results[-1] if results and not results[-1].ok else None
        if failed is None:
            return self._finish(operation, sink, "Update completed successfully.")

        error = failed.to_error()
        logger.error("Update pipeline failed", extra={"error": error.to_dict()})
        message = f"Update failed: {error.message}."
        if self.auto_rollback:
            message += " " + await self._restore_snapshot(operation, sink, snapshot.name)
        else:
            message += f" Backup {snapshot.name} is available for rollback."
        self._advance(operation, Phase.FAILED)
        sink.emit_status(TerminalStatus.ERROR, message)
        return False

    async def _restore_snapshot(self, operation: Operation, sink: ProgressChannel, name: str) -> str:
        """Restore the pre-update snapshot; return a sentence describing the result."""
        self._advance(operation, Phase.ROLLING_BACK)
        sink.emit(f">>> Restoring backup {name}...")
        try:
            await asyncio.to_thread(self.store.restore, name, clean=self.clean_restore)
        except UpdaterError as e:
            logger.error("Automatic restore failed", extra={"error": e.to_dict()})
            return f"Automatic restore of {name} failed: {e.message}."

        results = await self.runner.run(self.converge, sink)
        operation.results.extend(results)
        if results and not results[-1].ok:
            return (
                f"Backup {name} was restored but re-installing dependencies failed: "
                f"{results[-1].to_error().message}."
            )
        return f"Backup {name} was restored automatically."


class RollbackOrchestrator(_Orchestrator):
    """Restores a snapshot over the tree and re-converges dependencies."""

    kind = OperationKind.ROLLBACK
    transitions = _ROLLBACK_TRANSITIONS

    def start(self, channel: ProgressChannel, name: str) -> asyncio.Task[Operation]:
        """
        Admit a rollback to the named snapshot and run it in the background.

        Raises:
            InvalidNameError: If the name is invalid. Checked before the lock
                and without filesystem access.
            OperationInProgressError: If another operation holds the lock.
            NotFoundError: If the snapshot does not exist.
        """
        self.store.validate_name(name)
        self.lock.acquire(self.kind.value)
        try:
            self.store.path_for(name)
        except BaseException:
            self.lock.release()
            raise
        return self._launch(Operation(kind=self.kind, snapshot=name), channel, name=name)

    async def _pipeline(self, operation: Operation, sink: ProgressChannel, **kwargs: Any) -> bool:
        name: str = kwargs["name"]
        self._advance(operation, Phase.VALIDATING)
        sink.emit(f">>> Validating backup {name}...")
        self.store.path_for(name)

        self._advance(operation, Phase.EXTRACTING)
        mode = "clean" if self.clean_restore else "overlay"
        sink.emit(f">>> Extracting backup {name} ({mode})...")
        removed = await asyncio.to_thread(self.store.restore, name, clean=self.clean_restore)
        sink.emit("Backup extracted.")
        if removed:
            sink.emit(f"Removed {len(removed)} files not present in the backup.")

        failed = await self._converge(operation, sink)
        if failed is not None:
            error = failed.to_error()
            logger.error("Rollback pipeline failed", extra={"error": error.to_dict()})
            self._advance(operation, Phase.FAILED)
            sink.emit_status(
                TerminalStatus.ERROR,
                f"Rollback failed: {error.message}. Files from {name} were restored; "
                "dependencies may be incomplete.",
            )
            return False

        return self._finish(operation, sink, f"Rollback to {name} completed successfully.")


async def run_version_check(oracle: VersionOracle, channel: ProgressChannel) -> VersionState:
    """
    Run a version check and report it on a channel.

    The terminal event carries the serialized state in ``version``; its
    status is ``error`` when the check failed and ``success`` otherwise.
    """
    try:
        state = await oracle.check(channel)
        failed = state.status is VersionStatus.ERROR
        status = TerminalStatus.ERROR if failed else TerminalStatus.SUCCESS
        channel.emit_status(status, state.message, version=state.to_dict())
    finally:
        if channel.terminal_status is None:
            channel.emit_status(TerminalStatus.ERROR, "Version check was interrupted.")
        if not channel.closed:
            channel.close()
    return state


async def create_snapshot(store: ArchiveStore, lock: OperationLock) -> Snapshot:
    """
    Create a snapshot on demand, under the operation lock.

    Raises:
        OperationInProgressError: If another operation holds the lock.
        IOFailureError: If the snapshot cannot be written.
    """
    with lock.hold(OperationKind.CREATE_BACKUP.value):
        return await asyncio.to_thread(store.create)


async def delete_snapshot(store: ArchiveStore, lock: OperationLock, name: str) -> None:
    """
    Delete a snapshot, under the operation lock.

    Raises:
        InvalidNameError: If the name is invalid (checked before the lock).
        OperationInProgressError: If another operation holds the lock.
        NotFoundError: If the snapshot does not exist.
    """
    store.validate_name(name)
    with lock.hold(OperationKind.DELETE_BACKUP.value):
        await asyncio.to_thread(store.delete, name)
