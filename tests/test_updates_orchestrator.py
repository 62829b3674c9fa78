"""
Tests for the update and rollback orchestrators.

Tests cover:
- Update and rollback pipelines end to end (real child processes)
- The terminal-event guarantee on success, failure and interruption
- Single-operation admission
- Automatic restore after a failed update
- Version checks and on-demand snapshot operations
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import EXCLUDES, FakeGit, py_command

from panel_updater.errors import (
    InvalidNameError,
    NotFoundError,
    OperationInProgressError,
)
from panel_updater.updates.archive import ArchiveStore
from panel_updater.updates.lock import OperationLock
from panel_updater.updates.orchestrator import (
    Operation,
    OperationKind,
    Phase,
    RollbackOrchestrator,
    UpdateOrchestrator,
    converge_steps,
    create_snapshot,
    delete_snapshot,
    run_version_check,
)
from panel_updater.updates.pipeline import Command, PipelineRunner, StepStage
from panel_updater.updates.progress import (
    CollectingProgressChannel,
    ProgressEvent,
    TerminalStatus,
)
from panel_updater.updates.supervisor import ProcessSupervisor
from panel_updater.updates.version import VersionOracle

# =============================================================================
# Helpers
# =============================================================================


@pytest.fixture
def store(app_tree: Path) -> ArchiveStore:
    return ArchiveStore(app_tree, app_tree / "backups", exclude=EXCLUDES)


@pytest.fixture
def lock() -> OperationLock:
    return OperationLock()


def _ok_converge(root: Path) -> list[Command]:
    return [
        py_command("install root", "print('added 12 packages')", root),
        py_command("install api-backend", "print('added 3 packages')", root / "api-backend"),
        py_command("build", "print('built')", root, stage=StepStage.BUILD),
    ]


def _updater(
    store: ArchiveStore,
    lock: OperationLock,
    git: FakeGit,
    converge: list[Command],
    **kwargs: object,
) -> UpdateOrchestrator:
    return UpdateOrchestrator(store, PipelineRunner(), lock, git, converge=converge, **kwargs)


def assert_well_formed(events: list[ProgressEvent]) -> ProgressEvent:
    """Exactly one terminal status, then finished, then nothing."""
    statuses = [i for i, e in enumerate(events) if e.status is not None]
    assert len(statuses) == 2
    terminal, finished = (events[i] for i in statuses)
    assert terminal.is_terminal
    assert finished.status == "finished"
    assert statuses == [len(events) - 2, len(events) - 1]
    return terminal


def _logs(events: list[ProgressEvent]) -> list[str]:
    return [e.log for e in events if e.log is not None]


# =============================================================================
# converge_steps Tests
# =============================================================================


class TestConvergeSteps:
    """Tests for converge_steps."""

    def test_install_per_subproject_then_build(self, tmp_path: Path) -> None:
        steps = converge_steps(
            tmp_path, [".", "api-backend", "proxy"], "npm install", "npm run build"
        )

        assert [s.name for s in steps] == [
            "install root",
            "install api-backend",
            "install proxy",
            "build",
        ]
        assert steps[1].cwd == tmp_path / "api-backend"
        assert steps[1].argv == ("npm", "install")
        assert steps[-1].stage is StepStage.BUILD

    def test_no_build_and_timeout(self, tmp_path: Path) -> None:
        steps = converge_steps(tmp_path, ["."], "npm ci", None, timeout=60)

        assert [s.name for s in steps] == ["install root"]
        assert steps[0].timeout == 60


# =============================================================================
# Update Tests
# =============================================================================


class TestUpdate:
    """Tests for UpdateOrchestrator."""

    @pytest.mark.asyncio
    async def test_successful_update(
        self, store: ArchiveStore, lock: OperationLock, fake_git: FakeGit, app_tree: Path
    ) -> None:
        channel = CollectingProgressChannel()
        updater = _updater(store, lock, fake_git, _ok_converge(app_tree))

        operation = await updater.run(channel)

        terminal = assert_well_formed(channel.events)
        assert terminal.status == "success"
        assert terminal.message == "Update completed successfully."
        assert operation.phase is Phase.SUCCEEDED
        assert operation.succeeded
        assert operation.closed
        assert operation.finished_at is not None
        assert [r.command.name for r in operation.results] == [
            "pull latest code",
            "install root",
            "install api-backend",
            "build",
        ]
        assert [s.name for s in store.list()] == [operation.snapshot]
        assert not lock.locked

    @pytest.mark.asyncio
    async def test_progress_lines_in_order(
        self, store: ArchiveStore, lock: OperationLock, fake_git: FakeGit, app_tree: Path
    ) -> None:
        channel = CollectingProgressChannel()

        operation = await _updater(store, lock, fake_git, _ok_converge(app_tree)).run(channel)

        logs = _logs(channel.events)
        assert logs[0] == ">>> Creating a backup of the current version..."
        assert logs[1] == f"Backup created: {operation.snapshot}"
        assert logs[2].startswith(">>> pull latest code: ")
        assert logs[3] == "Already up to date."
        assert logs.index("added 12 packages") < logs.index("added 3 packages")
        assert logs.index("added 3 packages") < logs.index("built")
        assert operation.steps == logs

    @pytest.mark.asyncio
    async def test_restart_follows_success(
        self, store: ArchiveStore, lock: OperationLock, fake_git: FakeGit, app_tree: Path
    ) -> None:
        supervisor = ProcessSupervisor("pm2", ["panel"], restart_delay=0)
        restart = AsyncMock()
        channel = CollectingProgressChannel()
        updater = _updater(
            store, lock, fake_git, _ok_converge(app_tree), supervisor=supervisor
        )

        with patch.object(supervisor, "restart", new=restart):
            operation = await updater.run(channel)
            await supervisor.drain()

        terminal = assert_well_formed(channel.events)
        assert terminal.status == "restarting"
        assert terminal.message == (
            "Update completed successfully. Restarting the panel in 0 seconds..."
        )
        assert operation.phase is Phase.RESTARTING
        restart.assert_awaited_once()
        assert not lock.locked

    @pytest.mark.asyncio
    async def test_lock_held_until_restart_issued(
        self, store: ArchiveStore, lock: OperationLock, fake_git: FakeGit, app_tree: Path
    ) -> None:
        supervisor = ProcessSupervisor("pm2", ["panel"], restart_delay=0.2)
        restart = AsyncMock()
        updater = _updater(
            store, lock, fake_git, _ok_converge(app_tree), supervisor=supervisor
        )

        with patch.object(supervisor, "restart", new=restart):
            await updater.run(CollectingProgressChannel())

            assert lock.holder == "update"
            with pytest.raises(OperationInProgressError):
                updater.start(CollectingProgressChannel())
            restart.assert_not_awaited()

            await supervisor.drain()
            await asyncio.sleep(0)

        restart.assert_awaited_once()
        assert not lock.locked

    @pytest.mark.asyncio
    async def test_failed_step_stops_pipeline(
        self, store: ArchiveStore, lock: OperationLock, fake_git: FakeGit, app_tree: Path
    ) -> None:
        marker = app_tree / "built.marker"
        converge = [
            py_command("install root", "print('ok')", app_tree),
            py_command("install api-backend", "import sys; sys.exit(1)", app_tree),
            py_command(
                "build", f"open({str(marker)!r}, 'w').close()", app_tree, stage=StepStage.BUILD
            ),
        ]
        channel = CollectingProgressChannel()

        operation = await _updater(store, lock, fake_git, converge).run(channel)

        terminal = assert_well_formed(channel.events)
        assert terminal.status == "error"
        assert terminal.message.startswith(
            "Update failed: Step 'install api-backend' failed with exit code 1."
        )
        assert f"Backup {operation.snapshot} is available for rollback." in terminal.message
        assert operation.phase is Phase.FAILED
        assert not marker.exists()
        assert len(operation.results) == 3
        assert not lock.locked

    @pytest.mark.asyncio
    async def test_failed_pull(
        self, store: ArchiveStore, lock: OperationLock, app_tree: Path
    ) -> None:
        git = FakeGit(pull_code="import sys; sys.stderr.write('fatal: no remote\\n'); sys.exit(128)")
        channel = CollectingProgressChannel()

        operation = await _updater(store, lock, git, _ok_converge(app_tree)).run(channel)

        terminal = assert_well_formed(channel.events)
        assert terminal.status == "error"
        assert "pull latest code" in terminal.message
        assert {"log": "fatal: no remote", "level": "warning"} in [
            e.to_dict() for e in channel.events
        ]
        assert len(operation.results) == 1

    @pytest.mark.asyncio
    async def test_backup_failure_aborts_before_pull(
        self, app_tree: Path, lock: OperationLock, fake_git: FakeGit
    ) -> None:
        store = ArchiveStore(app_tree, app_tree / "backups", min_free_bytes=10_000)
        channel = CollectingProgressChannel()

        with patch("psutil.disk_usage", return_value=MagicMock(free=1)):
            operation = await _updater(store, lock, fake_git, _ok_converge(app_tree)).run(
                channel
            )

        terminal = assert_well_formed(channel.events)
        assert terminal.message == (
            "Update failed: Not enough free disk space to create a backup"
        )
        assert operation.phase is Phase.FAILED
        assert operation.results == []
        assert not lock.locked

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_reported(
        self, store: ArchiveStore, lock: OperationLock, fake_git: FakeGit, app_tree: Path
    ) -> None:
        channel = CollectingProgressChannel()
        updater = _updater(store, lock, fake_git, _ok_converge(app_tree))

        with patch.object(store, "create", side_effect=RuntimeError("boom")):
            operation = await updater.run(channel)

        terminal = assert_well_formed(channel.events)
        assert terminal.message == "An internal error occurred; see the server log."
        assert operation.terminal_status is TerminalStatus.ERROR
        assert not lock.locked

    @pytest.mark.asyncio
    async def test_ssh_guard_failure(
        self, store: ArchiveStore, lock: OperationLock, app_tree: Path
    ) -> None:
        git = FakeGit(url="https://github.com/example/panel.git")
        oracle = VersionOracle(git, app_tree, require_ssh_remote=True)
        channel = CollectingProgressChannel()

        operation = await _updater(
            store, lock, git, _ok_converge(app_tree), oracle=oracle
        ).run(channel)

        terminal = assert_well_formed(channel.events)
        assert terminal.status == "error"
        assert "not configured for SSH" in terminal.message
        assert _logs(channel.events) == [">>> Checking git remote URL..."]
        assert store.list() == []
        assert operation.phase is Phase.FAILED

    @pytest.mark.asyncio
    async def test_interrupted_update_still_terminates_stream(
        self, store: ArchiveStore, lock: OperationLock, app_tree: Path
    ) -> None:
        git = FakeGit(pull_code="import time; time.sleep(2)")
        channel = CollectingProgressChannel()
        task = _updater(store, lock, git, _ok_converge(app_tree)).start(channel)

        await asyncio.sleep(0.3)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        terminal = assert_well_formed(channel.events)
        assert terminal.message == "Update was interrupted."
        assert not lock.locked


class TestAutomaticRestore:
    """Tests for auto_rollback."""

    @pytest.mark.asyncio
    async def test_failed_update_restores_snapshot(
        self, store: ArchiveStore, lock: OperationLock, app_tree: Path
    ) -> None:
        # The pull brings in v2; the install fails on v2 and succeeds on v1.
        git = FakeGit(pull_code="open('src/index.js', 'w').write(\"console.log('v2')\\n\")")
        converge = [
            py_command(
                "install root",
                "import sys; sys.exit(1 if 'v2' in open('src/index.js').read() else 0)",
                app_tree,
            )
        ]
        channel = CollectingProgressChannel()

        operation = await _updater(store, lock, git, converge, auto_rollback=True).run(channel)

        terminal = assert_well_formed(channel.events)
        assert terminal.status == "error"
        assert terminal.message.endswith(
            f"Backup {operation.snapshot} was restored automatically."
        )
        assert f">>> Restoring backup {operation.snapshot}..." in _logs(channel.events)
        assert (app_tree / "src" / "index.js").read_text() == "console.log('v1')\n"
        assert operation.phase is Phase.FAILED

    @pytest.mark.asyncio
    async def test_restore_with_failing_reinstall(
        self, store: ArchiveStore, lock: OperationLock, fake_git: FakeGit, app_tree: Path
    ) -> None:
        converge = [py_command("install root", "import sys; sys.exit(2)", app_tree)]
        channel = CollectingProgressChannel()

        operation = await _updater(store, lock, fake_git, converge, auto_rollback=True).run(
            channel
        )

        terminal = assert_well_formed(channel.events)
        assert "was restored but re-installing dependencies failed" in terminal.message
        assert operation.phase is Phase.FAILED


# =============================================================================
# Admission Tests
# =============================================================================


class TestSingleOperation:
    """At most one mutating operation runs at a time."""

    @pytest.mark.asyncio
    async def test_concurrent_requests_are_rejected(
        self, store: ArchiveStore, lock: OperationLock, app_tree: Path
    ) -> None:
        existing = store.create()
        git = FakeGit(pull_code="import time; time.sleep(0.5); print('pulled')")
        updater = _updater(store, lock, git, _ok_converge(app_tree))
        rollback = RollbackOrchestrator(store, PipelineRunner(), lock, converge=[])
        first = CollectingProgressChannel()

        task = updater.start(first)

        second = CollectingProgressChannel()
        with pytest.raises(OperationInProgressError):
            updater.start(second)
        with pytest.raises(OperationInProgressError):
            rollback.start(second, existing.name)
        with pytest.raises(OperationInProgressError):
            await create_snapshot(store, lock)
        with pytest.raises(OperationInProgressError):
            await delete_snapshot(store, lock, existing.name)

        operation = await task

        assert second.events == []
        assert assert_well_formed(first.events).status == "success"
        assert "pulled" in operation.steps
        assert existing.name in [s.name for s in store.list()]
        assert not lock.locked

    @pytest.mark.asyncio
    async def test_lock_is_free_after_failure(
        self, store: ArchiveStore, lock: OperationLock, fake_git: FakeGit, app_tree: Path
    ) -> None:
        failing = [py_command("install root", "import sys; sys.exit(1)", app_tree)]
        await _updater(store, lock, fake_git, failing).run(CollectingProgressChannel())

        operation = await _updater(store, lock, fake_git, _ok_converge(app_tree)).run(
            CollectingProgressChannel()
        )

        assert operation.phase is Phase.SUCCEEDED


# =============================================================================
# Rollback Tests
# =============================================================================


class TestRollback:
    """Tests for RollbackOrchestrator."""

    def _rollback(
        self,
        store: ArchiveStore,
        lock: OperationLock,
        converge: list[Command],
        **kwargs: object,
    ) -> RollbackOrchestrator:
        return RollbackOrchestrator(store, PipelineRunner(), lock, converge=converge, **kwargs)

    @pytest.mark.asyncio
    async def test_successful_rollback(
        self, store: ArchiveStore, lock: OperationLock, app_tree: Path
    ) -> None:
        snapshot = store.create()
        (app_tree / "src" / "index.js").write_text("console.log('v2')\n")
        channel = CollectingProgressChannel()

        operation = await self._rollback(store, lock, _ok_converge(app_tree)).run(
            channel, snapshot.name
        )

        terminal = assert_well_formed(channel.events)
        assert terminal.status == "success"
        assert terminal.message == f"Rollback to {snapshot.name} completed successfully."
        assert (app_tree / "src" / "index.js").read_text() == "console.log('v1')\n"
        logs = _logs(channel.events)
        assert logs[:3] == [
            f">>> Validating backup {snapshot.name}...",
            f">>> Extracting backup {snapshot.name} (overlay)...",
            "Backup extracted.",
        ]
        assert operation.kind is OperationKind.ROLLBACK
        assert operation.snapshot == snapshot.name
        assert operation.phase is Phase.SUCCEEDED
        assert not lock.locked

    @pytest.mark.asyncio
    async def test_clean_rollback_reports_removed_files(
        self, store: ArchiveStore, lock: OperationLock, app_tree: Path
    ) -> None:
        snapshot = store.create()
        (app_tree / "src" / "added.js").write_text("new\n")
        channel = CollectingProgressChannel()

        await self._rollback(store, lock, [], clean_restore=True).run(channel, snapshot.name)

        assert "Removed 1 files not present in the backup." in _logs(channel.events)
        assert not (app_tree / "src" / "added.js").exists()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["../../etc/passwd", "/", "\\", ""])
    async def test_invalid_name_rejected_before_anything(
        self, store: ArchiveStore, lock: OperationLock, name: str
    ) -> None:
        channel = CollectingProgressChannel()
        rollback = self._rollback(store, lock, [])

        with patch.object(lock, "acquire") as acquire, pytest.raises(InvalidNameError):
            rollback.start(channel, name)

        acquire.assert_not_called()
        assert channel.events == []

    @pytest.mark.asyncio
    async def test_unknown_snapshot(self, store: ArchiveStore, lock: OperationLock) -> None:
        channel = CollectingProgressChannel()

        with pytest.raises(NotFoundError):
            self._rollback(store, lock, []).start(
                channel, "backup-2024-01-01T00-00-00.000Z.tar.gz"
            )

        assert channel.events == []
        assert not lock.locked

    @pytest.mark.asyncio
    async def test_corrupt_snapshot(self, store: ArchiveStore, lock: OperationLock) -> None:
        store.archive_dir.mkdir()
        name = "backup-2024-01-01T00-00-00.000Z.tar.gz"
        (store.archive_dir / name).write_bytes(b"garbage")
        channel = CollectingProgressChannel()

        operation = await self._rollback(store, lock, []).run(channel, name)

        terminal = assert_well_formed(channel.events)
        assert terminal.message == f"Rollback failed: Backup archive is corrupt: {name}"
        assert operation.phase is Phase.FAILED

    @pytest.mark.asyncio
    async def test_failing_converge(
        self, store: ArchiveStore, lock: OperationLock, app_tree: Path
    ) -> None:
        snapshot = store.create()
        converge = [py_command("install root", "import sys; sys.exit(1)", app_tree)]
        channel = CollectingProgressChannel()

        operation = await self._rollback(store, lock, converge).run(channel, snapshot.name)

        terminal = assert_well_formed(channel.events)
        assert terminal.message.startswith("Rollback failed: Step 'install root' failed")
        assert operation.phase is Phase.FAILED

    @pytest.mark.asyncio
    async def test_rollback_then_restart(
        self, store: ArchiveStore, lock: OperationLock
    ) -> None:
        snapshot = store.create()
        supervisor = ProcessSupervisor("systemd", ["panel"], restart_delay=0)
        channel = CollectingProgressChannel()

        with patch.object(supervisor, "restart", new=AsyncMock()):
            await self._rollback(store, lock, [], supervisor=supervisor).run(
                channel, snapshot.name
            )
            await supervisor.drain()

        assert assert_well_formed(channel.events).status == "restarting"


# =============================================================================
# Version Check and Snapshot Operation Tests
# =============================================================================


class TestRunVersionCheck:
    """Tests for run_version_check."""

    @pytest.mark.asyncio
    async def test_update_available(self, tmp_path: Path) -> None:
        channel = CollectingProgressChannel()
        oracle = VersionOracle(FakeGit("a1", "b2", "a1"), tmp_path)

        state = await run_version_check(oracle, channel)

        terminal = assert_well_formed(channel.events)
        assert terminal.status == "success"
        assert terminal.message == "An update is available."
        assert terminal.version == state.to_dict()
        assert terminal.version["status"] == "updateAvailable"

    @pytest.mark.asyncio
    async def test_failed_check(self, tmp_path: Path) -> None:
        channel = CollectingProgressChannel()
        oracle = VersionOracle(FakeGit(fail="refresh_remote"), tmp_path)

        await run_version_check(oracle, channel)

        terminal = assert_well_formed(channel.events)
        assert terminal.status == "error"
        assert terminal.version["status"] == "error"


class TestSnapshotOperations:
    """Tests for create_snapshot and delete_snapshot."""

    @pytest.mark.asyncio
    async def test_create_and_delete(self, store: ArchiveStore, lock: OperationLock) -> None:
        snapshot = await create_snapshot(store, lock)
        assert [s.name for s in store.list()] == [snapshot.name]

        await delete_snapshot(store, lock, snapshot.name)

        assert store.list() == []
        assert not lock.locked

    @pytest.mark.asyncio
    async def test_delete_invalid_name_skips_lock(
        self, store: ArchiveStore, lock: OperationLock
    ) -> None:
        lock.acquire("update")

        with pytest.raises(InvalidNameError):
            await delete_snapshot(store, lock, "../x")

        assert lock.holder == "update"

    @pytest.mark.asyncio
    async def test_delete_unknown(self, store: ArchiveStore, lock: OperationLock) -> None:
        with pytest.raises(NotFoundError):
            await delete_snapshot(store, lock, "backup-2024-01-01T00-00-00.000Z.tar.gz")

        assert not lock.locked


def test_operation_defaults() -> None:
    operation = Operation(kind=OperationKind.UPDATE)

    assert operation.phase is Phase.IDLE
    assert operation.steps == []
    assert not operation.succeeded
