"""
Wiring of the updater components for one configuration.

The HTTP server and the CLI both build an UpdaterContext from the loaded
AppConfig, so that the same lock, store and orchestrators serve every request
in a process.
"""

from __future__ import annotations

from dataclasses import dataclass

from panel_updater.config import AppConfig
from panel_updater.updates.archive import ArchiveStore
from panel_updater.updates.lock import LOCK_FILE_NAME, OperationLock
from panel_updater.updates.orchestrator import (
    RollbackOrchestrator,
    UpdateOrchestrator,
    converge_steps,
)
from panel_updater.updates.pipeline import PipelineRunner
from panel_updater.updates.supervisor import ProcessSupervisor
from panel_updater.updates.vcs import GitClient
from panel_updater.updates.version import VersionOracle


@dataclass
class UpdaterContext:
    """
    Components shared by every request in a process.

    Attributes:
        config: The loaded configuration.
        store: Snapshot store for the application tree.
        lock: The single-operation lock.
        oracle: Version oracle.
        updater: Update orchestrator.
        rollback: Rollback orchestrator.
    """

    config: AppConfig
    store: ArchiveStore
    lock: OperationLock
    oracle: VersionOracle
    updater: UpdateOrchestrator
    rollback: RollbackOrchestrator

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        lock: OperationLock | None = None,
        supervisor: ProcessSupervisor | None = None,
    ) -> UpdaterContext:
        """
        Build every component from configuration.

        Args:
            config: Application configuration.
            lock: Lock to use; by default one with a lock file in the
                archive directory.
            supervisor: Supervisor to use; by default built from config.
        """
        deployment = config.deployment
        root = deployment.root_path

        store = ArchiveStore(
            root,
            deployment.archive_path,
            prefix=deployment.archive_prefix,
            exclude=deployment.exclude,
            min_free_bytes=deployment.min_free_bytes,
        )
        if lock is None:
            lock = OperationLock(deployment.archive_path / LOCK_FILE_NAME)
        if supervisor is None:
            supervisor = ProcessSupervisor(
                config.supervisor.kind,
                config.supervisor.services,
                restart_delay=config.supervisor.restart_delay_seconds,
                timeout=config.supervisor.timeout_seconds,
            )

        git = GitClient(
            remote=config.vcs.remote,
            branch=config.vcs.branch,
            timeout=config.vcs.timeout_seconds,
        )
        oracle = VersionOracle(git, root, require_ssh_remote=config.vcs.require_ssh_remote)
        runner = PipelineRunner(config.pipeline.benign_stderr_patterns)
        converge = converge_steps(
            root,
            config.pipeline.subprojects,
            config.pipeline.install_command,
            config.pipeline.build_command,
            config.pipeline.build_cwd,
            timeout=config.pipeline.step_timeout_seconds,
        )
        clean_restore = deployment.restore_mode == "clean"

        return cls(
            config=config,
            store=store,
            lock=lock,
            oracle=oracle,
            updater=UpdateOrchestrator(
                store,
                runner,
                lock,
                git,
                oracle,
                supervisor,
                converge=converge,
                clean_restore=clean_restore,
                auto_rollback=config.pipeline.auto_rollback_on_failure,
                pull_timeout=config.pipeline.step_timeout_seconds,
            ),
            rollback=RollbackOrchestrator(
                store,
                runner,
                lock,
                supervisor,
                converge=converge,
                clean_restore=clean_restore,
            ),
        )
