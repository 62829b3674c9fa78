"""
Self-update and rollback machinery for the panel.

This package implements:
- Snapshot creation, listing, deletion and restore
- Version checks against the published code
- A sequential, streaming command pipeline
- Progress channels for server-push observers
- The single-operation lock
- Update and rollback orchestration
- Process supervisor restarts
"""

from panel_updater.updates.archive import ArchiveStore, Snapshot
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
from panel_updater.updates.pipeline import (
    Command,
    PipelineRunner,
    StepOutcome,
    StepResult,
    StepStage,
)
from panel_updater.updates.progress import (
    CallbackProgressChannel,
    CollectingProgressChannel,
    ProgressChannel,
    ProgressEvent,
    QueueProgressChannel,
    TerminalStatus,
)
from panel_updater.updates.supervisor import ProcessSupervisor
from panel_updater.updates.vcs import GitClient
from panel_updater.updates.version import VersionOracle, VersionState, VersionStatus

__all__ = [
    # Snapshots
    "ArchiveStore",
    "Snapshot",
    # Version checks
    "GitClient",
    "VersionOracle",
    "VersionState",
    "VersionStatus",
    # Pipeline
    "Command",
    "PipelineRunner",
    "StepOutcome",
    "StepResult",
    "StepStage",
    # Progress
    "CallbackProgressChannel",
    "CollectingProgressChannel",
    "ProgressChannel",
    "ProgressEvent",
    "QueueProgressChannel",
    "TerminalStatus",
    # Orchestration
    "Operation",
    "OperationKind",
    "OperationLock",
    "Phase",
    "ProcessSupervisor",
    "RollbackOrchestrator",
    "UpdateOrchestrator",
    "converge_steps",
    "create_snapshot",
    "delete_snapshot",
    "run_version_check",
]
