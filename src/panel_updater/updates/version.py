"""
Version oracle for the panel updater.

Compares the locally checked-out code with the latest published code and
classifies the relationship:

- upToDate: local == remote
- updateAvailable: local == merge-base (remote has new commits)
- ahead: remote == merge-base (local has unpublished commits)
- diverged: neither side contains the other
- error: a lookup failed; ``message`` says which one and why

The oracle never raises: every failure is folded into the returned state.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from panel_updater.errors import UpdaterError, VersionCheckError
from panel_updater.logging import get_logger

if TYPE_CHECKING:
    from panel_updater.updates.progress import ProgressChannel
    from panel_updater.updates.vcs import GitClient

logger = get_logger(__name__)


class VersionStatus(str, Enum):
    """Relationship between local and remote code."""

    UP_TO_DATE = "upToDate"
    UPDATE_AVAILABLE = "updateAvailable"
    DIVERGED = "diverged"
    AHEAD = "ahead"
    UNKNOWN = "unknown"
    ERROR = "error"


_MESSAGES = {
    VersionStatus.UP_TO_DATE: "Your panel is up-to-date.",
    VersionStatus.UPDATE_AVAILABLE: "An update is available.",
    VersionStatus.AHEAD: "Local code has commits that are not published.",
    VersionStatus.DIVERGED: (
        "Local changes have diverged from the published code; "
        "manual intervention is required."
    ),
}


class VersionState(BaseModel):
    """
    Result of one version check. Never persisted.

    Attributes:
        local_ref: Commit id of the local HEAD.
        remote_ref: Commit id of the remote-tracking branch.
        merge_base: Best common ancestor, when it could be determined.
        status: Classification of the two refs.
        message: Human-readable summary or the failure that stopped the check.
    """

    local_ref: str | None = Field(default=None, description="Local commit id")
    remote_ref: str | None = Field(default=None, description="Remote commit id")
    merge_base: str | None = Field(default=None, description="Merge-base commit id")
    status: VersionStatus = Field(
        default=VersionStatus.UNKNOWN,
        description="Classification of local against remote",
    )
    message: str | None = Field(default=None, description="Summary or error message")

    @property
    def update_available(self) -> bool:
        """Whether pulling would bring in new commits cleanly."""
        return self.status is VersionStatus.UPDATE_AVAILABLE

    def to_dict(self) -> dict[str, Any]:
        """Serialize with enum values as strings."""
        return self.model_dump(mode="json")


def classify(local_ref: str, remote_ref: str, merge_base: str | None) -> VersionStatus:
    """
    Classify a local/remote pair given their merge-base.

    Example:
        >>> classify("abc", "abc", "abc").value
        'upToDate'
        >>> classify("abc", "def", "abc").value
        'updateAvailable'
    """
    if local_ref == remote_ref:
        return VersionStatus.UP_TO_DATE
    if merge_base is not None and local_ref == merge_base:
        return VersionStatus.UPDATE_AVAILABLE
    if merge_base is not None and remote_ref == merge_base:
        return VersionStatus.AHEAD
    return VersionStatus.DIVERGED


class VersionOracle:
    """
    Determines whether the running code is behind the published code.

    Attributes:
        git: Version-control client.
        root: Application root (a git checkout).
        require_ssh_remote: Fail the check unless the remote URL uses SSH.
    """

    def __init__(
        self,
        git: GitClient,
        root: Path | str,
        *,
        require_ssh_remote: bool = False,
    ) -> None:
        self.git = git
        self.root = Path(root)
        self.require_ssh_remote = require_ssh_remote

    async def check_remote_url(self) -> str:
        """
        Verify the remote URL when SSH is required.

        Returns:
            The remote URL.

        Raises:
            UpdaterError: If the URL cannot be read.
            VersionCheckError: If the URL is not an SSH URL.
        """
        url = await self.git.remote_url(self.root)
        if self.require_ssh_remote and not url.startswith("git@"):
            raise VersionCheckError(
                f"Git remote is not configured for SSH. Current URL is {url}. "
                "Use an SSH URL (e.g., git@github.com:user/repo.git) for updates.",
                details={"remote_url": url},
            )
        return url

    async def check(self, sink: ProgressChannel | None = None) -> VersionState:
        """
        Refresh the remote, read both refs and their merge-base, and classify.

        Args:
            sink: Optional channel that receives one log line per sub-step.

        Returns:
            The VersionState; ``status`` is ``error`` if any sub-step failed.
        """

        def note(line: str) -> None:
            if sink is not None:
                sink.emit(line)

        state = VersionState()
        step = "reading remote URL"
        try:
            if self.require_ssh_remote:
                note(">>> Checking git remote URL...")
                url = await self.check_remote_url()
                note(f"Remote URL: {url}")

            step = "refreshing remote references"
            note(">>> Fetching latest data from remote repository...")
            await self.git.refresh_remote(self.root)

            step = "reading local reference"
            note(">>> Comparing local and remote versions...")
            state.local_ref = await self.git.local_ref(self.root)

            step = "reading remote reference"
            state.remote_ref = await self.git.remote_ref(self.root)

            step = "reading merge-base"
            state.merge_base = await self.git.merge_base(self.root)

        except UpdaterError as e:
            logger.warning(
                "Version check failed",
                extra={"step": step, "error": e.message, "details": e.details},
            )
            state.status = VersionStatus.ERROR
            state.message = f"Failed while {step}: {e.message}"
            return state
        except Exception as e:
            logger.exception("Unexpected error during version check", extra={"step": step})
            state.status = VersionStatus.ERROR
            state.message = f"Failed while {step}: {type(e).__name__}"
            return state

        state.status = classify(state.local_ref, state.remote_ref, state.merge_base)
        state.message = _MESSAGES[state.status]
        logger.info(
            "Version check complete",
            extra={
                "status": state.status.value,
                "local_ref": state.local_ref,
                "remote_ref": state.remote_ref,
                "merge_base": state.merge_base,
            },
        )
        return state
