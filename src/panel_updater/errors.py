"""
Error types for the panel updater.

Every failure inside the updater is expressed as an UpdaterError subclass.
The HTTP layer and the CLI map the error_code to a status code or an exit
code; the observer only ever sees ``message``.
"""

from __future__ import annotations

from typing import Any


class UpdaterError(Exception):
    """
    Base exception class for updater errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_name",
            "not_found", "operation_in_progress", "io_failure").
        message: Human-readable error message, safe to show to an observer.
        details: Optional structured details (e.g., paths, exit codes).

    Example:
        >>> raise UpdaterError(
        ...     error_code="invalid_name",
        ...     message="Invalid backup file name",
        ...     details={"name": "../etc/passwd"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class IOFailureError(UpdaterError):
    """Raised when a snapshot cannot be written or extracted."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code="io_failure", message=message, details=details)


class InvalidNameError(UpdaterError):
    """
    Raised when a snapshot name fails validation.

    Raised before any filesystem call is made, so a rejected name never
    touches the archive directory.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code="invalid_name", message=message, details=details)


class NotFoundError(UpdaterError):
    """Raised when a named snapshot does not exist."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code="not_found", message=message, details=details)


class CorruptArchiveError(UpdaterError):
    """Raised when a snapshot exists but cannot be read as an archive."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            error_code="corrupt_archive", message=message, details=details
        )


class CommandSpawnError(UpdaterError):
    """Raised when a pipeline command could not be started at all."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            error_code="command_spawn_failure", message=message, details=details
        )


class CommandExitError(UpdaterError):
    """
    Raised when a pipeline command exits with a non-zero code.

    Attributes:
        exit_code: The process exit code.
    """

    def __init__(
        self,
        message: str,
        exit_code: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            error_code="command_nonzero_exit",
            message=message,
            details={"exit_code": exit_code, **(details or {})},
        )
        self.exit_code = exit_code


class CommandTimeoutError(UpdaterError):
    """Raised when a pipeline command exceeds its time bound."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            error_code="command_timeout", message=message, details=details
        )


class VersionCheckError(UpdaterError):
    """Raised by the version-control client when a lookup fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            error_code="version_check_failure", message=message, details=details
        )


class OperationInProgressError(UpdaterError):
    """
    Raised when an update or rollback is requested while another runs.

    The running operation is not affected by the rejection.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            error_code="operation_in_progress", message=message, details=details
        )


class InternalError(UpdaterError):
    """
    Raised for unexpected internal errors.

    Used for programming errors such as invalid state transitions; these
    should be logged with full stack traces.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code="internal", message=message, details=details)
