"""
Process supervisor integration for the panel updater.

After a successful update or rollback the panel's own services must be
restarted so the new code is loaded. The restart is fire-and-forget: the
orchestrator emits its terminal ``restarting`` event, closes the stream and
only then schedules the restart, since restarting usually kills the very
process serving the stream. The orchestrator keeps the operation lock until
the scheduled restart task is done.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from panel_updater.errors import CommandExitError, CommandSpawnError, CommandTimeoutError
from panel_updater.logging import get_logger

logger = get_logger(__name__)

SUPERVISOR_KINDS = ("pm2", "systemd", "none")


async def _run_supervisor_command(
    *args: str,
    timeout: float = 60.0,
) -> tuple[int, str, str]:
    """
    Run a supervisor command.

    Args:
        *args: Program and arguments.
        timeout: Command timeout in seconds.

    Returns:
        Tuple of (return_code, stdout, stderr).

    Raises:
        CommandSpawnError: If the supervisor executable is not available.
        CommandTimeoutError: If the command times out.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise CommandSpawnError(
            f"{args[0]} not available",
            details={"command": " ".join(args), "error": str(exc)},
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise CommandTimeoutError(
            f"{args[0]} command timed out after {timeout}s",
            details={"command": " ".join(args)},
        ) from exc

    return (
        proc.returncode or 0,
        stdout.decode(errors="replace") if stdout else "",
        stderr.decode(errors="replace") if stderr else "",
    )


class ProcessSupervisor:
    """
    Restarts the panel's services through pm2 or systemd.

    Attributes:
        kind: 'pm2', 'systemd' or 'none'.
        services: Service names restarted, in order.
        restart_delay: Seconds to wait before a scheduled restart.
        timeout: Bound for each restart command.
    """

    def __init__(
        self,
        kind: str = "pm2",
        services: Sequence[str] = (),
        *,
        restart_delay: float = 5.0,
        timeout: float = 60.0,
    ) -> None:
        if kind not in SUPERVISOR_KINDS:
            raise ValueError(f"Unknown supervisor kind: {kind}")
        self.kind = kind
        self.services = list(services)
        self.restart_delay = restart_delay
        self.timeout = timeout
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def enabled(self) -> bool:
        """Whether a restart follows a successful operation."""
        return self.kind != "none" and bool(self.services)

    def restart_command(self, service: str) -> list[str]:
        """Return the command that restarts one service."""
        if self.kind == "pm2":
            return ["pm2", "restart", service]
        if self.kind == "systemd":
            return ["systemctl", "restart", service]
        raise ValueError("Supervisor kind 'none' has no restart command")

    async def restart(self, services: Sequence[str] | None = None) -> None:
        """
        Restart services in order.

        Raises:
            CommandSpawnError: If the supervisor executable is missing.
            CommandTimeoutError: If a restart command times out.
            CommandExitError: If a restart command fails.
        """
        for service in services if services is not None else self.services:
            command = self.restart_command(service)
            logger.info("Restarting service", extra={"service": service, "supervisor": self.kind})
            returncode, stdout, stderr = await _run_supervisor_command(
                *command, timeout=self.timeout
            )
            if returncode != 0:
                output = (stderr or stdout).strip()
                logger.error(
                    "Service restart failed",
                    extra={"service": service, "returncode": returncode, "output": output},
                )
                raise CommandExitError(
                    f"Failed to restart {service}: {output}",
                    exit_code=returncode,
                    details={"service": service},
                )
            logger.info("Service restart command sent", extra={"service": service})

    async def _delayed_restart(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.restart()
        except (CommandSpawnError, CommandTimeoutError, CommandExitError) as e:
            # Nobody is listening any more; the log is the only record.
            logger.error(
                "Scheduled restart failed",
                extra={"error_code": e.error_code, "error": e.message},
            )

    def schedule_restart(self, delay: float | None = None) -> asyncio.Task[None] | None:
        """
        Restart services in the background after ``delay`` seconds.

        Returns:
            The background task, or None when restarts are disabled.
        """
        if not self.enabled:
            return None
        delay = self.restart_delay if delay is None else delay
        logger.info(
            "Scheduling service restart",
            extra={"services": self.services, "delay_seconds": delay},
        )
        task = asyncio.create_task(self._delayed_restart(delay))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled restart to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks)
