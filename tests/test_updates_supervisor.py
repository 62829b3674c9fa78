"""
Tests for the process supervisor integration.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from panel_updater.errors import CommandExitError, CommandSpawnError
from panel_updater.updates.supervisor import ProcessSupervisor, _run_supervisor_command


class TestConfiguration:
    """Tests for supervisor construction."""

    def test_unknown_kind(self) -> None:
        with pytest.raises(ValueError, match="Unknown supervisor kind"):
            ProcessSupervisor("runit")

    def test_enabled(self) -> None:
        assert ProcessSupervisor("pm2", ["panel"]).enabled
        assert not ProcessSupervisor("pm2", []).enabled
        assert not ProcessSupervisor("none", ["panel"]).enabled

    def test_restart_commands(self) -> None:
        assert ProcessSupervisor("pm2").restart_command("api") == ["pm2", "restart", "api"]
        assert ProcessSupervisor("systemd").restart_command("panel") == [
            "systemctl",
            "restart",
            "panel",
        ]

    def test_none_has_no_command(self) -> None:
        with pytest.raises(ValueError):
            ProcessSupervisor("none").restart_command("panel")


class TestRestart:
    """Tests for ProcessSupervisor.restart."""

    @pytest.mark.asyncio
    async def test_restarts_services_in_order(self) -> None:
        supervisor = ProcessSupervisor("pm2", ["web", "api"])

        with patch(
            "panel_updater.updates.supervisor._run_supervisor_command",
            new=AsyncMock(return_value=(0, "", "")),
        ) as run:
            await supervisor.restart()

        assert [call.args for call in run.call_args_list] == [
            ("pm2", "restart", "web"),
            ("pm2", "restart", "api"),
        ]

    @pytest.mark.asyncio
    async def test_failure_stops_and_raises(self) -> None:
        supervisor = ProcessSupervisor("systemd", ["web", "api"])

        with patch(
            "panel_updater.updates.supervisor._run_supervisor_command",
            new=AsyncMock(return_value=(5, "", "Unit web.service not found.\n")),
        ) as run:
            with pytest.raises(CommandExitError) as exc_info:
                await supervisor.restart()

        assert run.call_count == 1
        assert exc_info.value.exit_code == 5
        assert "Unit web.service not found." in exc_info.value.message

    @pytest.mark.asyncio
    async def test_missing_executable(self) -> None:
        with pytest.raises(CommandSpawnError):
            await _run_supervisor_command("no-such-supervisor-binary", "restart", "x")


class TestScheduledRestart:
    """Tests for schedule_restart and drain."""

    @pytest.mark.asyncio
    async def test_disabled_schedules_nothing(self) -> None:
        assert ProcessSupervisor("none").schedule_restart() is None

    @pytest.mark.asyncio
    async def test_scheduled_restart_runs_after_delay(self) -> None:
        supervisor = ProcessSupervisor("pm2", ["panel"], restart_delay=0.01)
        restart = AsyncMock()

        with patch.object(supervisor, "restart", new=restart):
            task = supervisor.schedule_restart()
            assert task is not None
            await supervisor.drain()

        restart.assert_awaited_once()
        assert task.done()

    @pytest.mark.asyncio
    async def test_scheduled_restart_failure_is_logged_not_raised(self) -> None:
        supervisor = ProcessSupervisor("pm2", ["panel"])
        failing = AsyncMock(side_effect=CommandExitError("Failed to restart panel", exit_code=1))

        with patch.object(supervisor, "restart", new=failing):
            supervisor.schedule_restart(delay=0)
            await supervisor.drain()

        failing.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_drain_without_tasks(self) -> None:
        await ProcessSupervisor("pm2", ["panel"]).drain()
