"""
Pytest configuration for the panel updater tests.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from panel_updater.errors import VersionCheckError
from panel_updater.updates.pipeline import Command, StepStage

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests that run real child processes",
    )


@pytest.fixture(autouse=True)
def _cleanup_loggers() -> Iterator[None]:
    """Drop handlers installed by setup_logging between tests."""
    yield
    logger = logging.getLogger("panel_updater")
    logger.handlers.clear()
    logger.propagate = True


@pytest.fixture
def app_tree(tmp_path: Path) -> Path:
    """A small application tree with the directories snapshots must skip."""
    root = tmp_path / "app"
    (root / "src").mkdir(parents=True)
    (root / "src" / "index.js").write_text("console.log('v1')\n")
    (root / "package.json").write_text('{"name": "panel", "version": "1.0.0"}\n')
    (root / "api-backend" / "sessions").mkdir(parents=True)
    (root / "api-backend" / "server.js").write_text("// api v1\n")
    (root / "api-backend" / "sessions" / "abc.json").write_text("{}\n")
    (root / "api-backend" / "mikrotik_manager.db").write_bytes(b"SQLite format 3\x00")
    (root / "node_modules" / "left-pad").mkdir(parents=True)
    (root / "node_modules" / "left-pad" / "index.js").write_text("module.exports = 1\n")
    (root / ".git").mkdir()
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    return root


EXCLUDES = [".git", "node_modules", "api-backend/sessions", "api-backend/mikrotik_manager.db"]


def py_command(
    name: str,
    code: str,
    cwd: Path,
    *,
    stage: StepStage = StepStage.INSTALL,
    timeout: float | None = 30.0,
) -> Command:
    """A pipeline step that runs a short Python snippet."""
    return Command(
        name=name,
        argv=(sys.executable, "-c", code),
        cwd=cwd,
        stage=stage,
        timeout=timeout,
    )


class FakeGit:
    """
    Stand-in for GitClient with fixed answers.

    Any of the lookups can be made to fail by naming it in ``fail``.
    """

    def __init__(
        self,
        local: str = "abc",
        remote: str = "abc",
        merge_base: str = "abc",
        url: str = "git@github.com:example/panel.git",
        fail: str | None = None,
        pull_code: str = "print('Already up to date.')",
    ) -> None:
        self.local = local
        self.remote = remote
        self.base = merge_base
        self.url = url
        self.fail = fail
        self.pull_code = pull_code
        self.remote_name = "origin"
        self.branch = "main"
        self.calls: list[str] = []

    def _answer(self, call: str, value: str) -> str:
        self.calls.append(call)
        if self.fail == call:
            raise VersionCheckError(f"git {call} failed", details={"exit_code": 128})
        return value

    async def remote_url(self, cwd: Path) -> str:
        return self._answer("remote_url", self.url)

    async def refresh_remote(self, cwd: Path) -> None:
        self._answer("refresh_remote", "")

    async def local_ref(self, cwd: Path) -> str:
        return self._answer("local_ref", self.local)

    async def remote_ref(self, cwd: Path) -> str:
        return self._answer("remote_ref", self.remote)

    async def merge_base(self, cwd: Path) -> str:
        return self._answer("merge_base", self.base)

    def pull_latest(self, cwd: Path, timeout: float | None = None) -> Command:
        return py_command("pull latest code", self.pull_code, cwd, stage=StepStage.FETCH)


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()
