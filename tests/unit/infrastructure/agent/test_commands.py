"""
Unit Tests for the subprocess helpers
"""

import asyncio

import pytest

from braindrive_installer.infrastructure.agent import commands
from braindrive_installer.infrastructure.agent.commands import conda_run, run_command


class HangingProcess:
    """Child process whose output never completes until killed."""

    def __init__(self):
        self.returncode = None
        self.killed = False
        self._done = asyncio.Event()

    async def communicate(self):
        await self._done.wait()
        return b"", b""

    async def wait(self):
        await self._done.wait()
        self.returncode = -9
        return self.returncode

    def kill(self):
        self.killed = True
        self._done.set()


@pytest.fixture
def hanging(monkeypatch):
    process = HangingProcess()

    async def fake_exec(*argv, **kwargs):
        return process

    monkeypatch.setattr(commands.asyncio, "create_subprocess_exec", fake_exec)
    return process


@pytest.mark.asyncio
async def test_timeout_kills_child(hanging):
    result = await run_command("conda", "env", "list", timeout=0.01)
    assert result.exit_code == -1
    assert "timed out" in result.stderr
    assert hanging.killed is True


@pytest.mark.asyncio
async def test_cancellation_kills_child(hanging):
    task = asyncio.create_task(run_command("npm", "install"))
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert hanging.killed is True
    assert hanging.returncode == -9


@pytest.mark.asyncio
async def test_missing_program(monkeypatch):
    async def fake_exec(*argv, **kwargs):
        raise FileNotFoundError(argv[0])

    monkeypatch.setattr(commands.asyncio, "create_subprocess_exec", fake_exec)
    result = await run_command("definitely-not-installed")
    assert result.exit_code == 127


def test_conda_run_argv(tmp_path):
    assert conda_run(tmp_path / "conda", "BrainDriveDev", "npm", "install") == [
        str(tmp_path / "conda"), "run", "--no-capture-output", "-n", "BrainDriveDev", "npm", "install",
    ]
