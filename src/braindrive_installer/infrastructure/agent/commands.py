"""
Subprocess helpers for the execution agent.

Commands always run as argument vectors, never through a shell, so no
value from a request can be interpreted as shell syntax.
"""

import asyncio
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from braindrive_installer.infrastructure.agent.layout import InstallLayout, is_windows

logger = structlog.get_logger()

OUTPUT_TAIL_CHARS = 4000

SYSTEM_BIN_DIRS = ("/usr/local/bin", "/opt/homebrew/bin", "/usr/bin", "/snap/bin")


@dataclass
class CommandOutput:
    """Outcome of a finished command."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def tail(self) -> dict[str, Any]:
        """Last part of both streams, for results and error payloads."""
        return {
            "exit_code": self.exit_code,
            "stdout": self.stdout[-OUTPUT_TAIL_CHARS:],
            "stderr": self.stderr[-OUTPUT_TAIL_CHARS:],
        }


async def run_command(
    *args: str | Path,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
) -> CommandOutput:
    """
    Run a command to completion and capture its output.

    Args:
        *args: Program and arguments
        cwd: Working directory
        env: Extra environment variables
        timeout: Seconds before the process is killed

    Returns:
        CommandOutput; a missing program yields exit code 127
    """
    argv = [str(arg) for arg in args]
    process_env = {**os.environ, **env} if env else None
    logger.debug("agent.command.started", argv=argv, cwd=str(cwd) if cwd else None)
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=process_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        return CommandOutput(exit_code=127, stdout="", stderr=str(e))

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return CommandOutput(
            exit_code=-1, stdout="", stderr=f"Command timed out after {timeout}s"
        )
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise

    output = CommandOutput(
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
    logger.debug("agent.command.finished", program=argv[0], exit_code=output.exit_code)
    return output


def find_executable(name: str, extra_dirs: tuple[str, ...] = SYSTEM_BIN_DIRS) -> Path | None:
    """Locate a program in well-known directories, then on PATH."""
    if not is_windows():
        for directory in extra_dirs:
            candidate = Path(directory) / name
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return candidate
    found = shutil.which(name)
    return Path(found) if found else None


def find_conda(layout: InstallLayout) -> Path | None:
    """
    Locate a conda binary, preferring the isolated runtime.

    Search order: isolated install, user installs, system installs, PATH.
    """
    if layout.isolated_conda_valid():
        return layout.conda_binary

    binary = "Scripts/conda.exe" if is_windows() else "bin/conda"
    candidates = [
        layout.home / "miniconda3",
        layout.home / "anaconda3",
        layout.home / ".conda",
    ]
    if not is_windows():
        candidates += [
            Path("/opt/miniconda3"),
            Path("/opt/anaconda3"),
            Path("/opt/homebrew/Caskroom/miniconda/base"),
            Path("/usr/local/miniconda3"),
        ]
    for root in candidates:
        if (root / binary).is_file():
            return root / binary

    found = shutil.which("conda")
    return Path(found) if found else None


def conda_run(conda: Path, env_name: str, *args: str | Path) -> list[str]:
    """Argument vector running ``args`` inside a conda environment."""
    return [str(conda), "run", "--no-capture-output", "-n", env_name, *map(str, args)]
