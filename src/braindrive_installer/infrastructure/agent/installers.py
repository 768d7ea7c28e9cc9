"""
Idempotent installer steps.

Every step checks its own precondition first and reports the satisfied
state (``already_installed`` / ``already_exists``) instead of redoing work,
so steps may be called repeatedly and in any order. Failures raise
``OperationError`` with the command output attached.
"""

import asyncio
import os
import re
import shutil
from pathlib import Path
from typing import Any, AsyncIterator

import structlog

from braindrive_installer.core.domain.errors import OperationError
from braindrive_installer.infrastructure.agent.commands import (
    conda_run,
    find_conda,
    find_executable,
    run_command,
)
from braindrive_installer.infrastructure.agent.detection import (
    OLLAMA_PORT,
    arch_name,
    is_valid_checkout,
    os_name,
)
from braindrive_installer.infrastructure.agent.downloads import DownloadError, download_file
from braindrive_installer.infrastructure.agent.layout import (
    INSTALLER_ARTIFACTS,
    InstallLayout,
    is_windows,
)
from braindrive_installer.infrastructure.agent.ports import is_port_listening, wait_for_port
from braindrive_installer.infrastructure.agent.process_manager import spawn_detached
from braindrive_installer.infrastructure.agent.progress import ProgressReporter

logger = structlog.get_logger()

MINICONDA_BASE_URL = "https://repo.anaconda.com/miniconda"
MINICONDA_INSTALLERS = {
    ("macos", "arm64"): "Miniconda3-latest-MacOSX-arm64.sh",
    ("macos", "x86_64"): "Miniconda3-latest-MacOSX-x86_64.sh",
    ("linux", "x86_64"): "Miniconda3-latest-Linux-x86_64.sh",
    ("linux", "arm64"): "Miniconda3-latest-Linux-aarch64.sh",
    ("windows", "x86_64"): "Miniconda3-latest-Windows-x86_64.exe",
}

CONDA_SETTINGS = (
    ("--set", "auto_activate_base", "false"),
    ("--add", "channels", "conda-forge"),
    ("--set", "channel_priority", "strict"),
    ("--remove", "channels", "defaults"),
)
ENV_PACKAGES = ("python=3.11", "nodejs", "git")

OLLAMA_DOWNLOAD_URL = "https://ollama.com/download"
OLLAMA_INSTRUCTIONS = {
    "macos": "Download Ollama for macOS from https://ollama.com/download, open the app, then ask me to continue.",
    "windows": "Download and run OllamaSetup.exe from https://ollama.com/download, then ask me to continue.",
    "linux": "Run 'curl -fsSL https://ollama.com/install.sh | sh' in a terminal, then ask me to continue.",
}
OLLAMA_START_TIMEOUT = 30

MB = 1024 * 1024
_UNITS = {"B": 1, "KB": 1024, "MB": MB, "GB": 1024 * MB, "TB": 1024 * 1024 * MB}
_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_PERCENT_RE = re.compile(r"(\d{1,3})%")
_SIZE_RE = re.compile(r"([\d.]+)\s*(B|KB|MB|GB|TB)\s*/\s*([\d.]+)\s*(B|KB|MB|GB|TB)")


def miniconda_url(os_id: str, arch: str) -> str:
    filename = MINICONDA_INSTALLERS.get((os_id, arch))
    if filename is None:
        raise OperationError(f"No Miniconda installer for {os_id}/{arch}")
    return f"{MINICONDA_BASE_URL}/{filename}"


def parse_pull_progress(line: str) -> dict[str, Any] | None:
    """
    Turn one line of ``ollama pull`` output into progress fields.

    Percentages are capped at 99 while the pull runs; 100 is only reported
    once the command has exited successfully.
    """
    text = _ANSI_RE.sub("", line).strip()
    if not text:
        return None

    fields: dict[str, Any] = {}
    if match := _PERCENT_RE.search(text):
        fields["percent"] = min(int(match.group(1)), 99)
    if match := _SIZE_RE.search(text):
        fields["bytes_downloaded"] = int(float(match.group(1)) * _UNITS[match.group(2)])
        fields["bytes_total"] = int(float(match.group(3)) * _UNITS[match.group(4)])

    lowered = text.lower()
    if "pulling manifest" in lowered:
        fields["message"] = "Pulling manifest..."
    elif "verifying" in lowered:
        fields["message"] = "Verifying download..."
    elif "writing manifest" in lowered:
        fields["message"] = "Writing manifest..."
    elif "success" in lowered:
        fields["message"] = "Finishing..."
    elif "percent" in fields:
        fields["message"] = f"Downloading model... {fields['percent']}%"
    else:
        return None
    return fields


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        process.kill()
        await process.wait()


async def _output_lines(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    """Split output on newlines and carriage returns (ollama redraws with \\r)."""
    buffer = ""
    while chunk := await stream.read(1024):
        buffer += chunk.decode("utf-8", errors="replace")
        *lines, buffer = re.split(r"[\r\n]", buffer)
        for line in lines:
            yield line
    if buffer:
        yield buffer


class Installer:
    """
    Installer steps for one BrainDrive installation target.

    Args:
        layout: Installation layout
    """

    def __init__(self, layout: InstallLayout):
        self.layout = layout
        self._conda_lock = asyncio.Lock()
        self.logger = logger.bind(component="installer")

    # --- isolated runtime -------------------------------------------------

    def _conda_result(self, already_installed: bool) -> dict[str, Any]:
        return {
            "already_installed": already_installed,
            "conda_path": str(self.layout.conda_binary),
            "install_path": str(self.layout.conda_dir),
            "isolated": True,
        }

    async def install_conda(self, progress: ProgressReporter) -> dict[str, Any]:
        """Install Miniconda into the isolated runtime path."""
        async with self._conda_lock:
            if self.layout.isolated_conda_valid():
                return self._conda_result(already_installed=True)

            url = miniconda_url(os_name(), arch_name())
            installer_path = self.layout.download_dir / url.rsplit("/", 1)[-1]
            await progress.report(0, "Downloading Miniconda installer...")

            async def on_download(done: int, total: int | None) -> None:
                if total:
                    await progress.report(
                        done * 50 // total,
                        f"{done / MB:.1f} MB / {total / MB:.1f} MB",
                        bytes_downloaded=done,
                        bytes_total=total,
                    )

            try:
                await download_file(url, installer_path, on_download)
            except DownloadError as e:
                raise OperationError(str(e), data={"url": url}) from e

            await progress.report(50, "Installing Miniconda...")
            self.layout.conda_dir.parent.mkdir(parents=True, exist_ok=True)
            if is_windows():
                result = await run_command(
                    installer_path,
                    "/InstallationType=JustMe",
                    "/RegisterPython=0",
                    "/AddToPath=0",
                    "/S",
                    f"/D={self.layout.conda_dir}",
                    timeout=900,
                )
            else:
                result = await run_command(
                    "bash", installer_path, "-b", "-p", self.layout.conda_dir, "-u",
                    timeout=900,
                )
            if not result.success or not self.layout.isolated_conda_valid():
                raise OperationError("Miniconda installer failed", data=result.tail())

            await progress.report(90, "Configuring conda...")
            for setting in CONDA_SETTINGS:
                configured = await run_command(self.layout.conda_binary, "config", *setting)
                if not configured.success:
                    self.logger.warning("installer.conda.config_failed", setting=setting)

            installer_path.unlink(missing_ok=True)
            await progress.report(100, "Miniconda installed")
            self.logger.info("installer.conda.installed", path=str(self.layout.conda_dir))
            return self._conda_result(already_installed=False)

    def _require_conda(self) -> Path:
        conda = find_conda(self.layout)
        if conda is None:
            raise OperationError("Conda is not installed. Run install_conda first.")
        return conda

    # --- repository -------------------------------------------------------

    async def clone_repo(self, repo_url: str, target_path: str | None) -> dict[str, Any]:
        """Clone the repository unless a valid checkout already exists."""
        target = self.layout.resolve_within_home(target_path, self.layout.repo_dir)
        if is_valid_checkout(target):
            return {"already_exists": True, "path": str(target)}

        git = find_executable("git")
        if git is None:
            raise OperationError("git is not installed. Install git from https://git-scm.com/downloads")

        if target.exists() and not target.is_dir():
            raise OperationError(f"{target} exists and is not a directory")
        entries = set(os.listdir(target)) if target.is_dir() else set()
        if entries - INSTALLER_ARTIFACTS:
            raise OperationError(
                f"{target} already exists and is not a BrainDrive checkout. "
                "Move it aside or choose another target_path."
            )

        if entries:
            method = "init_fetch_checkout"
            await self._fetch_into(git, target, repo_url)
        else:
            method = "clone"
            target.parent.mkdir(parents=True, exist_ok=True)
            result = await run_command(git, "clone", "--depth", "1", repo_url, target, timeout=600)
            if not result.success:
                raise OperationError("git clone failed", data=result.tail())

        self.logger.info("installer.repo.cloned", path=str(target), method=method)
        return {"already_exists": False, "path": str(target), "repo_url": repo_url, "method": method}

    async def _fetch_into(self, git: Path, target: Path, repo_url: str) -> None:
        """Check out into a directory that already holds installer artifacts."""
        for args in (("init",), ("remote", "add", "origin", repo_url)):
            result = await run_command(git, *args, cwd=target)
            if not result.success:
                raise OperationError(f"git {args[0]} failed", data=result.tail())

        for branch in ("main", "master"):
            fetched = await run_command(
                git, "fetch", "--depth", "1", "origin", branch, cwd=target, timeout=600
            )
            if fetched.success:
                break
        else:
            raise OperationError("git fetch failed", data=fetched.tail())

        checkout = await run_command(git, "checkout", "-b", branch, "FETCH_HEAD", cwd=target)
        if not checkout.success:
            raise OperationError("git checkout failed", data=checkout.tail())

    # --- conda environment ------------------------------------------------

    async def _find_env(self, conda: Path, env_name: str) -> Path | None:
        """Prefix of ``env_name`` according to ``conda env list``, if any."""
        listing = await run_command(conda, "env", "list", timeout=60)
        if not listing.success:
            raise OperationError("conda env list failed", data=listing.tail())
        for line in listing.stdout.splitlines():
            parts = line.split()
            if parts and not line.startswith("#") and parts[0] == env_name:
                return Path(parts[-1])
        return None

    @staticmethod
    def _env_missing_components(prefix: Path) -> list[str]:
        if is_windows():
            expected = {"python": prefix / "python.exe", "nodejs": prefix / "node.exe"}
        else:
            expected = {"python": prefix / "bin" / "python", "nodejs": prefix / "bin" / "node"}
        return [name for name, path in expected.items() if not path.exists()]

    async def create_conda_env(self, env_name: str, force_recreate: bool = False) -> dict[str, Any]:
        conda = self._require_conda()
        prefix = await self._find_env(conda, env_name)

        if prefix is not None and not force_recreate:
            missing = self._env_missing_components(prefix)
            if not missing:
                return {"already_exists": True, "env_name": env_name}
            repaired = await run_command(
                conda, "install", "-n", env_name, "--override-channels", "-c", "conda-forge",
                *ENV_PACKAGES, "-y",
                timeout=900,
            )
            if not repaired.success:
                raise OperationError("Failed to repair conda environment", data=repaired.tail())
            return {"already_exists": True, "env_name": env_name, "repaired": missing}

        if prefix is not None:
            removed = await run_command(conda, "env", "remove", "-n", env_name, "-y", timeout=300)
            if not removed.success:
                raise OperationError("Failed to remove existing environment", data=removed.tail())

        created = await run_command(
            conda, "create", "-n", env_name, "--override-channels", "-c", "conda-forge",
            *ENV_PACKAGES, "-y",
            timeout=900,
        )
        if not created.success:
            raise OperationError("conda create failed", data=created.tail())
        self.logger.info("installer.env.created", env_name=env_name, recreated=prefix is not None)
        return {"already_exists": False, "env_name": env_name, "recreated": prefix is not None}

    async def install_conda_env(
        self,
        env_name: str,
        repo_path: str | None,
        environment_file: str,
        progress: ProgressReporter,
    ) -> dict[str, Any]:
        """Create or update ``env_name`` from an environment file in the checkout."""
        conda = self._require_conda()
        repo = self.layout.repo_path(repo_path)
        env_file = (repo / environment_file).resolve()
        if not env_file.is_relative_to(repo):
            raise OperationError("Environment file must be inside the repository")
        if not env_file.is_file():
            raise OperationError(f"Environment file not found: {env_file}")

        await progress.report(None, f"Updating conda environment {env_name}...")
        result = await run_command(
            conda, "env", "update", "--name", env_name, "--file", env_file, timeout=1800
        )
        if not result.success:
            raise OperationError("conda env update failed", data=result.tail())
        await progress.report(100, "Environment ready")
        return {"env_name": env_name, "environment_file": str(env_file)}

    # --- dependencies -----------------------------------------------------

    async def _backend_deps(self, env_name: str, repo: Path, progress: ProgressReporter) -> dict[str, Any]:
        requirements = repo / "backend" / "requirements.txt"
        if not requirements.is_file():
            raise OperationError(f"requirements.txt not found at {requirements}")
        conda = self._require_conda()
        await progress.report(None, "Installing backend dependencies...")
        result = await run_command(
            *conda_run(conda, env_name, "pip", "install", "-r", requirements),
            cwd=requirements.parent,
            timeout=1800,
        )
        if not result.success:
            raise OperationError("Backend dependency install failed", data=result.tail())
        await progress.report(None, "Backend dependencies installed")
        return {"target": "backend", "path": str(requirements.parent)}

    async def _frontend_deps(self, env_name: str, repo: Path, progress: ProgressReporter) -> dict[str, Any]:
        frontend = repo / "frontend"
        if not (frontend / "package.json").is_file():
            raise OperationError(f"package.json not found in {frontend}")
        conda = self._require_conda()
        await progress.report(None, "Installing frontend dependencies...")
        result = await run_command(
            *conda_run(conda, env_name, "npm", "install"), cwd=frontend, timeout=1800
        )
        if not result.success:
            raise OperationError("Frontend dependency install failed", data=result.tail())
        await progress.report(None, "Frontend dependencies installed")
        return {"target": "frontend", "path": str(frontend)}

    async def install_backend_deps(
        self, env_name: str, repo_path: str | None, progress: ProgressReporter
    ) -> dict[str, Any]:
        data = await self._backend_deps(env_name, self.layout.repo_path(repo_path), progress)
        await progress.report(100, "Backend dependencies installed")
        return data

    async def install_frontend_deps(
        self, env_name: str, repo_path: str | None, progress: ProgressReporter
    ) -> dict[str, Any]:
        data = await self._frontend_deps(env_name, self.layout.repo_path(repo_path), progress)
        await progress.report(100, "Frontend dependencies installed")
        return data

    async def install_all_deps(
        self, env_name: str, repo_path: str | None, progress: ProgressReporter
    ) -> dict[str, Any]:
        """
        Install backend and frontend dependencies concurrently.

        A failure on one side does not cancel the other. Both sub-results
        are returned under ``backend`` and ``frontend``.

        Raises:
            OperationError: At least one side failed (sub-results in ``data``)
        """
        repo = self.layout.repo_path(repo_path)
        outcomes = await asyncio.gather(
            self._backend_deps(env_name, repo, progress),
            self._frontend_deps(env_name, repo, progress),
            return_exceptions=True,
        )
        backend, frontend = (self._sub_result(outcome) for outcome in outcomes)

        if backend["success"] and frontend["success"]:
            message = "Backend and frontend dependencies installed"
        elif backend["success"]:
            message = "Backend dependencies installed, but frontend failed"
        elif frontend["success"]:
            message = "Frontend dependencies installed, but backend failed"
        else:
            message = "Both backend and frontend dependency installs failed"

        data = {"backend": backend, "frontend": frontend, "parallel": True, "message": message}
        if not (backend["success"] and frontend["success"]):
            raise OperationError(message, data=data)
        await progress.report(100, message)
        return data

    @staticmethod
    def _sub_result(outcome: dict[str, Any] | BaseException) -> dict[str, Any]:
        if isinstance(outcome, OperationError):
            return {"success": False, "error": outcome.message, **outcome.data}
        if isinstance(outcome, BaseException):
            return {"success": False, "error": str(outcome)}
        return {"success": True, **outcome}

    # --- configuration ----------------------------------------------------

    async def setup_env_file(self, repo_path: str | None) -> dict[str, Any]:
        backend = self.layout.repo_path(repo_path) / "backend"
        target = backend / ".env"
        if target.exists():
            return {"already_exists": True, "path": str(target)}
        template = backend / ".env-dev"
        if not template.is_file():
            raise OperationError(f"Template not found: {template}")
        shutil.copyfile(template, target)
        return {"already_exists": False, "path": str(target), "source": str(template)}

    # --- optional local model runtime -------------------------------------

    async def install_ollama(self) -> dict[str, Any]:
        """Make Ollama available: guidance when absent, start when stopped."""
        binary = find_executable("ollama")
        if binary is None:
            current_os = os_name()
            return {
                "installed": False,
                "running": False,
                "needs_manual_install": True,
                "download_url": OLLAMA_DOWNLOAD_URL,
                "instructions": OLLAMA_INSTRUCTIONS.get(current_os, OLLAMA_INSTRUCTIONS["linux"]),
            }

        version = await self._ollama_version(binary)
        if await is_port_listening(OLLAMA_PORT):
            return {"installed": True, "running": True, "already_running": True, "version": version}

        method = await self._start_ollama(binary)
        if not await wait_for_port(OLLAMA_PORT, OLLAMA_START_TIMEOUT):
            raise OperationError(
                f"Ollama did not start within {OLLAMA_START_TIMEOUT}s",
                data={"method": method, "log_dir": str(self.layout.log_dir)},
            )
        self.logger.info("installer.ollama.started", method=method)
        return {
            "installed": True,
            "running": True,
            "already_running": False,
            "started": True,
            "method": method,
            "version": version,
        }

    @staticmethod
    async def _ollama_version(binary: Path) -> str | None:
        result = await run_command(binary, "--version", timeout=10)
        if not result.success:
            return None
        return result.stdout.strip().replace("ollama version is ", "").replace("ollama version ", "") or None

    async def _start_ollama(self, binary: Path) -> str:
        if os_name() == "linux" and (systemctl := find_executable("systemctl")) is not None:
            for args in (("--user", "start", "ollama"), ("start", "ollama")):
                if (await run_command(systemctl, *args, timeout=15)).success:
                    return "systemctl"
        spawn_detached([str(binary), "serve"], cwd=self.layout.home, log_dir=self.layout.log_dir, name="ollama")
        return "ollama_serve"

    async def _model_cached(self, binary: Path, name: str) -> bool:
        listing = await run_command(binary, "list", timeout=30)
        if not listing.success:
            return False
        wanted = {name, name if ":" in name.rsplit("/", 1)[-1] else f"{name}:latest"}
        return any(
            line.split()[0] in wanted for line in listing.stdout.splitlines()[1:] if line.strip()
        )

    async def pull_ollama_model(
        self,
        model: str,
        registry: str | None,
        force: bool,
        progress: ProgressReporter,
    ) -> dict[str, Any]:
        """Pull a model, reusing the cached copy unless ``force`` is set."""
        binary = find_executable("ollama")
        if binary is None:
            raise OperationError("Ollama is not installed. Run install_ollama first.")

        name = f"{registry.rstrip('/')}/{model}" if registry else model
        if not force and await self._model_cached(binary, name):
            await progress.report(100, "Model already downloaded")
            return {"model": name, "cached": True}

        await progress.report(0, "Pulling manifest...")
        process = await asyncio.create_subprocess_exec(
            str(binary), "pull", name,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        tail: list[str] = []
        try:
            async for line in _output_lines(process.stdout):
                if line.strip():
                    tail = (tail + [_ANSI_RE.sub("", line).strip()])[-20:]
                fields = parse_pull_progress(line)
                if fields:
                    await progress.report(**fields)
            exit_code = await process.wait()
        except asyncio.CancelledError:
            await _kill(process)
            raise

        if exit_code != 0:
            raise OperationError(
                f"ollama pull {name} failed",
                data={"model": name, "exit_code": exit_code, "output": "\n".join(tail)},
            )
        await progress.report(100, "Download complete!")
        self.logger.info("installer.model.pulled", model=name)
        return {"model": name, "cached": False, "exit_code": exit_code}
