"""
System detection.

Builds the ``SystemSnapshot`` returned by ``detect_system``: platform and
hardware facts from ``platform`` and ``psutil``, GPUs from ``nvidia-smi``
when present, and one readiness flag per BrainDrive prerequisite.
"""

import platform
import socket
from pathlib import Path

import psutil
import structlog

from braindrive_installer.core.domain.snapshot import GpuInfo, SystemSnapshot
from braindrive_installer.infrastructure.agent.commands import find_executable, run_command
from braindrive_installer.infrastructure.agent.layout import InstallLayout
from braindrive_installer.infrastructure.agent.ports import is_port_listening

logger = structlog.get_logger()

OLLAMA_PORT = 11434
GIB = 1024**3


def os_name() -> str:
    system = platform.system()
    return {"Darwin": "macos", "Windows": "windows", "Linux": "linux"}.get(system, system.lower())


def arch_name() -> str:
    machine = platform.machine().lower()
    return {"amd64": "x86_64", "aarch64": "arm64"}.get(machine, machine)


def cpu_brand() -> str:
    cpuinfo = Path("/proc/cpuinfo")
    if cpuinfo.is_file():
        for line in cpuinfo.read_text(errors="replace").splitlines():
            if line.startswith("model name"):
                return line.split(":", 1)[1].strip()
    return platform.processor() or ""


async def detect_gpus() -> tuple[GpuInfo, ...]:
    """NVIDIA GPUs with their memory; empty when nvidia-smi is unavailable."""
    nvidia_smi = find_executable("nvidia-smi")
    if nvidia_smi is None:
        return ()
    result = await run_command(
        nvidia_smi,
        "--query-gpu=name,memory.total",
        "--format=csv,noheader,nounits",
        timeout=10,
    )
    if not result.success:
        return ()
    gpus = []
    for line in result.stdout.splitlines():
        name, _, memory = line.partition(",")
        if not name.strip():
            continue
        try:
            vram_gb = round(float(memory.strip()) / 1024, 1)
        except ValueError:
            vram_gb = None
        gpus.append(GpuInfo(name=name.strip(), vram_gb=vram_gb))
    return tuple(gpus)


def is_valid_checkout(path: Path) -> bool:
    return (path / ".git").exists()


async def detect_system(layout: InstallLayout, env_name: str) -> SystemSnapshot:
    """
    Detect the machine and the state of every BrainDrive prerequisite.

    Args:
        layout: Installation layout
        env_name: Name of the target conda environment

    Returns:
        Immutable SystemSnapshot
    """
    memory = psutil.virtual_memory()
    try:
        disk_free = psutil.disk_usage(str(layout.home)).free
    except OSError:
        disk_free = None

    conda_installed = layout.isolated_conda_valid()
    snapshot = SystemSnapshot(
        os=os_name(),
        arch=arch_name(),
        hostname=socket.gethostname(),
        home_dir=str(layout.home),
        cpu_brand=cpu_brand(),
        cpu_physical_cores=psutil.cpu_count(logical=False),
        cpu_logical_cores=psutil.cpu_count(logical=True),
        memory_gb=round(memory.total / GIB, 1),
        disk_free_gb=round(disk_free / GIB, 1) if disk_free is not None else None,
        gpus=await detect_gpus(),
        conda_installed=conda_installed,
        braindrive_env_ready=conda_installed and layout.env_dir(env_name).is_dir(),
        git_installed=find_executable("git") is not None,
        braindrive_exists=is_valid_checkout(layout.repo_dir),
        ollama_installed=find_executable("ollama") is not None,
        ollama_running=await is_port_listening(OLLAMA_PORT),
        node_installed=find_executable("node") is not None,
    )
    logger.info(
        "agent.detect.completed",
        os=snapshot.os,
        arch=snapshot.arch,
        core_ready=snapshot.core_ready,
    )
    return snapshot
