"""
System snapshot produced by the detection operation.

A snapshot is an immutable fact: the execution agent builds it once per
``detect_system`` call and the orchestrator stores the latest one on the
session, where the gating logic consults its readiness flags.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any


@dataclass(frozen=True)
class GpuInfo:
    """A detected graphics adapter."""

    name: str
    vram_gb: float | None = None


@dataclass(frozen=True)
class SystemSnapshot:
    """
    Result of a detection operation.

    Attributes:
        os: Operating system family (linux, macos, windows)
        arch: CPU architecture (x86_64, arm64, ...)
        hostname: Machine host name
        home_dir: Home directory of the user running the agent
        cpu_brand: Human-readable CPU model
        cpu_physical_cores: Physical core count (None when unknown)
        cpu_logical_cores: Logical core count
        memory_gb: Total memory in GiB
        disk_free_gb: Free space on the home volume in GiB
        gpus: Detected GPUs
        conda_installed: Isolated conda runtime present and valid
        braindrive_env_ready: Target conda environment exists
        git_installed: git is available
        braindrive_exists: Target repository checkout exists
        ollama_installed: Local-model runtime binary present
        ollama_running: Local-model runtime answering on its port
        node_installed: Node.js available on PATH
    """

    os: str
    arch: str
    hostname: str = ""
    home_dir: str = ""
    cpu_brand: str = ""
    cpu_physical_cores: int | None = None
    cpu_logical_cores: int | None = None
    memory_gb: float | None = None
    disk_free_gb: float | None = None
    gpus: tuple[GpuInfo, ...] = field(default_factory=tuple)
    conda_installed: bool = False
    braindrive_env_ready: bool = False
    git_installed: bool = False
    braindrive_exists: bool = False
    ollama_installed: bool = False
    ollama_running: bool = False
    node_installed: bool = False

    @property
    def core_ready(self) -> bool:
        """True when every core prerequisite for BrainDrive is satisfied."""
        return (
            self.conda_installed
            and self.braindrive_env_ready
            and self.git_installed
            and self.braindrive_exists
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["gpus"] = [asdict(gpu) for gpu in self.gpus]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SystemSnapshot":
        """Build a snapshot from a detection payload, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        values["gpus"] = tuple(
            GpuInfo(name=gpu.get("name", ""), vram_gb=gpu.get("vram_gb"))
            for gpu in data.get("gpus") or []
        )
        values.setdefault("os", "unknown")
        values.setdefault("arch", "unknown")
        return cls(**values)
