"""
Filesystem layout of an installation target.

All agent paths derive from one ``InstallLayout`` so tests can point the
whole agent at a temporary home directory.
"""

import platform
from dataclasses import dataclass
from pathlib import Path

from braindrive_installer.core.domain.errors import OperationError

# Entries that may exist in the install root before the repository is cloned.
INSTALLER_ARTIFACTS = frozenset({"miniconda3", ".braindrive-installer"})


def is_windows() -> bool:
    return platform.system() == "Windows"


@dataclass(frozen=True)
class InstallLayout:
    """
    Paths used by the execution agent.

    Attributes:
        home: Home directory; every user-supplied path must stay inside it
        repo_dir: Default BrainDrive checkout (~/BrainDrive)
        state_dir: Installer state (~/.braindrive-installer)
    """

    home: Path
    repo_dir: Path
    state_dir: Path

    @classmethod
    def default(cls, home: Path | None = None) -> "InstallLayout":
        home = (home or Path.home()).resolve()
        return cls(
            home=home,
            repo_dir=home / "BrainDrive",
            state_dir=home / ".braindrive-installer",
        )

    @property
    def conda_dir(self) -> Path:
        """Isolated Miniconda install path."""
        return self.repo_dir / "miniconda3"

    @property
    def conda_binary(self) -> Path:
        if is_windows():
            return self.conda_dir / "Scripts" / "conda.exe"
        return self.conda_dir / "bin" / "conda"

    @property
    def download_dir(self) -> Path:
        return self.state_dir / "downloads"

    @property
    def log_dir(self) -> Path:
        return self.state_dir / "logs"

    def isolated_conda_valid(self) -> bool:
        """The isolated runtime counts as installed only when it is usable."""
        if is_windows():
            return self.conda_binary.is_file()
        return (
            self.conda_binary.is_file()
            and (self.conda_dir / "etc" / "profile.d" / "conda.sh").is_file()
        )

    def env_dir(self, env_name: str) -> Path:
        return self.conda_dir / "envs" / env_name

    def resolve_within_home(self, value: str | None, default: Path) -> Path:
        """
        Resolve a user-supplied path and make sure it stays inside home.

        ``~`` and ``~/`` are expanded against the layout's home; relative
        paths are taken relative to home.

        Raises:
            OperationError: The path escapes the home directory
        """
        if not value:
            path = default
        elif value == "~":
            path = self.home
        elif value.startswith(("~/", "~\\")):
            path = self.home / value[2:]
        else:
            path = Path(value)
            if not path.is_absolute():
                path = self.home / path

        resolved = path.resolve()
        if not resolved.is_relative_to(self.home):
            raise OperationError(f"Path must be inside the home directory: {value}")
        return resolved

    def repo_path(self, value: str | None) -> Path:
        return self.resolve_within_home(value, self.repo_dir)
