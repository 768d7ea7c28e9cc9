"""
Audited Operation Catalog.

The closed set of operations the decision-maker may request. Each one is
declared exactly once here with its purpose, input schema, default timeout
and gating classification. The orchestrator exposes the catalog as tools;
the execution agent implements one handler per entry.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from braindrive_installer.core.catalog.schemas import (
    CheckPortInput,
    CloneRepoInput,
    CreateCondaEnvInput,
    EmptyInput,
    InstallCondaEnvInput,
    InstallCondaInput,
    OperationInput,
    PullModelInput,
    RepoScopedInput,
    RestartServicesInput,
    SetupEnvFileInput,
    StartServicesInput,
)


class Classification(str, Enum):
    """Gate applied to an operation before it is dispatched."""

    SAFE = "safe"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_INSTALL_COMPLETE = "requires_install_complete"


@dataclass(frozen=True)
class OperationSpec:
    """
    Declaration of one audited operation.

    Attributes:
        name: Operation name, also the wire ``type`` of its request
        purpose: Human-readable description shown to the decision-maker
        input_model: Pydantic model validating the request fields
        timeout: Default time budget in seconds
        classification: Gate evaluated before dispatch
        reports_progress: Whether the agent streams ProgressEvents
    """

    name: str
    purpose: str
    input_model: type[OperationInput]
    timeout: float
    classification: Classification = Classification.SAFE
    reports_progress: bool = False

    @property
    def parameters_schema(self) -> dict[str, Any]:
        """JSON schema of the input, as offered to the decision-maker."""
        schema = self.input_model.model_json_schema()
        schema.pop("title", None)
        return schema

    def validate(self, arguments: dict[str, Any]) -> OperationInput:
        return self.input_model.model_validate(arguments)


_SPECS = (
    OperationSpec(
        name="detect_system",
        purpose=(
            "Detect OS, hardware, and which BrainDrive prerequisites are "
            "installed (isolated conda, environment, git, repository, Ollama)."
        ),
        input_model=EmptyInput,
        timeout=30,
    ),
    OperationSpec(
        name="check_port",
        purpose="Check whether a TCP port is free on both IPv4 and IPv6.",
        input_model=CheckPortInput,
        timeout=10,
    ),
    OperationSpec(
        name="install_conda",
        purpose=(
            "Download and install an isolated Miniconda runtime under "
            "~/BrainDrive/miniconda3. Does nothing if already installed."
        ),
        input_model=InstallCondaInput,
        timeout=600,
        classification=Classification.REQUIRES_CONFIRMATION,
        reports_progress=True,
    ),
    OperationSpec(
        name="clone_repo",
        purpose="Clone the BrainDrive repository (default ~/BrainDrive).",
        input_model=CloneRepoInput,
        timeout=300,
        classification=Classification.REQUIRES_CONFIRMATION,
    ),
    OperationSpec(
        name="create_conda_env",
        purpose=(
            "Create the conda environment with Python 3.11, Node.js and git. "
            "Reports already_exists unless force_recreate is set."
        ),
        input_model=CreateCondaEnvInput,
        timeout=600,
        classification=Classification.REQUIRES_CONFIRMATION,
    ),
    OperationSpec(
        name="install_conda_env",
        purpose=(
            "Create or update the conda environment from an environment "
            "file inside the repository."
        ),
        input_model=InstallCondaEnvInput,
        timeout=900,
        classification=Classification.REQUIRES_CONFIRMATION,
        reports_progress=True,
    ),
    OperationSpec(
        name="install_backend_deps",
        purpose="Install backend Python dependencies (pip) in the conda environment.",
        input_model=RepoScopedInput,
        timeout=900,
        reports_progress=True,
    ),
    OperationSpec(
        name="install_frontend_deps",
        purpose="Install frontend Node.js dependencies (npm) in the conda environment.",
        input_model=RepoScopedInput,
        timeout=600,
        reports_progress=True,
    ),
    OperationSpec(
        name="install_all_deps",
        purpose=(
            "Install backend and frontend dependencies in parallel and "
            "report both outcomes."
        ),
        input_model=RepoScopedInput,
        timeout=900,
        reports_progress=True,
    ),
    OperationSpec(
        name="setup_env_file",
        purpose="Create backend/.env from backend/.env-dev if it does not exist.",
        input_model=SetupEnvFileInput,
        timeout=10,
    ),
    OperationSpec(
        name="install_ollama",
        purpose=(
            "Set up the optional Ollama runtime: start it if installed, "
            "otherwise return manual install instructions."
        ),
        input_model=EmptyInput,
        timeout=120,
        classification=Classification.REQUIRES_INSTALL_COMPLETE,
    ),
    OperationSpec(
        name="pull_ollama_model",
        purpose="Download an Ollama model, reusing a cached copy unless forced.",
        input_model=PullModelInput,
        timeout=1800,
        classification=Classification.REQUIRES_INSTALL_COMPLETE,
        reports_progress=True,
    ),
    OperationSpec(
        name="start_braindrive",
        purpose=(
            "Start the BrainDrive backend and frontend. Falls back to the "
            "next free port and reports the ports actually used."
        ),
        input_model=StartServicesInput,
        timeout=120,
        classification=Classification.REQUIRES_CONFIRMATION,
    ),
    OperationSpec(
        name="stop_braindrive",
        purpose="Stop the BrainDrive services started by the installer.",
        input_model=EmptyInput,
        timeout=60,
    ),
    OperationSpec(
        name="restart_braindrive",
        purpose="Stop then start the BrainDrive services.",
        input_model=RestartServicesInput,
        timeout=180,
        classification=Classification.REQUIRES_CONFIRMATION,
    ),
    OperationSpec(
        name="get_braindrive_status",
        purpose="Report whether the BrainDrive services are running, with ports and PIDs.",
        input_model=EmptyInput,
        timeout=10,
    ),
)

CATALOG: dict[str, OperationSpec] = {spec.name: spec for spec in _SPECS}


def get_operation(name: str) -> OperationSpec | None:
    return CATALOG.get(name)
