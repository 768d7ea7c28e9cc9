"""
Input schemas for the audited operations.

Every value that later ends up in a filesystem path, a package name or an
external identifier is constrained to an allow-listed character class.
Unknown fields are rejected.
"""

from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StringConstraints

ENV_NAME_PATTERN = r"^[A-Za-z0-9_-]+$"
MODEL_PATTERN = r"^[A-Za-z0-9._:+/-]+$"
REGISTRY_PATTERN = r"^[A-Za-z0-9._:/-]+$"
REPO_URL_PATTERN = r"^(https://|git@)[A-Za-z0-9._~:/@+-]+$"
PATH_PATTERN = r"^[A-Za-z0-9 ._/~:\\-]+$"

DEFAULT_REPO_URL = "https://github.com/BrainDriveAI/BrainDrive.git"
DEFAULT_ENV_NAME = "BrainDriveDev"
DEFAULT_BACKEND_PORT = 8005
DEFAULT_FRONTEND_PORT = 5173


def _reject_parent_segments(value: str) -> str:
    if ".." in value.replace("\\", "/").split("/"):
        raise ValueError("path must not contain '..' segments")
    return value


SafePath = Annotated[
    str,
    StringConstraints(pattern=PATH_PATTERN, max_length=255),
    AfterValidator(_reject_parent_segments),
]
EnvName = Annotated[str, StringConstraints(pattern=ENV_NAME_PATTERN, max_length=64)]


class OperationInput(BaseModel):
    """Base input: strict, whitespace-trimmed."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class ConfirmedInput(OperationInput):
    """Input of an operation that needs the user's explicit approval."""

    user_confirmed: bool = Field(
        default=False,
        description=(
            "Set to true only after the user explicitly approved this "
            "action in their latest message."
        ),
    )


class EmptyInput(OperationInput):
    pass


class CheckPortInput(OperationInput):
    port: int = Field(..., ge=1, le=65535, description="TCP port to probe")


class InstallCondaInput(ConfirmedInput):
    pass


class CloneRepoInput(ConfirmedInput):
    repo_url: str = Field(
        default=DEFAULT_REPO_URL,
        pattern=REPO_URL_PATTERN,
        max_length=300,
        description="Git URL (https:// or git@)",
    )
    target_path: SafePath | None = Field(
        default=None,
        description="Checkout directory inside the home directory (default ~/BrainDrive)",
    )


class CreateCondaEnvInput(ConfirmedInput):
    env_name: EnvName = DEFAULT_ENV_NAME
    force_recreate: bool = Field(
        default=False, description="Remove and recreate an existing environment"
    )


class InstallCondaEnvInput(ConfirmedInput):
    env_name: EnvName = DEFAULT_ENV_NAME
    repo_path: SafePath | None = Field(
        default=None, description="BrainDrive checkout (default ~/BrainDrive)"
    )
    environment_file: SafePath = Field(
        default="environment.yml",
        description="Environment file relative to the checkout",
    )


class RepoScopedInput(OperationInput):
    env_name: EnvName = DEFAULT_ENV_NAME
    repo_path: SafePath | None = Field(
        default=None, description="BrainDrive checkout (default ~/BrainDrive)"
    )


class SetupEnvFileInput(OperationInput):
    repo_path: SafePath | None = None


class PullModelInput(OperationInput):
    model: str = Field(..., pattern=MODEL_PATTERN, max_length=200)
    registry: str | None = Field(default=None, pattern=REGISTRY_PATTERN, max_length=200)
    force: bool = Field(default=False, description="Re-download even when cached")


class StartServicesInput(ConfirmedInput):
    env_name: EnvName = DEFAULT_ENV_NAME
    repo_path: SafePath | None = None
    frontend_port: int = Field(default=DEFAULT_FRONTEND_PORT, ge=1024, le=65535)
    backend_port: int = Field(default=DEFAULT_BACKEND_PORT, ge=1024, le=65535)


class RestartServicesInput(ConfirmedInput):
    env_name: EnvName = DEFAULT_ENV_NAME
    repo_path: SafePath | None = None
    frontend_port: int | None = Field(
        default=None, ge=1024, le=65535, description="Omit to reuse the previous port"
    )
    backend_port: int | None = Field(
        default=None, ge=1024, le=65535, description="Omit to reuse the previous port"
    )
