"""
Configuration for the orchestrator and the execution agent.

Values come from, in increasing priority: defaults, a ``.env`` file,
environment variables (``BRAINDRIVE_`` prefix, plus the conventional
``ANTHROPIC_API_KEY`` and ``PORT``), and an optional YAML file passed on
the command line.
"""

from pathlib import Path
from typing import Any, Optional, TypeVar

import yaml
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings

from braindrive_installer.core.catalog.schemas import DEFAULT_ENV_NAME

_COMMON_CONFIG = {
    "env_file": ".env",
    "env_prefix": "BRAINDRIVE_",
    "case_sensitive": False,
    "populate_by_name": True,
    "extra": "ignore",
}


class OrchestratorSettings(BaseSettings):
    """Settings of the relay server."""

    host: str = Field(default="0.0.0.0", description="Listening interface")
    port: int = Field(
        default=3000,
        validation_alias=AliasChoices("BRAINDRIVE_PORT", "PORT", "port"),
        description="Listening port",
    )
    api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("BRAINDRIVE_API_KEY", "ANTHROPIC_API_KEY", "api_key"),
        description="Decision-maker credential",
    )
    model: str = Field(default="anthropic/claude-sonnet-4-20250514", description="litellm model id")
    max_tokens: int = Field(default=4096)
    max_steps: int = Field(default=25, description="Decision-maker rounds per turn")
    max_queued_turns: int = Field(default=8, description="Pending user turns before refusing")
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str = Field(default="INFO")
    log_dir: Optional[Path] = Field(default=None, description="Directory for installer.log")

    model_config = _COMMON_CONFIG


class AgentSettings(BaseSettings):
    """Settings of the local execution agent."""

    orchestrator_url: str = Field(
        default="ws://localhost:3000/ws",
        description="Websocket URL of the orchestrator",
    )
    home: Optional[Path] = Field(default=None, description="Override of the home directory")
    env_name: str = Field(default=DEFAULT_ENV_NAME)
    reconnect_delay: float = Field(default=3.0)
    log_level: str = Field(default="INFO")
    log_retention_days: int = Field(default=7)

    model_config = _COMMON_CONFIG


SettingsT = TypeVar("SettingsT", bound=BaseSettings)


def load_settings(cls: type[SettingsT], config_path: Path | None = None, **overrides: Any) -> SettingsT:
    """
    Build settings, overlaying a YAML file and explicit overrides.

    Args:
        cls: Settings class
        config_path: Optional YAML file; a missing file is ignored
        **overrides: Values from command-line options (None values skipped)
    """
    data: dict[str, Any] = {}
    if config_path is not None and config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    data.update({key: value for key, value in overrides.items() if value is not None})
    return cls(**data)
