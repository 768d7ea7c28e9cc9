"""
Session and install-state tracking.

One ``Session`` exists per orchestrator process. It is owned by the
orchestrator and mutated only through the narrow setters below; every
other component receives it explicitly.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import structlog

from braindrive_installer.core.domain.snapshot import SystemSnapshot

logger = structlog.get_logger()


class InstallState(str, Enum):
    """Progress of the core BrainDrive installation."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ServiceStatus(str, Enum):
    """Last known state of the BrainDrive services."""

    UNKNOWN = "unknown"
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class Session:
    """
    Mutable per-run state.

    Attributes:
        id: Unique session id
        browser_connected: UI link state
        bootstrapper_connected: Execution agent link state
        transcript: Ordered conversation turns (role-tagged dicts)
        system_snapshot: Last detection result, if any
        install_state: Install-state machine
        service_status: Service-status flag
        created_at: Creation time
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    browser_connected: bool = False
    bootstrapper_connected: bool = False
    transcript: list[dict[str, Any]] = field(default_factory=list)
    system_snapshot: SystemSnapshot | None = None
    install_state: InstallState = InstallState.NOT_STARTED
    service_status: ServiceStatus = ServiceStatus.UNKNOWN
    created_at: datetime = field(default_factory=datetime.now)

    def set_browser_connected(self, connected: bool) -> None:
        self.browser_connected = connected

    def set_bootstrapper_connected(self, connected: bool) -> None:
        self.bootstrapper_connected = connected

    def add_message(self, role: str, content: str | None, **extra: Any) -> None:
        """Append a turn to the transcript.

        Args:
            role: user, assistant or tool
            content: Message text
            **extra: Provider fields such as ``tool_calls`` or ``tool_call_id``
        """
        entry: dict[str, Any] = {"role": role, "content": content}
        entry.update(extra)
        entry["timestamp"] = datetime.now().isoformat()
        self.transcript.append(entry)

    def get_conversation_history(self) -> list[dict[str, Any]]:
        """Transcript in provider format (timestamps stripped)."""
        return [
            {key: value for key, value in entry.items() if key != "timestamp"}
            for entry in self.transcript
        ]

    def record_snapshot(self, snapshot: SystemSnapshot) -> None:
        """Store a detection result; completes the install when core is ready."""
        self.system_snapshot = snapshot
        if snapshot.core_ready:
            self.mark_install_completed()

    def mark_install_progress(self) -> None:
        """An installer step succeeded."""
        if self.install_state in (InstallState.NOT_STARTED, InstallState.FAILED):
            self._transition(InstallState.IN_PROGRESS)

    def mark_install_failed(self) -> None:
        """An installer step failed. Never regresses a completed install."""
        if self.install_state != InstallState.COMPLETED:
            self._transition(InstallState.FAILED)

    def mark_install_completed(self) -> None:
        self._transition(InstallState.COMPLETED)

    def set_service_status(self, status: ServiceStatus) -> None:
        self.service_status = status

    def reset(self) -> None:
        """Forget conversation and install progress, keep link flags."""
        self.transcript.clear()
        self.system_snapshot = None
        self.install_state = InstallState.NOT_STARTED
        self.service_status = ServiceStatus.UNKNOWN

    def get_status(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "browser_connected": self.browser_connected,
            "bootstrapper_connected": self.bootstrapper_connected,
            "install_state": self.install_state.value,
            "service_status": self.service_status.value,
            "system_info": (
                self.system_snapshot.to_dict() if self.system_snapshot else None
            ),
            "message_count": len(self.transcript),
            "created_at": self.created_at.isoformat(),
        }

    def _transition(self, state: InstallState) -> None:
        if state == self.install_state:
            return
        logger.info(
            "session.install_state.changed",
            session_id=self.id,
            previous=self.install_state.value,
            current=state.value,
        )
        self.install_state = state
