"""
Execution agent dispatcher.

Validates each operation request against the catalog again, runs the
matching handler and turns the outcome into exactly one ``tool_result``.
Handler failures never escape: an ``OperationError`` becomes a failed
result with its data attached, and any other exception is logged and
reported as a failure.
"""

import asyncio
from typing import Any, Awaitable, Callable

import structlog
from pydantic import ValidationError

from braindrive_installer.core.catalog.operations import CATALOG
from braindrive_installer.core.catalog.schemas import OperationInput
from braindrive_installer.core.domain.errors import OperationError
from braindrive_installer.core.domain.messages import OperationResult
from braindrive_installer.infrastructure.agent.detection import detect_system
from braindrive_installer.infrastructure.agent.installers import Installer
from braindrive_installer.infrastructure.agent.layout import InstallLayout
from braindrive_installer.infrastructure.agent.ports import probe_port
from braindrive_installer.infrastructure.agent.process_manager import ServiceManager
from braindrive_installer.infrastructure.agent.progress import ProgressReporter, Sender

logger = structlog.get_logger()

Handler = Callable[[Any, ProgressReporter], Awaitable[dict[str, Any]]]


class AgentDispatcher:
    """
    Maps every catalog operation to its implementation.

    Args:
        layout: Installation layout
        installer: Installer steps
        services: Service lifecycle manager
        default_env_name: Environment used by detection

    Raises:
        RuntimeError: A catalog operation has no handler
    """

    def __init__(
        self,
        layout: InstallLayout,
        installer: Installer | None = None,
        services: ServiceManager | None = None,
        default_env_name: str = "BrainDriveDev",
    ):
        self.layout = layout
        self.installer = installer or Installer(layout)
        self.services = services or ServiceManager(layout)
        self.default_env_name = default_env_name
        self.logger = logger.bind(component="agent_dispatcher")
        self._handlers: dict[str, Handler] = {
            "detect_system": self._detect_system,
            "check_port": self._check_port,
            "install_conda": lambda p, progress: self.installer.install_conda(progress),
            "clone_repo": lambda p, _: self.installer.clone_repo(p.repo_url, p.target_path),
            "create_conda_env": lambda p, _: self.installer.create_conda_env(p.env_name, p.force_recreate),
            "install_conda_env": lambda p, progress: self.installer.install_conda_env(
                p.env_name, p.repo_path, p.environment_file, progress
            ),
            "install_backend_deps": lambda p, progress: self.installer.install_backend_deps(
                p.env_name, p.repo_path, progress
            ),
            "install_frontend_deps": lambda p, progress: self.installer.install_frontend_deps(
                p.env_name, p.repo_path, progress
            ),
            "install_all_deps": lambda p, progress: self.installer.install_all_deps(
                p.env_name, p.repo_path, progress
            ),
            "setup_env_file": lambda p, _: self.installer.setup_env_file(p.repo_path),
            "install_ollama": lambda p, _: self.installer.install_ollama(),
            "pull_ollama_model": lambda p, progress: self.installer.pull_ollama_model(
                p.model, p.registry, p.force, progress
            ),
            "start_braindrive": lambda p, _: self.services.start(
                p.env_name, p.repo_path, p.backend_port, p.frontend_port
            ),
            "stop_braindrive": lambda p, _: self.services.stop(),
            "restart_braindrive": lambda p, _: self.services.restart(
                p.env_name, p.repo_path, p.backend_port, p.frontend_port
            ),
            "get_braindrive_status": lambda p, _: self.services.status(),
        }
        missing = set(CATALOG) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for operations: {sorted(missing)}")

    def handles(self, operation: str) -> bool:
        return operation in self._handlers

    async def execute(
        self, request: dict[str, Any], send: Sender | None = None
    ) -> OperationResult:
        """
        Run one operation request.

        Args:
            request: Raw request envelope (``type``, ``id`` and fields)
            send: Progress sender for long-running operations

        Returns:
            The terminal OperationResult echoing the request id
        """
        fields = dict(request)
        operation = fields.pop("type", "")
        call_id = str(fields.pop("id", ""))
        spec = CATALOG.get(operation)
        if spec is None:
            return OperationResult(id=call_id, success=False, error=f"Unknown operation: {operation}")

        try:
            params = spec.validate(fields)
        except ValidationError as e:
            return OperationResult(
                id=call_id,
                success=False,
                error=f"Invalid input for {operation}: {e.errors(include_url=False)[0]['msg']}",
            )

        progress = ProgressReporter(call_id, operation, send if spec.reports_progress else None)
        log = self.logger.bind(call_id=call_id, operation=operation)
        log.info("agent.operation.started")
        try:
            data = await self._handlers[operation](params, progress)
        except OperationError as e:
            log.warning("agent.operation.failed", error=e.message)
            return OperationResult(id=call_id, success=False, error=e.message, data=e.data or None)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("agent.operation.crashed", error=str(e), error_type=type(e).__name__, exc_info=True)
            return OperationResult(id=call_id, success=False, error=f"{type(e).__name__}: {e}")

        log.info("agent.operation.completed")
        return OperationResult(id=call_id, success=True, data=data)

    async def _detect_system(self, params: OperationInput, progress: ProgressReporter) -> dict[str, Any]:
        snapshot = await detect_system(self.layout, self.default_env_name)
        return snapshot.to_dict()

    async def _check_port(self, params: OperationInput, progress: ProgressReporter) -> dict[str, Any]:
        return probe_port(params.port).to_dict()
