"""
Process lifecycle manager for the BrainDrive services.

Tracks the backend and frontend as ``ProcessRecord`` entries and moves the
pair through ``stopped -> starting -> running -> stopping -> stopped``.
Every lifecycle action holds one lock, so a stop issued while a start is
in progress waits for the start to finish and then stops.
"""

import asyncio
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import psutil
import structlog

from braindrive_installer.core.domain.errors import OperationError
from braindrive_installer.infrastructure.agent.commands import conda_run, find_conda
from braindrive_installer.infrastructure.agent.layout import InstallLayout, is_windows
from braindrive_installer.infrastructure.agent.ports import (
    find_available_port,
    is_port_listening,
    probe_port,
    wait_for_port,
    wait_for_port_free,
)

logger = structlog.get_logger()

BACKEND_PORTS = (8005, 8006, 8007)
FRONTEND_PORTS = (5173, 5174, 5175)
START_TIMEOUT = 45.0
STOP_GRACE_SECONDS = 5.0
RESTART_PAUSE = 0.5


class ServiceState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class ProcessRecord:
    """
    A managed long-lived service.

    Attributes:
        name: Logical service name (backend, frontend)
        pid: Process id of the spawned root process
        port: Listening port
        started_at: Spawn time
        log_path: File receiving the process output
        process: Popen handle, kept so the child can be reaped
    """

    name: str
    pid: int
    port: int
    started_at: datetime = field(default_factory=datetime.now)
    log_path: Path | None = None
    process: subprocess.Popen | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "pid": self.pid,
            "port": self.port,
            "started_at": self.started_at.isoformat(),
            "log_path": str(self.log_path) if self.log_path else None,
        }


def spawn_detached(
    argv: list[str], cwd: Path, log_dir: Path, name: str
) -> tuple[subprocess.Popen, Path]:
    """
    Start a process in its own session with output going to a log file.

    Returns:
        The Popen handle and the log file path
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{name}_{datetime.now():%Y%m%d_%H%M%S}.log"
    with open(log_path, "ab") as log_file:
        kwargs: dict[str, Any] = {}
        if is_windows():
            kwargs["creationflags"] = (
                subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW
            )
        else:
            kwargs["start_new_session"] = True
        process = subprocess.Popen(
            argv,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            **kwargs,
        )
    logger.info("agent.process.spawned", name=name, pid=process.pid, log_path=str(log_path))
    return process, log_path


def terminate_tree(pid: int, grace: float = STOP_GRACE_SECONDS) -> bool:
    """
    Terminate a process and all of its children.

    Sends SIGTERM to the whole tree, waits up to ``grace`` seconds, then
    kills whatever is left. Blocking; run it in a worker thread.

    Returns:
        True if a process with ``pid`` existed
    """
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return False
    processes = [parent, *parent.children(recursive=True)]
    for process in processes:
        try:
            process.terminate()
        except psutil.NoSuchProcess:
            pass
    _, alive = psutil.wait_procs(processes, timeout=grace)
    for process in alive:
        try:
            process.kill()
        except psutil.NoSuchProcess:
            pass
    psutil.wait_procs(alive, timeout=grace)
    return True


def pids_listening_on(port: int) -> set[int]:
    """Processes with a listening socket on ``port`` (may be empty without privileges)."""
    pids: set[int] = set()
    try:
        connections = psutil.net_connections(kind="inet")
    except (psutil.AccessDenied, PermissionError):
        return pids
    for conn in connections:
        if conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN and conn.pid:
            pids.add(conn.pid)
    return pids


Spawner = Callable[[list[str], Path, Path, str], tuple[subprocess.Popen, Path]]


class ServiceManager:
    """
    Starts, stops and reports the BrainDrive backend and frontend.

    Args:
        layout: Installation layout
        spawner: Process spawner (tests inject a fake)
        start_timeout: Seconds to wait for each service's port
    """

    def __init__(
        self,
        layout: InstallLayout,
        spawner: Spawner = spawn_detached,
        start_timeout: float = START_TIMEOUT,
    ):
        self.layout = layout
        self.spawner = spawner
        self.start_timeout = start_timeout
        self.state = ServiceState.STOPPED
        self._records: dict[str, ProcessRecord] = {}
        self._lock = asyncio.Lock()
        self._last_ports: dict[str, int] = {}
        self.logger = logger.bind(component="service_manager")

    @property
    def records(self) -> dict[str, ProcessRecord]:
        return dict(self._records)

    async def _alive(self, record: ProcessRecord) -> bool:
        if record.process is not None and record.process.poll() is not None:
            return False
        return await is_port_listening(record.port)

    def _urls(self) -> dict[str, str]:
        urls = {}
        if "frontend" in self._records:
            urls["frontend_url"] = f"http://localhost:{self._records['frontend'].port}"
        if "backend" in self._records:
            urls["backend_url"] = f"http://localhost:{self._records['backend'].port}"
        return urls

    def _start_result(self, already: dict[str, bool]) -> dict[str, Any]:
        backend = self._records["backend"]
        frontend = self._records["frontend"]
        return {
            "already_running": all(already.values()),
            "backend_already_running": already["backend"],
            "frontend_already_running": already["frontend"],
            "backend_port": backend.port,
            "frontend_port": frontend.port,
            "backend_pid": backend.pid,
            "frontend_pid": frontend.pid,
            **self._urls(),
        }

    async def start(
        self,
        env_name: str,
        repo_path: str | None = None,
        backend_port: int = BACKEND_PORTS[0],
        frontend_port: int = FRONTEND_PORTS[0],
    ) -> dict[str, Any]:
        """
        Start both services; a no-op for services that are already running.

        Raises:
            OperationError: A service failed to come up (log path and
                ``partial`` flag in the data)
        """
        async with self._lock:
            repo = self.layout.repo_path(repo_path)
            already = {}
            for name in ("backend", "frontend"):
                record = self._records.get(name)
                already[name] = record is not None and await self._alive(record)
                if record is not None and not already[name]:
                    await asyncio.to_thread(terminate_tree, record.pid)
                    self._records.pop(name, None)

            if all(already.values()):
                self.state = ServiceState.RUNNING
                return self._start_result(already)

            self.state = ServiceState.STARTING
            try:
                if not already["backend"]:
                    await self._start_service(
                        "backend", repo / "backend", backend_port, BACKEND_PORTS,
                        lambda port: self._backend_argv(env_name, port),
                    )
                if not already["frontend"]:
                    try:
                        await self._start_service(
                            "frontend", repo / "frontend", frontend_port, FRONTEND_PORTS,
                            lambda port: self._frontend_argv(env_name, port),
                        )
                    except OperationError as e:
                        e.data.update(partial=True, **self._urls())
                        raise
            finally:
                self.state = ServiceState.RUNNING if self._records else ServiceState.STOPPED

            self.logger.info(
                "agent.services.started",
                backend_port=self._records["backend"].port,
                frontend_port=self._records["frontend"].port,
            )
            return self._start_result(already)

    def _conda(self) -> Path:
        conda = find_conda(self.layout)
        if conda is None:
            raise OperationError("Conda is not installed. Run install_conda first.")
        return conda

    def _backend_argv(self, env_name: str, port: int) -> list[str]:
        return conda_run(
            self._conda(), env_name,
            "uvicorn", "main:app", "--host", "0.0.0.0", "--port", str(port),
        )

    def _frontend_argv(self, env_name: str, port: int) -> list[str]:
        return conda_run(
            self._conda(), env_name,
            "npm", "run", "dev", "--", "--host", "localhost", "--port", str(port),
        )

    async def _start_service(
        self,
        name: str,
        cwd: Path,
        preferred: int,
        fallbacks: tuple[int, ...],
        build_argv: Callable[[int], list[str]],
    ) -> ProcessRecord:
        if not cwd.is_dir():
            raise OperationError(f"{cwd} not found. Clone the repository first.")

        candidates = [preferred, *(port for port in fallbacks if port != preferred)]
        log_path: Path | None = None
        while candidates:
            port = find_available_port(candidates[0], candidates[1:])
            if port is None:
                break
            candidates = candidates[candidates.index(port) + 1 :]

            process, log_path = self.spawner(build_argv(port), cwd, self.layout.log_dir, name)
            record = ProcessRecord(name=name, pid=process.pid, port=port, log_path=log_path, process=process)
            if await wait_for_port(port, self.start_timeout) and process.poll() is None:
                self._records[name] = record
                self._last_ports[name] = port
                return record

            await asyncio.to_thread(terminate_tree, process.pid)
            if probe_port(port).available:
                # the port was free, so the service itself failed
                raise OperationError(
                    f"{name.capitalize()} failed to start. Check the log file for details.",
                    data={"service": name, "port": port, "log_path": str(log_path)},
                )
            self.logger.warning("agent.service.port_taken", name=name, port=port)

        raise OperationError(
            f"No free port for the {name} (tried {preferred} and {', '.join(map(str, fallbacks))})",
            data={"service": name, "log_path": str(log_path) if log_path else None},
        )

    async def stop(self) -> dict[str, Any]:
        """Stop every tracked service; a no-op when nothing runs."""
        async with self._lock:
            return await self._stop_locked()

    async def _stop_locked(self) -> dict[str, Any]:
        if not self._records:
            self.state = ServiceState.STOPPED
            return {"already_stopped": True, "backend_stopped": False, "frontend_stopped": False}

        self.state = ServiceState.STOPPING
        result: dict[str, Any] = {"already_stopped": False}
        try:
            for name in ("frontend", "backend"):
                record = self._records.pop(name, None)
                if record is None:
                    result[f"{name}_stopped"] = False
                    continue
                await asyncio.to_thread(terminate_tree, record.pid)
                if record.process is not None:
                    record.process.poll()
                if not await wait_for_port_free(record.port, STOP_GRACE_SECONDS):
                    for pid in pids_listening_on(record.port):
                        await asyncio.to_thread(terminate_tree, pid)
                    await wait_for_port_free(record.port, STOP_GRACE_SECONDS)
                result[f"{name}_stopped"] = True
                self.logger.info("agent.service.stopped", name=name, pid=record.pid)
        finally:
            self.state = ServiceState.RUNNING if self._records else ServiceState.STOPPED
        return result

    async def restart(
        self,
        env_name: str,
        repo_path: str | None = None,
        backend_port: int | None = None,
        frontend_port: int | None = None,
    ) -> dict[str, Any]:
        """Stop, pause, then start again, preferring the previous ports."""
        stop_result = await self.stop()
        await asyncio.sleep(RESTART_PAUSE)
        start_result = await self.start(
            env_name,
            repo_path,
            backend_port=backend_port or self._last_ports.get("backend", BACKEND_PORTS[0]),
            frontend_port=frontend_port or self._last_ports.get("frontend", FRONTEND_PORTS[0]),
        )
        return {"stop_result": stop_result, "start_result": start_result, **start_result}

    async def status(self) -> dict[str, Any]:
        services = {}
        for name in ("backend", "frontend"):
            record = self._records.get(name)
            running = record is not None and await self._alive(record)
            services[name] = {
                "port": record.port if record else None,
                "pid": record.pid if record else None,
                "running": running,
            }
        return {
            "state": self.state.value,
            **services,
            "overall_running": all(service["running"] for service in services.values()),
            **self._urls(),
        }

    async def shutdown(self) -> None:
        """Stop the services this agent started; used on agent exit."""
        if not self._records:
            return
        self.logger.info("agent.services.shutdown", services=list(self._records))
        await self.stop()

