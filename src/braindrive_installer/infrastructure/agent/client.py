"""
Execution agent link.

Keeps a websocket connection to the orchestrator, announces the agent
with ``bootstrapper_connect`` and runs every operation request as its own
task so that slow steps never block detection or status calls. Lost
connections are retried after a delay; in-flight operations keep running
and their late results are simply not delivered.
"""

import asyncio
import json
from typing import Any

import structlog
import websockets

from braindrive_installer import __version__
from braindrive_installer.core.domain.messages import BootstrapperConnect
from braindrive_installer.infrastructure.agent.dispatcher import AgentDispatcher

logger = structlog.get_logger()


class AgentClient:
    """
    Websocket client of the execution agent.

    Args:
        url: Orchestrator websocket URL
        dispatcher: Operation dispatcher
        reconnect_delay: Seconds between connection attempts
    """

    def __init__(self, url: str, dispatcher: AgentDispatcher, reconnect_delay: float = 3.0):
        self.url = url
        self.dispatcher = dispatcher
        self.reconnect_delay = reconnect_delay
        self._ws: Any = None
        self._send_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self.logger = logger.bind(component="agent_client", url=url)

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def run_forever(self) -> None:
        """Connect, serve, and reconnect until cancelled. Stops services on exit."""
        try:
            while True:
                try:
                    async with websockets.connect(self.url) as ws:
                        await self._serve(ws)
                except (OSError, websockets.exceptions.WebSocketException) as e:
                    self.logger.warning("agent.link.unavailable", error=str(e))
                finally:
                    self._ws = None
                await asyncio.sleep(self.reconnect_delay)
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Cancel in-flight operations and stop the services this agent started."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.dispatcher.services.shutdown()

    async def _serve(self, ws: Any) -> None:
        self._ws = ws
        self.logger.info("agent.link.connected")
        await self.send(BootstrapperConnect(version=__version__).to_wire())
        try:
            async for raw in ws:
                self._handle_frame(raw)
        except websockets.exceptions.ConnectionClosed:
            pass
        self.logger.info("agent.link.closed")

    def _handle_frame(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            self.logger.warning("agent.link.invalid_frame")
            return
        if not isinstance(message, dict):
            return

        message_type = message.get("type")
        if message.get("id") and self.dispatcher.handles(message_type):
            task = asyncio.create_task(self._run_operation(message), name=f"op-{message_type}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        elif message_type == "error":
            self.logger.warning("agent.link.error_message", message=message.get("message"))
        else:
            self.logger.debug("agent.link.ignored", type=message_type)

    async def _run_operation(self, request: dict[str, Any]) -> None:
        result = await self.dispatcher.execute(request, send=self.send)
        try:
            await self.send(result.to_wire())
        except Exception as e:
            self.logger.warning("agent.result.undelivered", call_id=result.id, error=str(e))

    async def send(self, message: dict[str, Any]) -> None:
        """Send one message; raises ConnectionError when not connected."""
        ws = self._ws
        if ws is None:
            raise ConnectionError("Not connected to the orchestrator")
        async with self._send_lock:
            await ws.send(json.dumps(message))
