"""
Connection Hub.

Owns the two logical links of the relay (UI and execution agent) and
routes every inbound message by type. Results go to the correlator,
progress goes to the UI while its call is still pending, user turns go to
the orchestrator's queue.
"""

from typing import Any, Awaitable, Callable, assert_never

import structlog

from braindrive_installer.application.correlator import RpcCorrelator
from braindrive_installer.core.domain.messages import (
    BootstrapperConnect,
    BrowserConnect,
    ErrorMessage,
    InboundMessage,
    OperationResult,
    ProgressEvent,
    StatusUpdate,
    UserMessage,
    WireMessage,
)
from braindrive_installer.core.domain.session import Session
from braindrive_installer.core.interfaces.transport import LinkProtocol

logger = structlog.get_logger()

TurnHandler = Callable[[str], Awaitable[bool]]


class ConnectionHub:
    """Routes messages between the UI, the orchestrator and the execution agent."""

    def __init__(self, session: Session, correlator: RpcCorrelator):
        self.session = session
        self.correlator = correlator
        self._browser: LinkProtocol | None = None
        self._agent: LinkProtocol | None = None
        self._turn_handler: TurnHandler | None = None
        self.logger = logger.bind(component="hub", session_id=session.id)

    @property
    def agent_connected(self) -> bool:
        return self._agent is not None and self.correlator.is_connected

    def set_turn_handler(self, handler: TurnHandler) -> None:
        self._turn_handler = handler

    async def handle(self, message: InboundMessage, link: LinkProtocol) -> None:
        """Route one parsed inbound message received on ``link``."""
        match message:
            case BrowserConnect():
                await self._on_browser_connect(link)
            case BootstrapperConnect():
                await self._on_agent_connect(link, message.version)
            case UserMessage():
                await self._on_user_message(message.content)
            case OperationResult():
                self.correlator.settle(message)
            case ProgressEvent():
                await self._on_progress(message)
            case _:
                assert_never(message)

    async def handle_disconnect(self, link: LinkProtocol) -> None:
        """Forget ``link``; an agent disconnect rejects all pending calls."""
        if link is self._agent:
            self._agent = None
            self.session.set_bootstrapper_connected(False)
            failed = self.correlator.detach(link)
            self.logger.info("hub.agent.disconnected", failed_calls=failed)
            await self.send_to_browser(StatusUpdate(bootstrapper_connected=False))
        elif link is self._browser:
            self._browser = None
            self.session.set_browser_connected(False)
            self.logger.info("hub.browser.disconnected")

    async def send_to_browser(self, message: WireMessage | dict[str, Any]) -> bool:
        """Best-effort delivery to the UI; returns False when nothing was sent."""
        link = self._browser
        if link is None or not link.is_open:
            return False
        payload = message.to_wire() if isinstance(message, WireMessage) else message
        try:
            await link.send_json(payload)
        except Exception as e:
            self.logger.warning("hub.browser.send_failed", error=str(e), type=payload.get("type"))
            return False
        return True

    async def send_error(self, link: LinkProtocol, text: str) -> None:
        try:
            await link.send_json(ErrorMessage(message=text).to_wire())
        except Exception as e:
            self.logger.warning("hub.error.send_failed", error=str(e))

    def status_update(self) -> StatusUpdate:
        return StatusUpdate(
            bootstrapper_connected=self.agent_connected,
            session=self.session.get_status(),
        )

    async def _on_browser_connect(self, link: LinkProtocol) -> None:
        self._browser = link
        self.session.set_browser_connected(True)
        self.logger.info("hub.browser.connected")
        await self.send_to_browser(self.status_update())

    async def _on_agent_connect(self, link: LinkProtocol, version: str | None) -> None:
        if self._agent is not None and self._agent is not link:
            self.logger.warning("hub.agent.replaced")
        self._agent = link
        self.correlator.attach(link)
        self.session.set_bootstrapper_connected(True)
        self.logger.info("hub.agent.connected", version=version)
        await self.send_to_browser(self.status_update())

    async def _on_user_message(self, content: str) -> None:
        if self._turn_handler is None:
            self.logger.error("hub.user_message.no_handler")
            return
        accepted = await self._turn_handler(content)
        if not accepted:
            await self.send_to_browser(
                ErrorMessage(
                    message="Still working on your earlier messages. Please wait a moment and try again."
                )
            )

    async def _on_progress(self, event: ProgressEvent) -> None:
        if not self.correlator.is_pending(event.id):
            self.logger.debug("hub.progress.dropped", call_id=event.id, operation=event.operation)
            return
        await self.send_to_browser(event)
