"""
Orchestrator.

Runs the conversation with the decision-maker one turn at a time. User
turns enter a bounded FIFO queue served by a single worker task, so the
decision-maker never sees two overlapping reasoning contexts. Within a
turn, tool calls are gated, dispatched to the execution agent through the
correlator and their results fed back to the decision-maker.
"""

import asyncio
from typing import Any, AsyncIterator

import structlog

from braindrive_installer.application.hub import ConnectionHub
from braindrive_installer.core.catalog.gating import authorize
from braindrive_installer.core.catalog.operations import CATALOG
from braindrive_installer.core.domain.errors import (
    InputValidationError,
    InstallerError,
    OperationFailedError,
)
from braindrive_installer.core.domain.messages import (
    AiMessageDelta,
    AiMessageEnd,
    AiMessageStart,
    AiTyping,
    ErrorMessage,
    OperationResult,
    ToolExecuting,
    WireMessage,
)
from braindrive_installer.core.domain.session import ServiceStatus, Session
from braindrive_installer.core.domain.snapshot import SystemSnapshot
from braindrive_installer.core.interfaces.llm import (
    DecisionMakerProtocol,
    TextDelta,
    ToolCallRequest,
)
from braindrive_installer.core.prompts.installer_prompt import INSTALLER_SYSTEM_PROMPT
from braindrive_installer.infrastructure.tools.tool_converter import (
    assistant_tool_calls_to_message,
    tool_result_to_message,
    tools_to_openai_format,
)

logger = structlog.get_logger()

# Steps of the core install; their outcome moves the install-state machine.
INSTALL_STEPS = frozenset(
    {
        "install_conda",
        "clone_repo",
        "create_conda_env",
        "install_conda_env",
        "install_backend_deps",
        "install_frontend_deps",
        "install_all_deps",
        "setup_env_file",
    }
)


async def frame_reply(chunks: AsyncIterator[str]) -> AsyncIterator[WireMessage]:
    """
    Frame streamed reply text as start, deltas, end.

    Nothing is yielded when the stream produces no text. The sequence is
    finite and cannot be restarted.
    """
    started = False
    async for chunk in chunks:
        if not chunk:
            continue
        if not started:
            started = True
            yield AiMessageStart()
        yield AiMessageDelta(content=chunk)
    if started:
        yield AiMessageEnd()


class Orchestrator:
    """
    Serializes conversational turns and executes the tool calls they produce.

    Args:
        session: Session state, mutated only here
        hub: Connection hub used to reach the UI and the agent
        decision_maker: Streaming decision-maker
        system_prompt: System prompt for every round
        max_steps: Maximum decision-maker rounds per turn
        max_queued_turns: Capacity of the turn queue
    """

    def __init__(
        self,
        session: Session,
        hub: ConnectionHub,
        decision_maker: DecisionMakerProtocol,
        system_prompt: str = INSTALLER_SYSTEM_PROMPT,
        max_steps: int = 25,
        max_queued_turns: int = 8,
    ):
        self.session = session
        self.hub = hub
        self.decision_maker = decision_maker
        self.system_prompt = system_prompt
        self.max_steps = max_steps
        self.tools = tools_to_openai_format(CATALOG.values())
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max_queued_turns)
        self._worker: asyncio.Task | None = None
        self.logger = logger.bind(component="orchestrator", session_id=session.id)
        hub.set_turn_handler(self.submit)

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="orchestrator-turns")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def submit(self, content: str) -> bool:
        """
        Queue a user turn.

        Returns:
            False when the queue is full and the turn was refused
        """
        try:
            self._queue.put_nowait(content)
        except asyncio.QueueFull:
            self.logger.warning("orchestrator.turn.rejected", queued=self._queue.qsize())
            return False
        self.logger.debug("orchestrator.turn.queued", queued=self._queue.qsize())
        return True

    async def join(self) -> None:
        """Wait until every queued turn has been processed."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            content = await self._queue.get()
            try:
                await self.process_turn(content)
            finally:
                self._queue.task_done()

    async def process_turn(self, content: str) -> None:
        """Handle one user turn to completion, including its tool calls."""
        self.session.add_message("user", content)
        self.logger.info("orchestrator.turn.started", message_count=len(self.session.transcript))
        await self.hub.send_to_browser(AiTyping(typing=True))
        try:
            for _ in range(self.max_steps):
                tool_calls = await self._stream_round()
                if not tool_calls:
                    break
                results = await asyncio.gather(
                    *(self.execute_tool(call) for call in tool_calls), return_exceptions=True
                )
                for call, result in zip(tool_calls, results):
                    if isinstance(result, BaseException):
                        result = self._crashed_tool_result(call, result)
                    self.session.add_message(**tool_result_to_message(call.id, call.name, result))
            else:
                self.logger.warning("orchestrator.turn.step_limit", max_steps=self.max_steps)
                await self.hub.send_to_browser(
                    ErrorMessage(message="Stopped after too many steps in one reply. Send a message to continue.")
                )
        except Exception as e:
            self.logger.error("orchestrator.turn.failed", error=str(e), error_type=type(e).__name__)
            await self.hub.send_to_browser(ErrorMessage(message=f"AI error: {e}"))
        finally:
            await self.hub.send_to_browser(AiTyping(typing=False))

    def _crashed_tool_result(self, call: ToolCallRequest, exc: BaseException) -> dict[str, Any]:
        # every tool call in the transcript needs a matching tool message
        if isinstance(exc, asyncio.CancelledError):
            raise exc
        self.logger.error(
            "orchestrator.tool.crashed",
            tool=call.name,
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=exc,
        )
        return {"success": False, "error": f"{type(exc).__name__}: {exc}", "error_kind": "error"}

    async def _stream_round(self) -> list[ToolCallRequest]:
        tool_calls: list[ToolCallRequest] = []
        text_parts: list[str] = []

        async def reply_text() -> AsyncIterator[str]:
            async for event in self.decision_maker.stream_turn(
                self.system_prompt, self.session.get_conversation_history(), self.tools
            ):
                if isinstance(event, TextDelta):
                    text_parts.append(event.text)
                    yield event.text
                elif isinstance(event, ToolCallRequest):
                    tool_calls.append(event)

        async for message in frame_reply(reply_text()):
            await self.hub.send_to_browser(message)

        text = "".join(text_parts)
        if tool_calls:
            self.session.add_message(**assistant_tool_calls_to_message(text, tool_calls))
        elif text:
            self.session.add_message("assistant", text)
        return tool_calls

    async def execute_tool(self, call: ToolCallRequest) -> dict[str, Any]:
        """
        Gate, dispatch and record one tool call.

        Returns:
            Structured result for the decision-maker; errors are payloads,
            never exceptions.
        """
        if call.name == "check_connection":
            return {"connected": self.hub.agent_connected}

        spec = CATALOG.get(call.name)
        try:
            if spec is None:
                raise InputValidationError(f"Unknown operation: {call.name}", operation=call.name)
            if call.malformed:
                raise InputValidationError(
                    f"Arguments for {call.name} were not valid JSON", operation=call.name
                )
            params = authorize(spec, call.arguments, self.session, self.hub.agent_connected)
        except InstallerError as e:
            self.logger.info("orchestrator.tool.rejected", tool=call.name, kind=e.kind, error=e.message)
            return e.to_payload()

        payload = params.model_dump(exclude_none=True, exclude={"user_confirmed"})
        await self.hub.send_to_browser(ToolExecuting(tool=spec.name, input=payload))
        self._before_dispatch(spec.name)
        self.logger.info("orchestrator.tool.dispatched", tool=spec.name)

        try:
            result = await self.hub.correlator.dispatch(spec.name, payload, spec.timeout)
        except InstallerError as e:
            self.logger.warning("orchestrator.tool.failed", tool=spec.name, kind=e.kind, error=e.message)
            self._after_failure(spec.name)
            return e.to_payload()

        if not result.success:
            self._after_failure(spec.name)
            error = OperationFailedError(result.error or f"{spec.name} failed", data=result.data)
            self.logger.warning("orchestrator.tool.failed", tool=spec.name, kind=error.kind, error=error.message)
            return error.to_payload()

        self._after_success(spec.name, result)
        self.logger.info("orchestrator.tool.completed", tool=spec.name)
        return {"success": True, **(result.data or {})}

    def _before_dispatch(self, operation: str) -> None:
        if operation in ("start_braindrive", "restart_braindrive"):
            self.session.set_service_status(ServiceStatus.STARTING)
        elif operation == "stop_braindrive":
            self.session.set_service_status(ServiceStatus.STOPPING)

    def _after_success(self, operation: str, result: OperationResult) -> None:
        data = result.data or {}
        if operation == "detect_system":
            self.session.record_snapshot(SystemSnapshot.from_dict(data))
        elif operation in INSTALL_STEPS:
            self.session.mark_install_progress()
        elif operation in ("start_braindrive", "restart_braindrive"):
            self.session.set_service_status(ServiceStatus.RUNNING)
            self.session.mark_install_completed()
        elif operation == "stop_braindrive":
            self.session.set_service_status(ServiceStatus.STOPPED)
        elif operation == "get_braindrive_status":
            running = data.get("overall_running")
            self.session.set_service_status(
                ServiceStatus.RUNNING if running else ServiceStatus.STOPPED
            )

    def _after_failure(self, operation: str) -> None:
        if operation in INSTALL_STEPS:
            self.session.mark_install_failed()
        elif operation in ("start_braindrive", "restart_braindrive", "stop_braindrive"):
            self.session.set_service_status(ServiceStatus.UNKNOWN)
