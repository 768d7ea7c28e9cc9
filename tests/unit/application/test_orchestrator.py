"""
Unit Tests for the Orchestrator

Uses a scripted decision-maker and a fake execution agent link that
answers operation requests through the correlator.
"""

import asyncio
import json
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from braindrive_installer.application import orchestrator as orchestrator_module
from braindrive_installer.application.correlator import RpcCorrelator
from braindrive_installer.application.hub import ConnectionHub
from braindrive_installer.application.orchestrator import Orchestrator, frame_reply
from braindrive_installer.core.catalog.operations import CATALOG
from braindrive_installer.core.domain.messages import BootstrapperConnect, BrowserConnect, OperationResult
from braindrive_installer.core.domain.session import InstallState, ServiceStatus
from braindrive_installer.core.interfaces.llm import TextDelta, ToolCallRequest


class ScriptedDecisionMaker:
    """Yields one scripted list of events per round, then a plain reply."""

    def __init__(self, rounds=None):
        self.rounds = list(rounds or [])
        self.histories = []

    async def stream_turn(self, system_prompt, messages, tools):
        self.histories.append(messages)
        events = self.rounds.pop(0) if self.rounds else [TextDelta("Done.")]
        for event in events:
            yield event


class FakeAgent:
    """Agent link answering requests via ``responder(request) -> result fields``."""

    def __init__(self, correlator, responder=None):
        self.correlator = correlator
        self.responder = responder or (lambda request: {"success": True, "data": {}})
        self.is_open = True
        self.requests = []
        self.close = AsyncMock()

    async def send_json(self, message):
        self.requests.append(message)
        fields = self.responder(message)
        if fields is not None:
            asyncio.get_running_loop().call_soon(
                self.correlator.settle, OperationResult(id=message["id"], **fields)
            )


def make_browser():
    link = MagicMock()
    link.is_open = True
    link.send_json = AsyncMock()
    return link


def browser_types(browser):
    return [call.args[0]["type"] for call in browser.send_json.call_args_list]


async def build(session, rounds=None, responder=None, connect_agent=True, **kwargs):
    correlator = RpcCorrelator()
    hub = ConnectionHub(session, correlator)
    browser = make_browser()
    agent = FakeAgent(correlator, responder)
    await hub.handle(BrowserConnect(), browser)
    if connect_agent:
        await hub.handle(BootstrapperConnect(), agent)
    browser.send_json.reset_mock()
    decision_maker = ScriptedDecisionMaker(rounds)
    orchestrator = Orchestrator(session, hub, decision_maker, system_prompt="sys", **kwargs)
    return orchestrator, decision_maker, browser, agent


def last_tool_message(session):
    message = [m for m in session.transcript if m["role"] == "tool"][-1]
    return json.loads(message["content"])


class TestFrameReply:
    """Tests for frame_reply."""

    @pytest.mark.asyncio
    async def test_frames_start_deltas_end(self):
        async def chunks():
            for text in ("Hello", "", " world"):
                yield text

        frames = [m.to_wire() async for m in frame_reply(chunks())]
        assert [f["type"] for f in frames] == [
            "ai_message_start",
            "ai_message_delta",
            "ai_message_delta",
            "ai_message_end",
        ]
        assert "".join(f.get("content", "") for f in frames) == "Hello world"

    @pytest.mark.asyncio
    async def test_empty_stream_yields_nothing(self):
        async def chunks():
            return
            yield

        assert [m async for m in frame_reply(chunks())] == []


class TestTurns:
    """Tests for process_turn."""

    @pytest.mark.asyncio
    async def test_plain_reply(self, session):
        orchestrator, _, browser, _ = await build(session, [[TextDelta("Hi "), TextDelta("there")]])

        await orchestrator.process_turn("hello")

        assert browser_types(browser) == [
            "ai_typing",
            "ai_message_start",
            "ai_message_delta",
            "ai_message_delta",
            "ai_message_end",
            "ai_typing",
        ]
        assert session.get_conversation_history() == [
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "Hi there"},
        ]

    @pytest.mark.asyncio
    async def test_tool_round_feeds_result_back(self, session):
        snapshot = {
            "os": "linux",
            "arch": "x86_64",
            "conda_installed": True,
            "braindrive_env_ready": True,
            "git_installed": True,
            "braindrive_exists": True,
        }
        orchestrator, decision_maker, browser, agent = await build(
            session,
            [[TextDelta("Checking."), ToolCallRequest("call_1", "detect_system")]],
            responder=lambda request: {"success": True, "data": snapshot},
        )

        await orchestrator.process_turn("is it installed?")

        assert [r["type"] for r in agent.requests] == ["detect_system"]
        assert "tool_executing" in browser_types(browser)
        assert session.install_state == InstallState.COMPLETED
        assert last_tool_message(session)["conda_installed"] is True
        # second round sees the assistant tool call and the tool result
        roles = [m["role"] for m in decision_maker.histories[1]]
        assert roles == ["user", "assistant", "tool"]

    @pytest.mark.asyncio
    async def test_decision_maker_error_reported(self, session):
        class Broken:
            async def stream_turn(self, system_prompt, messages, tools):
                raise RuntimeError("provider down")
                yield

        orchestrator, _, browser, _ = await build(session)
        orchestrator.decision_maker = Broken()

        await orchestrator.process_turn("hello")

        errors = [c.args[0] for c in browser.send_json.call_args_list if c.args[0]["type"] == "error"]
        assert errors[0]["message"] == "AI error: provider down"
        assert browser.send_json.call_args.args[0] == {"type": "ai_typing", "typing": False}

    @pytest.mark.asyncio
    async def test_step_limit(self, session):
        rounds = [[ToolCallRequest(f"call_{i}", "get_braindrive_status")] for i in range(3)]
        orchestrator, _, browser, agent = await build(session, rounds, max_steps=2)

        await orchestrator.process_turn("loop")

        assert len(agent.requests) == 2
        assert "error" in browser_types(browser)


class TestExecuteTool:
    """Tests for execute_tool."""

    @pytest.mark.asyncio
    async def test_invalid_input_never_reaches_agent(self, session):
        orchestrator, _, _, agent = await build(session)
        result = await orchestrator.execute_tool(
            ToolCallRequest("c1", "check_port", {"port": "eighty"})
        )
        assert result["success"] is False
        assert result["error_kind"] == "validation"
        assert agent.requests == []

    @pytest.mark.asyncio
    async def test_malformed_arguments(self, session):
        orchestrator, _, _, agent = await build(session)
        result = await orchestrator.execute_tool(ToolCallRequest("c1", "check_port", malformed=True))
        assert result["error_kind"] == "validation"
        assert agent.requests == []

    @pytest.mark.asyncio
    async def test_unknown_operation(self, session):
        orchestrator, _, _, agent = await build(session)
        result = await orchestrator.execute_tool(ToolCallRequest("c1", "format_disk"))
        assert result["error_kind"] == "validation"
        assert agent.requests == []

    @pytest.mark.asyncio
    async def test_unconfirmed_mutation_rejected_immediately(self, session):
        orchestrator, _, _, agent = await build(session)
        result = await orchestrator.execute_tool(ToolCallRequest("c1", "install_conda"))
        assert result["error_kind"] == "precondition_not_met"
        assert agent.requests == []

    @pytest.mark.asyncio
    async def test_link_down(self, session):
        orchestrator, _, _, agent = await build(session, connect_agent=False)
        result = await orchestrator.execute_tool(ToolCallRequest("c1", "detect_system"))
        assert result["error_kind"] == "link_down"

    @pytest.mark.asyncio
    async def test_check_connection_answered_locally(self, session):
        orchestrator, _, _, agent = await build(session)
        assert await orchestrator.execute_tool(ToolCallRequest("c1", "check_connection")) == {
            "connected": True
        }
        assert agent.requests == []

    @pytest.mark.asyncio
    async def test_confirmation_flag_not_forwarded(self, session):
        orchestrator, _, _, agent = await build(session)
        result = await orchestrator.execute_tool(
            ToolCallRequest("c1", "create_conda_env", {"user_confirmed": True})
        )
        assert result["success"] is True
        request = agent.requests[0]
        assert "user_confirmed" not in request
        assert request["env_name"] == "BrainDriveDev"
        assert session.install_state == InstallState.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_operation_failure_keeps_data(self, session):
        orchestrator, _, _, _ = await build(
            session,
            responder=lambda request: {
                "success": False,
                "error": "Backend failed",
                "data": {"backend": {"success": False}, "frontend": {"success": True}},
            },
        )
        result = await orchestrator.execute_tool(ToolCallRequest("c1", "install_all_deps"))
        assert result["success"] is False
        assert result["error_kind"] == "operation_failure"
        assert result["error"] == "Backend failed"
        assert result["frontend"] == {"success": True}
        assert session.install_state == InstallState.FAILED

    @pytest.mark.asyncio
    async def test_partial_dependency_failure_keeps_combined_result(self, session):
        data = {
            "backend": {"success": False, "error": "pip failed", "exit_code": 1},
            "frontend": {"success": True, "message": "Frontend dependencies installed"},
            "parallel": True,
            "message": "Frontend dependencies installed, but backend failed",
        }
        orchestrator, _, _, _ = await build(
            session,
            [[ToolCallRequest("c1", "install_all_deps")]],
            responder=lambda request: {"success": False, "error": data["message"], "data": data},
        )

        await orchestrator.process_turn("install dependencies")

        result = last_tool_message(session)
        assert result["success"] is False
        assert result["error_kind"] == "operation_failure"
        assert result["error"] == data["message"]
        assert result["message"] == data["message"]
        assert result["backend"]["exit_code"] == 1
        assert result["frontend"]["success"] is True
        assert [m["role"] for m in session.transcript] == ["user", "assistant", "tool", "assistant"]

    @pytest.mark.asyncio
    async def test_timeout_reported(self, session, monkeypatch):
        orchestrator, _, _, _ = await build(session, responder=lambda request: None)
        monkeypatch.setitem(
            CATALOG, "get_braindrive_status", replace(CATALOG["get_braindrive_status"], timeout=0.01)
        )
        result = await orchestrator.execute_tool(ToolCallRequest("c1", "get_braindrive_status"))
        assert result["error_kind"] == "timeout"
        assert session.service_status == ServiceStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_start_updates_service_status(self, session):
        orchestrator, _, _, _ = await build(
            session,
            responder=lambda request: {
                "success": True,
                "data": {"backend_port": 8006, "frontend_port": 5173},
            },
        )
        result = await orchestrator.execute_tool(
            ToolCallRequest("c1", "start_braindrive", {"user_confirmed": True})
        )
        assert result["backend_port"] == 8006
        assert session.service_status == ServiceStatus.RUNNING
        assert session.install_state == InstallState.COMPLETED

    @pytest.mark.asyncio
    async def test_parallel_tool_calls_share_one_round(self, session):
        orchestrator, _, _, agent = await build(
            session,
            [[ToolCallRequest("a", "check_port", {"port": 8005}), ToolCallRequest("b", "check_port", {"port": 5173})]],
            responder=lambda request: {"success": True, "data": {"port": request["port"], "available": True}},
        )
        await orchestrator.process_turn("check ports")
        tool_messages = [m for m in session.transcript if m["role"] == "tool"]
        assert [m["tool_call_id"] for m in tool_messages] == ["a", "b"]
        assert [json.loads(m["content"])["port"] for m in tool_messages] == [8005, 5173]

    @pytest.mark.asyncio
    async def test_crashing_tool_call_still_gets_result(self, session, monkeypatch):
        def broken_snapshot(data):
            raise ValueError("bad gpu entry")

        monkeypatch.setattr(orchestrator_module.SystemSnapshot, "from_dict", broken_snapshot)
        orchestrator, decision_maker, browser, _ = await build(
            session,
            [[ToolCallRequest("a", "detect_system"), ToolCallRequest("b", "check_port", {"port": 8005})]],
            responder=lambda request: {"success": True, "data": {"port": 8005, "available": True}},
        )

        await orchestrator.process_turn("check my machine")

        tool_messages = {m["tool_call_id"]: json.loads(m["content"]) for m in session.transcript if m["role"] == "tool"}
        assert tool_messages["a"] == {
            "success": False,
            "error": "ValueError: bad gpu entry",
            "error_kind": "error",
        }
        assert tool_messages["b"]["available"] is True
        assert "error" not in browser_types(browser)
        # the follow-up round still runs on a consistent history
        assert [m["role"] for m in decision_maker.histories[1]] == ["user", "assistant", "tool", "tool"]


class TestQueue:
    """Tests for turn serialization."""

    @pytest.mark.asyncio
    async def test_turns_processed_in_order(self, session):
        orchestrator, decision_maker, _, _ = await build(
            session, [[TextDelta("one")], [TextDelta("two")]]
        )
        orchestrator.start()
        try:
            assert await orchestrator.submit("first")
            assert await orchestrator.submit("second")
            await asyncio.wait_for(orchestrator.join(), timeout=1)
        finally:
            await orchestrator.stop()

        assert [m["content"] for m in session.transcript] == ["first", "one", "second", "two"]

    @pytest.mark.asyncio
    async def test_full_queue_refuses_turn(self, session):
        orchestrator, _, _, _ = await build(session, max_queued_turns=1)
        assert await orchestrator.submit("first")
        assert not await orchestrator.submit("second")
