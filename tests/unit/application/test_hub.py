"""
Unit Tests for ConnectionHub

Verifies routing by message type and the handling of link changes.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from braindrive_installer.application.correlator import RpcCorrelator
from braindrive_installer.application.hub import ConnectionHub
from braindrive_installer.core.domain.errors import LinkLostError
from braindrive_installer.core.domain.messages import (
    BootstrapperConnect,
    BrowserConnect,
    OperationResult,
    ProgressEvent,
    UserMessage,
)


def make_link():
    link = MagicMock()
    link.is_open = True
    link.send_json = AsyncMock()
    return link


@pytest.fixture
def hub(session):
    return ConnectionHub(session, RpcCorrelator())


@pytest.fixture
def browser():
    return make_link()


@pytest.fixture
def agent():
    return make_link()


def sent_types(link):
    return [call.args[0]["type"] for call in link.send_json.call_args_list]


class TestConnections:
    """Tests for connect/disconnect handling."""

    @pytest.mark.asyncio
    async def test_browser_connect_replies_with_status(self, hub, browser, session):
        await hub.handle(BrowserConnect(), browser)
        assert session.browser_connected
        status = browser.send_json.call_args.args[0]
        assert status["type"] == "status_update"
        assert status["bootstrapper_connected"] is False

    @pytest.mark.asyncio
    async def test_agent_connect_notifies_browser(self, hub, browser, agent, session):
        await hub.handle(BrowserConnect(), browser)
        await hub.handle(BootstrapperConnect(), agent)
        assert session.bootstrapper_connected
        assert hub.agent_connected
        assert browser.send_json.call_args.args[0]["bootstrapper_connected"] is True

    @pytest.mark.asyncio
    async def test_agent_disconnect_fails_pending_and_notifies(self, hub, browser, agent, session):
        await hub.handle(BrowserConnect(), browser)
        await hub.handle(BootstrapperConnect(), agent)
        task = asyncio.create_task(hub.correlator.dispatch("detect_system", {}, timeout=30))
        await asyncio.sleep(0)

        await hub.handle_disconnect(agent)

        with pytest.raises(LinkLostError):
            await task
        assert not session.bootstrapper_connected
        assert browser.send_json.call_args.args[0] == {
            "type": "status_update",
            "bootstrapper_connected": False,
        }


class TestRouting:
    """Tests for result and progress routing."""

    @pytest.mark.asyncio
    async def test_progress_forwarded_only_while_pending(self, hub, browser, agent):
        await hub.handle(BrowserConnect(), browser)
        await hub.handle(BootstrapperConnect(), agent)
        task = asyncio.create_task(hub.correlator.dispatch("install_conda", {}, timeout=30))
        await asyncio.sleep(0)
        call_id = agent.send_json.call_args.args[0]["id"]

        await hub.handle(ProgressEvent(id=call_id, operation="install_conda", percent=10), browser)
        assert sent_types(browser)[-1] == "progress"

        await hub.handle(OperationResult(id=call_id, success=True), agent)
        await task
        browser.send_json.reset_mock()

        await hub.handle(ProgressEvent(id=call_id, operation="install_conda", percent=20), agent)
        browser.send_json.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_progress_after_link_drop(self, hub, browser, agent):
        """Progress for calls rejected by a link drop is not delivered."""
        await hub.handle(BrowserConnect(), browser)
        await hub.handle(BootstrapperConnect(), agent)
        tasks = [
            asyncio.create_task(hub.correlator.dispatch(name, {}, timeout=30))
            for name in ("install_conda", "install_all_deps", "pull_ollama_model")
        ]
        await asyncio.sleep(0)
        ids = [call.args[0]["id"] for call in agent.send_json.call_args_list]

        await hub.handle_disconnect(agent)
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(result, LinkLostError) for result in results)

        browser.send_json.reset_mock()
        for call_id in ids:
            await hub.handle(ProgressEvent(id=call_id, operation="x", percent=50), agent)
        browser.send_json.assert_not_called()

    @pytest.mark.asyncio
    async def test_user_message_goes_to_turn_handler(self, hub, browser):
        handler = AsyncMock(return_value=True)
        hub.set_turn_handler(handler)
        await hub.handle(BrowserConnect(), browser)
        await hub.handle(UserMessage(content="Install BrainDrive"), browser)
        handler.assert_awaited_once_with("Install BrainDrive")

    @pytest.mark.asyncio
    async def test_refused_turn_reports_busy(self, hub, browser):
        hub.set_turn_handler(AsyncMock(return_value=False))
        await hub.handle(BrowserConnect(), browser)
        await hub.handle(UserMessage(content="hello"), browser)
        assert sent_types(browser)[-1] == "error"

    @pytest.mark.asyncio
    async def test_send_to_browser_without_browser_is_noop(self, hub):
        assert await hub.send_to_browser({"type": "ai_typing", "typing": True}) is False
