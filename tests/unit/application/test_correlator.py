"""
Unit Tests for RpcCorrelator

Covers id generation, settlement, timeouts, late results and link loss.
"""

import asyncio

import pytest

from braindrive_installer.application.correlator import RpcCorrelator
from braindrive_installer.core.domain.errors import (
    LinkDownError,
    LinkLostError,
    OperationTimeoutError,
)
from braindrive_installer.core.domain.messages import OperationResult


@pytest.fixture
def correlator(mock_link):
    correlator = RpcCorrelator()
    correlator.attach(mock_link)
    return correlator


def sent_ids(mock_link):
    return [call.args[0]["id"] for call in mock_link.send_json.call_args_list]


class TestDispatch:
    """Tests for dispatch() and settle()."""

    @pytest.mark.asyncio
    async def test_result_settles_matching_call(self, correlator, mock_link):
        """A result with the request id resolves the dispatch."""
        task = asyncio.create_task(correlator.dispatch("detect_system", {}, timeout=5))
        await asyncio.sleep(0)

        envelope = mock_link.send_json.call_args.args[0]
        assert envelope["type"] == "detect_system"
        assert correlator.is_pending(envelope["id"])

        assert correlator.settle(OperationResult(id=envelope["id"], success=True, data={"os": "linux"}))
        result = await task
        assert result.data == {"os": "linux"}
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_payload_fields_are_in_envelope(self, correlator, mock_link):
        task = asyncio.create_task(correlator.dispatch("check_port", {"port": 8005}, timeout=5))
        await asyncio.sleep(0)
        envelope = mock_link.send_json.call_args.args[0]
        assert envelope["port"] == 8005
        correlator.settle(OperationResult(id=envelope["id"], success=True))
        await task

    @pytest.mark.asyncio
    async def test_link_down_fails_fast(self):
        """Without a link nothing is queued."""
        correlator = RpcCorrelator()
        with pytest.raises(LinkDownError):
            await correlator.dispatch("detect_system", {}, timeout=5)
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_send_failure_raises_link_lost_and_clears(self, correlator, mock_link):
        mock_link.send_json.side_effect = ConnectionError("closed")
        with pytest.raises(LinkLostError):
            await correlator.dispatch("detect_system", {}, timeout=5)
        assert correlator.pending_count == 0

    def test_ids_are_unique_and_share_process_nonce(self):
        correlator = RpcCorrelator()
        ids = [correlator.next_id() for _ in range(1000)]
        assert len(set(ids)) == 1000
        assert len({call_id.split("-")[1] for call_id in ids}) == 1
        counters = [int(call_id.split("-")[2]) for call_id in ids]
        assert counters == sorted(counters)

    def test_separate_correlators_use_different_nonces(self):
        first, second = RpcCorrelator(), RpcCorrelator()
        assert first.next_id().split("-")[1] != second.next_id().split("-")[1]


class TestTimeouts:
    """Tests for timeout expiry and late results."""

    @pytest.mark.asyncio
    async def test_timeout_rejects_and_removes_call(self, correlator):
        with pytest.raises(OperationTimeoutError) as exc_info:
            await correlator.dispatch("clone_repo", {}, timeout=0.01)
        assert exc_info.value.kind == "timeout"
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_late_result_is_discarded(self, correlator, mock_link):
        """A result arriving after the timeout is ignored, never misrouted."""
        with pytest.raises(OperationTimeoutError):
            await correlator.dispatch("clone_repo", {}, timeout=0.01)
        late_id = sent_ids(mock_link)[0]

        task = asyncio.create_task(correlator.dispatch("detect_system", {}, timeout=5))
        await asyncio.sleep(0)
        assert correlator.settle(OperationResult(id=late_id, success=True)) is False
        assert not task.done()

        correlator.settle(OperationResult(id=sent_ids(mock_link)[1], success=True))
        assert (await task).success

    @pytest.mark.asyncio
    async def test_every_call_settles_exactly_once(self, correlator, mock_link):
        """Mixed results and timeouts: no double settlement, no leaks."""
        fast = [asyncio.create_task(correlator.dispatch("detect_system", {}, timeout=5)) for _ in range(5)]
        slow = [asyncio.create_task(correlator.dispatch("check_port", {"port": 1}, timeout=0.01)) for _ in range(5)]
        await asyncio.sleep(0)

        fast_ids = sent_ids(mock_link)[:5]
        for call_id in fast_ids:
            assert correlator.settle(OperationResult(id=call_id, success=True))
            assert not correlator.settle(OperationResult(id=call_id, success=True))

        results = await asyncio.gather(*fast, *slow, return_exceptions=True)
        assert all(isinstance(result, OperationResult) for result in results[:5])
        assert all(isinstance(result, OperationTimeoutError) for result in results[5:])
        assert correlator.pending_count == 0


class TestLinkLoss:
    """Tests for fail_all() on link drop."""

    @pytest.mark.asyncio
    async def test_detach_rejects_all_pending_in_one_tick(self, correlator):
        tasks = [
            asyncio.create_task(correlator.dispatch(name, {}, timeout=30))
            for name in ("install_conda", "install_all_deps", "pull_ollama_model")
        ]
        await asyncio.sleep(0)
        assert correlator.pending_count == 3

        assert correlator.detach() == 3
        # futures already carry their exception; one tick lets the tasks finish
        await asyncio.sleep(0)
        assert all(task.done() for task in tasks)
        for task in tasks:
            assert isinstance(task.exception(), LinkLostError)
        assert correlator.pending_count == 0
        assert not correlator.is_connected

    @pytest.mark.asyncio
    async def test_detach_ignores_stale_link(self, correlator, mock_link):
        other = object()
        assert correlator.detach(other) == 0
        assert correlator.is_connected
