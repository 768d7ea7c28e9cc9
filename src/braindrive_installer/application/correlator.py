"""
RPC Correlator.

Matches asynchronous ``tool_result`` messages from the execution agent to
the requests that produced them. Each dispatched call gets a process-unique
correlation id, a future and a timeout handle; the pending entry is removed
exactly once, by a matching result, by its timeout, or by link loss.
"""

import asyncio
import itertools
import secrets
from collections import deque
from dataclasses import dataclass
from typing import Any

import structlog

from braindrive_installer.core.domain.errors import (
    LinkDownError,
    LinkLostError,
    OperationTimeoutError,
)
from braindrive_installer.core.domain.messages import OperationResult, operation_request
from braindrive_installer.core.interfaces.transport import LinkProtocol

logger = structlog.get_logger()


@dataclass
class PendingCall:
    """One in-flight operation request."""

    id: str
    operation: str
    future: asyncio.Future
    timeout_handle: asyncio.TimerHandle | None = None


class RpcCorrelator:
    """
    Correlates requests sent to the execution agent with their results.

    Ids have the form ``op-<nonce>-<counter>-<suffix>``: the nonce is drawn
    once per process, the counter never repeats within a process and the
    suffix adds randomness, so a late result can never be matched to a
    newer call.
    """

    def __init__(self, expired_history: int = 256):
        self._pending: dict[str, PendingCall] = {}
        self._link: LinkProtocol | None = None
        self._nonce = secrets.token_hex(4)
        self._counter = itertools.count(1)
        self._expired: deque[str] = deque(maxlen=expired_history)
        self.logger = logger.bind(component="correlator")

    @property
    def is_connected(self) -> bool:
        return self._link is not None and self._link.is_open

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, call_id: str) -> bool:
        return call_id in self._pending

    def attach(self, link: LinkProtocol) -> None:
        """Route future requests to ``link``; a previous link is failed first."""
        if self._link is not None and self._link is not link:
            self.fail_all("Execution agent was replaced by a new connection")
        self._link = link

    def detach(self, link: LinkProtocol | None = None, reason: str = "Execution agent disconnected") -> int:
        """
        Drop the current link and reject every pending call.

        Args:
            link: Only detach if this is the current link (None = always)
            reason: Error message for the rejected calls

        Returns:
            Number of calls rejected
        """
        if link is not None and link is not self._link:
            return 0
        self._link = None
        return self.fail_all(reason)

    def next_id(self) -> str:
        return f"op-{self._nonce}-{next(self._counter)}-{secrets.token_hex(3)}"

    async def dispatch(
        self, operation: str, payload: dict[str, Any], timeout: float
    ) -> OperationResult:
        """
        Send an operation request and await its terminal result.

        Args:
            operation: Catalog operation name
            payload: Validated operation fields
            timeout: Budget in seconds

        Returns:
            The agent's OperationResult

        Raises:
            LinkDownError: No agent attached
            OperationTimeoutError: No result within ``timeout``
            LinkLostError: The link dropped while waiting
        """
        link = self._link
        if link is None or not link.is_open:
            raise LinkDownError(
                "Execution agent is not connected", operation=operation
            )

        loop = asyncio.get_running_loop()
        call = PendingCall(id=self.next_id(), operation=operation, future=loop.create_future())
        self._pending[call.id] = call
        call.timeout_handle = loop.call_later(timeout, self._expire, call.id, timeout)

        self.logger.debug("correlator.dispatch", call_id=call.id, operation=operation, timeout=timeout)
        try:
            await link.send_json(operation_request(operation, call.id, payload))
        except Exception as e:
            if self._remove(call.id) is not None:
                call.future.cancel()
            raise LinkLostError(
                f"Failed to send {operation} to the execution agent: {e}",
                operation=operation,
            ) from e

        return await call.future

    def settle(self, result: OperationResult) -> bool:
        """
        Resolve the pending call matching ``result.id``.

        Returns:
            True if a pending call was settled, False if the result was discarded
        """
        call = self._remove(result.id)
        if call is None:
            self.logger.warning(
                "correlator.late_result_discarded",
                call_id=result.id,
                expired=result.id in self._expired,
            )
            return False
        if not call.future.done():
            call.future.set_result(result)
        self.logger.debug("correlator.settled", call_id=call.id, success=result.success)
        return True

    def fail_all(self, reason: str) -> int:
        """Reject every pending call with a link-lost error, synchronously."""
        calls = list(self._pending.values())
        self._pending.clear()
        for call in calls:
            if call.timeout_handle is not None:
                call.timeout_handle.cancel()
            if not call.future.done():
                call.future.set_exception(LinkLostError(reason, operation=call.operation))
        if calls:
            self.logger.warning("correlator.pending_failed", count=len(calls), reason=reason)
        return len(calls)

    def _expire(self, call_id: str, timeout: float) -> None:
        call = self._remove(call_id)
        if call is None:
            return
        self._expired.append(call_id)
        if not call.future.done():
            call.future.set_exception(
                OperationTimeoutError(
                    f"{call.operation} timed out after {timeout:g}s. The step "
                    "may still be finishing on the user's machine.",
                    operation=call.operation,
                )
            )
        self.logger.warning("correlator.timeout", call_id=call_id, operation=call.operation)

    def _remove(self, call_id: str) -> PendingCall | None:
        call = self._pending.pop(call_id, None)
        if call is not None and call.timeout_handle is not None:
            call.timeout_handle.cancel()
        return call
