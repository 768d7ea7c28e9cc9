"""Progress reporting for long-running agent operations."""

from typing import Any, Awaitable, Callable

import structlog

from braindrive_installer.core.domain.messages import ProgressEvent

logger = structlog.get_logger()

Sender = Callable[[dict[str, Any]], Awaitable[None]]


class ProgressReporter:
    """
    Emits ProgressEvents for one operation call.

    Delivery is best-effort: a failed send is logged and never fails the
    operation. Consecutive identical events are sent once.

    Args:
        call_id: Correlation id of the request
        operation: Operation name
        send: Coroutine delivering one message (None = record only)
    """

    def __init__(self, call_id: str, operation: str, send: Sender | None = None):
        self.call_id = call_id
        self.operation = operation
        self._send = send
        self._last: tuple | None = None
        self.events: list[ProgressEvent] = []

    async def report(
        self,
        percent: int | None = None,
        message: str = "",
        bytes_downloaded: int | None = None,
        bytes_total: int | None = None,
    ) -> None:
        if percent is not None:
            percent = max(0, min(100, int(percent)))
        key = (percent, message, bytes_downloaded, bytes_total)
        if key == self._last:
            return
        self._last = key

        event = ProgressEvent(
            id=self.call_id,
            operation=self.operation,
            percent=percent,
            message=message,
            bytes_downloaded=bytes_downloaded,
            bytes_total=bytes_total,
        )
        self.events.append(event)
        if self._send is None:
            return
        try:
            await self._send(event.to_wire())
        except Exception as e:
            logger.debug("agent.progress.send_failed", call_id=self.call_id, error=str(e))
