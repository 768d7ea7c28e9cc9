"""
Protocol for a duplex message link.

The orchestrator only ever talks to its peers through this interface, so
FastAPI websockets in production and plain mocks in tests are
interchangeable.
"""

from typing import Any, Protocol


class LinkProtocol(Protocol):
    """One persistent duplex connection to a UI or an execution agent."""

    @property
    def is_open(self) -> bool:
        """Whether messages can still be sent."""
        ...

    async def send_json(self, message: dict[str, Any]) -> None:
        """
        Send one JSON message.

        Raises:
            ConnectionError: The link is closed
        """
        ...

    async def close(self) -> None:
        ...
