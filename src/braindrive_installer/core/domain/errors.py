"""
Error taxonomy for the installer.

Every failure that can reach the decision-maker is an ``InstallerError``
subclass carrying a stable ``kind``. At the tool boundary the orchestrator
converts them into structured payloads with ``to_payload()`` so that no
exception ever crosses the agent link.
"""

from typing import Any


class InstallerError(Exception):
    """Base class for all installer errors.

    Attributes:
        kind: Stable machine-readable error category
        message: Human-readable cause
        details: Extra structured context surfaced with the payload
    """

    kind = "error"

    def __init__(self, message: str, data: dict[str, Any] | None = None, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = {**(data or {}), **details}

    def to_payload(self) -> dict[str, Any]:
        """Render the error as a tool-result payload."""
        payload = dict(self.details)
        payload.update(success=False, error=self.message, error_kind=self.kind)
        return payload


class LinkDownError(InstallerError):
    """No execution agent is attached; requests fail fast instead of queuing."""

    kind = "link_down"


class InputValidationError(InstallerError):
    """Malformed or disallowed input, rejected before dispatch."""

    kind = "validation"


class PreconditionError(InstallerError):
    """A confirmation or install-state gate is not satisfied."""

    kind = "precondition_not_met"


class OperationTimeoutError(InstallerError):
    """No terminal result arrived within the call's budget."""

    kind = "timeout"


class OperationFailedError(InstallerError):
    """The audited operation ran and reported failure."""

    kind = "operation_failure"


class LinkLostError(InstallerError):
    """The agent link dropped while the call was awaiting its result."""

    kind = "link_lost"


class OperationError(Exception):
    """Raised by execution-agent handlers when an operation fails.

    The agent dispatcher turns it into a ``tool_result`` with
    ``success: false``; ``data`` travels alongside the error so that partial
    outcomes stay inspectable.
    """

    def __init__(self, message: str, data: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.data = data or {}
