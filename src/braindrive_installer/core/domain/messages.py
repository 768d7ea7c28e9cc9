"""
Wire message envelope.

All messages are JSON objects with a mandatory ``type`` discriminator.
Messages the orchestrator receives form a closed tagged union that is
parsed in one step and matched exhaustively by the connection hub.
Operation requests are the exception: their ``type`` is the operation
name, so they are built from the catalog rather than declared here.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from braindrive_installer.core.domain.errors import InputValidationError


class WireMessage(BaseModel):
    """Base for every wire message."""

    model_config = ConfigDict(extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


# --- UI -> Orchestrator ---------------------------------------------------


class BrowserConnect(WireMessage):
    type: Literal["browser_connect"] = "browser_connect"


class UserMessage(WireMessage):
    type: Literal["user_message"] = "user_message"
    content: str = Field(..., min_length=1)


# --- Agent -> Orchestrator ------------------------------------------------


class BootstrapperConnect(WireMessage):
    type: Literal["bootstrapper_connect"] = "bootstrapper_connect"
    version: str | None = None


class OperationResult(WireMessage):
    """Terminal result of an operation, echoing the request id."""

    type: Literal["tool_result"] = "tool_result"
    id: str
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None


class ProgressEvent(WireMessage):
    """Streaming progress for a long-running operation."""

    type: Literal["progress"] = "progress"
    id: str
    operation: str
    percent: int | None = Field(default=None, ge=0, le=100)
    message: str = ""
    bytes_downloaded: int | None = None
    bytes_total: int | None = None


# --- Orchestrator -> UI / Agent --------------------------------------------


class AiMessageStart(WireMessage):
    type: Literal["ai_message_start"] = "ai_message_start"


class AiMessageDelta(WireMessage):
    type: Literal["ai_message_delta"] = "ai_message_delta"
    content: str


class AiMessageEnd(WireMessage):
    type: Literal["ai_message_end"] = "ai_message_end"


class AiTyping(WireMessage):
    type: Literal["ai_typing"] = "ai_typing"
    typing: bool


class ToolExecuting(WireMessage):
    type: Literal["tool_executing"] = "tool_executing"
    tool: str
    input: dict[str, Any] = Field(default_factory=dict)


class StatusUpdate(WireMessage):
    type: Literal["status_update"] = "status_update"
    bootstrapper_connected: bool
    session: dict[str, Any] | None = None


class ErrorMessage(WireMessage):
    type: Literal["error"] = "error"
    message: str


InboundMessage = Annotated[
    Union[
        BrowserConnect,
        BootstrapperConnect,
        UserMessage,
        OperationResult,
        ProgressEvent,
    ],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter[InboundMessage] = TypeAdapter(InboundMessage)


def parse_inbound(raw: str | bytes) -> InboundMessage:
    """
    Parse a raw frame received by the orchestrator.

    Args:
        raw: JSON text of one frame

    Returns:
        The matching message model

    Raises:
        InputValidationError: Frame is not JSON, has an unknown ``type``
            or misses required fields
    """
    try:
        return _inbound_adapter.validate_json(raw)
    except ValidationError as e:
        raise InputValidationError(
            f"Invalid message: {e.errors(include_url=False)[0]['msg']}"
        ) from e


def operation_request(operation: str, request_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Build the envelope for an operation request."""
    envelope = dict(payload)
    envelope["type"] = operation
    envelope["id"] = request_id
    return envelope
