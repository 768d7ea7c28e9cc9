"""
Protocol for the decision-maker.

The conversational model is an external collaborator. Per round it
receives the system prompt, the transcript and the tool definitions, and
produces a lazy stream of events: text fragments first, then the
tool-call requests of that round.
"""

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol


@dataclass(frozen=True)
class TextDelta:
    """A fragment of reply text."""

    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    """
    A structured request to run one catalog operation.

    Attributes:
        id: Provider-assigned tool call id
        name: Operation name
        arguments: Decoded arguments
        malformed: True when the provider sent arguments that were not valid JSON
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    malformed: bool = False


DecisionEvent = TextDelta | ToolCallRequest


class DecisionMakerProtocol(Protocol):
    """Streams one reasoning round of the decision-maker."""

    def stream_turn(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[DecisionEvent]:
        ...
