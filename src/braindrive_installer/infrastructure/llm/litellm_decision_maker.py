"""
LiteLLM decision-maker.

Streams one reasoning round through ``litellm.acompletion`` and turns the
provider chunks into ``TextDelta`` events as they arrive, followed by the
assembled ``ToolCallRequest`` events once the stream ends. Tool-call
arguments arrive as JSON fragments spread over many chunks and are
accumulated per call index.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import litellm
import structlog

from braindrive_installer.core.interfaces.llm import (
    DecisionEvent,
    TextDelta,
    ToolCallRequest,
)

logger = structlog.get_logger()


@dataclass
class RetryPolicy:
    """Retry settings for opening the completion stream."""

    max_attempts: int = 3
    backoff_multiplier: float = 2.0
    retry_on_errors: list[str] = field(
        default_factory=lambda: [
            "RateLimitError",
            "APIConnectionError",
            "ServiceUnavailableError",
            "InternalServerError",
            "Timeout",
        ]
    )


class LiteLLMDecisionMaker:
    """
    Decision-maker backed by any litellm-supported model.

    Args:
        model: litellm model id
        api_key: Provider credential (None = provider's env variable)
        max_tokens: Completion budget per round
        temperature: Sampling temperature
        retry_policy: Retries applied before the first chunk arrives
    """

    def __init__(
        self,
        model: str = "anthropic/claude-sonnet-4-20250514",
        api_key: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.2,
        retry_policy: RetryPolicy | None = None,
    ):
        self.model = model
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.retry_policy = retry_policy or RetryPolicy()
        self.logger = logger.bind(component="decision_maker", model=model)

    async def stream_turn(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[DecisionEvent]:
        response = await self._open_stream(
            [{"role": "system", "content": system_prompt}, *messages], tools
        )

        calls: dict[int, dict[str, str]] = {}
        async for chunk in response:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if getattr(delta, "content", None):
                yield TextDelta(delta.content)
            for tool_call in getattr(delta, "tool_calls", None) or []:
                slot = calls.setdefault(
                    tool_call.index or 0, {"id": "", "name": "", "arguments": ""}
                )
                if tool_call.id:
                    slot["id"] = tool_call.id
                function = tool_call.function
                if function is not None and function.name:
                    slot["name"] = function.name
                if function is not None and function.arguments:
                    slot["arguments"] += function.arguments

        for index in sorted(calls):
            yield self._assemble(index, calls[index])

    async def _open_stream(self, messages: list[dict[str, Any]], tools: list[dict[str, Any]]):
        policy = self.retry_policy
        for attempt in range(1, policy.max_attempts + 1):
            try:
                return await litellm.acompletion(
                    model=self.model,
                    messages=messages,
                    tools=tools,
                    stream=True,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    api_key=self.api_key,
                )
            except Exception as e:
                if (
                    type(e).__name__ not in policy.retry_on_errors
                    or attempt == policy.max_attempts
                ):
                    raise
                delay = policy.backoff_multiplier ** attempt
                self.logger.warning(
                    "decision_maker.retry", attempt=attempt, delay=delay, error=str(e)
                )
                await asyncio.sleep(delay)

    def _assemble(self, index: int, slot: dict[str, str]) -> ToolCallRequest:
        call_id = slot["id"] or f"call_{index}"
        raw = slot["arguments"].strip()
        if not raw:
            return ToolCallRequest(id=call_id, name=slot["name"])
        try:
            arguments = json.loads(raw)
        except json.JSONDecodeError:
            self.logger.warning("decision_maker.malformed_arguments", tool=slot["name"])
            return ToolCallRequest(id=call_id, name=slot["name"], malformed=True)
        if not isinstance(arguments, dict):
            return ToolCallRequest(id=call_id, name=slot["name"], malformed=True)
        return ToolCallRequest(id=call_id, name=slot["name"], arguments=arguments)
