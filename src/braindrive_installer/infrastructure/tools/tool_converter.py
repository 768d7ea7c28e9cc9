"""
Tool Converter - OpenAI function calling format conversion.

Turns audited catalog operations into the function-calling format that
litellm forwards to the provider, and turns tool calls and their results
into transcript messages.
"""

import json
from typing import Any, Iterable

from braindrive_installer.core.catalog.operations import OperationSpec
from braindrive_installer.core.interfaces.llm import ToolCallRequest

CHECK_CONNECTION_TOOL = {
    "type": "function",
    "function": {
        "name": "check_connection",
        "description": "Check whether the BrainDrive Installer app is connected.",
        "parameters": {"type": "object", "properties": {}},
    },
}


def tools_to_openai_format(specs: Iterable[OperationSpec]) -> list[dict[str, Any]]:
    """
    Convert catalog operations to OpenAI function calling format.

    Args:
        specs: Operations to expose

    Returns:
        Tool definitions, ``check_connection`` first:
        [{"type": "function", "function": {"name", "description", "parameters"}}]
    """
    tools = [CHECK_CONNECTION_TOOL]
    for spec in specs:
        tools.append(
            {
                "type": "function",
                "function": {
                    "name": spec.name,
                    "description": spec.purpose,
                    "parameters": spec.parameters_schema,
                },
            }
        )
    return tools


def tool_result_to_message(
    tool_call_id: str,
    tool_name: str,
    result: dict[str, Any],
    max_output_chars: int = 20000,
) -> dict[str, Any]:
    """
    Convert a tool result to an OpenAI tool message.

    Large output fields are truncated to keep the transcript within the
    model's context.

    Args:
        tool_call_id: Id of the originating tool call
        tool_name: Operation name
        result: Structured tool result
        max_output_chars: Max characters per large field

    Returns:
        {"role": "tool", "tool_call_id", "name", "content": JSON string}
    """
    truncated_result = _truncate_tool_result(result, max_output_chars)
    content = json.dumps(truncated_result, ensure_ascii=False, default=str)

    return {
        "role": "tool",
        "tool_call_id": tool_call_id,
        "name": tool_name,
        "content": content,
    }


def _truncate_tool_result(result: dict[str, Any], max_chars: int) -> dict[str, Any]:
    truncated = result.copy()

    # command output tails can be long
    for field in ("stdout", "stderr", "output", "data"):
        if field not in truncated:
            continue
        value = truncated[field]
        if not isinstance(value, str):
            if not isinstance(value, (list, dict)):
                continue
            value_str = json.dumps(value, ensure_ascii=False, default=str)
            if len(value_str) <= max_chars:
                continue
            value = value_str
        if len(value) > max_chars:
            overflow = len(value) - max_chars
            truncated[field] = (
                value[:max_chars] + f"\n\n[... TRUNCATED - {overflow} more chars ...]"
            )

    return truncated


def assistant_tool_calls_to_message(
    content: str | None,
    tool_calls: list[ToolCallRequest],
) -> dict[str, Any]:
    """
    Create the assistant message that precedes tool results in the transcript.

    Args:
        content: Reply text streamed in the same round, if any
        tool_calls: Tool calls requested in that round

    Returns:
        {"role": "assistant", "content": ..., "tool_calls": [...]}
    """
    return {
        "role": "assistant",
        "content": content or None,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {
                    "name": call.name,
                    "arguments": json.dumps(call.arguments),
                },
            }
            for call in tool_calls
        ],
    }
