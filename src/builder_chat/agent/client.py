import json
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

from ..chat.messages import (
    message_text,
    reasoning_part,
    text_part,
    tool_call_part,
    tool_result_part,
)
from ..config import MAX_AGENT_TURNS

logger = logging.getLogger(__name__)


@dataclass
class ChatEvent:
    """An event yielded by a model stream."""

    type: str  # "token", "reasoning", "tool_call", "tool_result", "response"
    data: dict = field(default_factory=dict)


def build_prompt(messages: list[dict]) -> str:
    """Render the transcript, newest user message last, as a single prompt."""
    if len(messages) == 1:
        return message_text(messages[0])
    parts = []
    for msg in messages:
        text = message_text(msg)
        if text:
            parts.append(f"{msg['role'].capitalize()}: {text}")
    return "\n\n".join(parts)


def _tool_name(qualified: str) -> str:
    # "mcp__builder__agent_builder" -> "agent_builder"
    return qualified.rsplit("__", 1)[-1]


def _tool_result_value(content) -> object:
    if isinstance(content, list):
        content = "".join(
            block.get("text", "") for block in content if isinstance(block, dict)
        )
    if isinstance(content, str):
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            return content
    return content


class ClaudeAgentBackend:
    """Streams one model call through the Claude Agent SDK.

    Yields ``token``, ``reasoning``, ``tool_call`` and ``tool_result`` events
    as they arrive, then one final ``response`` event whose ``messages`` are
    the structured response entries (assistant steps and tool results).
    """

    async def stream(
        self, handle, prompt: str, system_prompt: str, tools
    ) -> AsyncIterator[ChatEvent]:
        options = ClaudeAgentOptions(
            system_prompt=system_prompt,
            model=handle.api_model,
            mcp_servers={tools.server_name: tools.server()} if tools else {},
            allowed_tools=tools.allowed_tools,
            max_turns=MAX_AGENT_TURNS,
            env=handle.env,
        )

        entries: list[dict] = []
        tool_names: dict[str, str] = {}

        async with ClaudeSDKClient(options=options) as client:
            await client.query(prompt)

            async for message in client.receive_response():
                if isinstance(message, AssistantMessage):
                    entry = {"id": str(uuid.uuid4()), "role": "assistant", "parts": []}
                    entries.append(entry)
                    for block in message.content:
                        if isinstance(block, TextBlock) and block.text:
                            entry["parts"].append(text_part(block.text))
                            yield ChatEvent(type="token", data={"text": block.text})
                        elif isinstance(block, ThinkingBlock):
                            entry["parts"].append(reasoning_part(block.thinking))
                            yield ChatEvent(type="reasoning", data={"text": block.thinking})
                        elif isinstance(block, ToolUseBlock):
                            name = _tool_name(block.name)
                            tool_names[block.id] = name
                            entry["parts"].append(tool_call_part(block.id, name, block.input))
                            yield ChatEvent(
                                type="tool_call",
                                data={"tool_call_id": block.id, "tool_name": name, "args": block.input},
                            )

                elif isinstance(message, UserMessage) and isinstance(message.content, list):
                    results = [b for b in message.content if isinstance(b, ToolResultBlock)]
                    if not results:
                        continue
                    entry = {"id": str(uuid.uuid4()), "role": "tool", "parts": []}
                    entries.append(entry)
                    for block in results:
                        name = tool_names.get(block.tool_use_id)
                        value = _tool_result_value(block.content)
                        entry["parts"].append(tool_result_part(block.tool_use_id, name, value))
                        yield ChatEvent(
                            type="tool_result",
                            data={
                                "tool_call_id": block.tool_use_id,
                                "tool_name": name,
                                "result": value,
                                "is_error": bool(block.is_error),
                            },
                        )

                elif isinstance(message, ResultMessage):
                    logger.info(
                        "Model call finished: %d turns, %d ms", message.num_turns, message.duration_ms
                    )
                    if message.is_error:
                        raise RuntimeError(message.result or "Model call failed")

        yield ChatEvent(type="response", data={"messages": entries})
