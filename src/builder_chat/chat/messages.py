"""Message part shapes and response-entry merging.

A model response arrives as a list of entries (``{"id", "role", "parts"}``),
one per assistant step plus ``tool`` entries carrying tool results. The
transcript stores them as a single assistant message: the parts of every
assistant entry, in order, with each tool result folded into the invocation
part it answers.
"""

import json


def text_part(text: str) -> dict:
    return {"type": "text", "text": text}


def reasoning_part(reasoning: str) -> dict:
    return {"type": "reasoning", "reasoning": reasoning}


def tool_call_part(tool_call_id: str, tool_name: str, args: dict) -> dict:
    return {
        "type": "tool_invocation",
        "tool_call_id": tool_call_id,
        "tool_name": tool_name,
        "state": "call",
        "args": args,
    }


def tool_result_part(tool_call_id: str, tool_name: str | None, result) -> dict:
    return {
        "type": "tool_result",
        "tool_call_id": tool_call_id,
        "tool_name": tool_name,
        "result": result,
    }


def get_trailing_message_id(entries: list[dict]) -> str | None:
    assistant = [e for e in entries if e.get("role") == "assistant"]
    if not assistant:
        return None
    return assistant[-1].get("id")


def merge_response_parts(entries: list[dict]) -> list[dict]:
    parts: list[dict] = []
    invocations: dict[str, dict] = {}
    for entry in entries:
        if entry.get("role") == "assistant":
            for part in entry.get("parts", []):
                part = dict(part)
                parts.append(part)
                if part.get("type") == "tool_invocation":
                    invocations[part["tool_call_id"]] = part
        elif entry.get("role") == "tool":
            for part in entry.get("parts", []):
                invocation = invocations.get(part.get("tool_call_id"))
                if invocation is not None:
                    invocation["state"] = "result"
                    invocation["result"] = part.get("result")
    return parts


def message_text(message: dict) -> str:
    """Flatten a stored message into plain text for prompting."""
    chunks = []
    for part in message.get("parts", []):
        if part.get("type") == "text" and part.get("text"):
            chunks.append(part["text"])
        elif part.get("type") == "tool_invocation" and part.get("state") == "result":
            chunks.append(f"[{part.get('tool_name')} result: {json.dumps(part.get('result'))}]")
    return "\n".join(chunks)
