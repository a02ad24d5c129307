import json

EVENT_TYPES = frozenset({"token", "tool_call", "tool_result", "reasoning", "error", "done"})


def format_sse_event(event_type: str, data: dict) -> dict:
    """Format an SSE event for sse-starlette's EventSourceResponse."""
    return {"event": event_type, "data": json.dumps(data, default=str)}


def sse_event(event_type: str, data: dict) -> dict:
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown stream event type: {event_type}")
    return format_sse_event(event_type, data)


def sse_error(message: str) -> dict:
    return format_sse_event("error", {"message": message})


def sse_done(data: dict) -> dict:
    return format_sse_event("done", data)


def sse_append_message(message: dict) -> dict:
    return format_sse_event("append_message", {"message": message})
