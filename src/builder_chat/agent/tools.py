import json
import logging
import uuid
from dataclasses import dataclass, field

from claude_agent_sdk import create_sdk_mcp_server, tool

logger = logging.getLogger(__name__)

SERVER_NAME = "builder"
AGENT_BUILDER_TOOL = "agent_builder"

AGENT_BUILDER_SCHEMA = {
    "type": "object",
    "properties": {
        "title": {"type": "string", "description": "Short name of the agent"},
        "content": {
            "type": "string",
            "description": "The full agent document as a JSON object with name, models, actions, schedules",
        },
        "existing_document_id": {
            "type": "string",
            "description": "Id of the agent document being updated, if any",
        },
    },
    "required": ["title", "content"],
}


@dataclass
class ToolContext:
    """Per-turn state the tools are bound to."""

    chat_id: str
    user_id: str
    sqlite_store: object
    document_id: str | None = None
    document_content: str | None = None


@dataclass
class ToolTable:
    tools: list = field(default_factory=list)
    server_name: str = SERVER_NAME

    def __bool__(self) -> bool:
        return bool(self.tools)

    @property
    def names(self) -> list[str]:
        return [t.name for t in self.tools]

    @property
    def allowed_tools(self) -> list[str]:
        return [f"mcp__{self.server_name}__{name}" for name in self.names]

    def server(self):
        return create_sdk_mcp_server(name=self.server_name, version="1.0.0", tools=self.tools)


def _text_result(text: str, is_error: bool = False) -> dict:
    result = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["is_error"] = True
    return result


def _make_agent_builder(ctx: ToolContext):
    sqlite = ctx.sqlite_store

    @tool(
        AGENT_BUILDER_TOOL,
        "Create or update the agent document for this conversation. Pass the complete document as JSON. Returns the document id.",
        AGENT_BUILDER_SCHEMA,
    )
    async def agent_builder_tool(args: dict) -> dict:
        try:
            parsed = json.loads(args["content"])
        except (KeyError, TypeError, json.JSONDecodeError):
            return _text_result("Error: content must be a JSON object", is_error=True)
        if not isinstance(parsed, dict):
            return _text_result("Error: content must be a JSON object", is_error=True)

        document_id = ctx.document_id
        requested = args.get("existing_document_id")
        if document_id is None and requested:
            existing = await sqlite.get_document(requested)
            if existing and existing["user_id"] != ctx.user_id:
                return _text_result(f"Error: document {requested} is not accessible", is_error=True)
            document_id = requested
        document_id = document_id or str(uuid.uuid4())

        title = args.get("title") or parsed.get("name") or "Untitled agent"
        content = json.dumps(parsed, indent=2)
        await sqlite.save_document(document_id, ctx.user_id, title, content)
        ctx.document_id = document_id
        ctx.document_content = content
        logger.info("Saved agent document %s for chat %s", document_id, ctx.chat_id)

        return _text_result(json.dumps({"id": document_id, "kind": "agent", "title": title}))

    return agent_builder_tool


def build_tool_table(handle, ctx: ToolContext) -> ToolTable:
    """Bind the available tools to this turn; models without tool calling get none."""
    if not handle.tool_calling:
        return ToolTable()
    return ToolTable(tools=[_make_agent_builder(ctx)])
