"""
Recover the active agent document from conversation history.

There is no session field pointing at the document a chat is building, so
the id is searched for in the transcript. Messages are scanned newest first;
for each message the extractors in ``EXTRACTORS`` propose candidate ids in
priority order and the first candidate that validates wins.

Validation fetches the document and requires that the requester owns it and
that its content is a finished agent (``name`` plus ``models`` and
``actions`` lists). Progress snapshots (``{"status": ..., "step": ...}``) are
skipped so the search keeps going. Actions missing an ``id`` get one in the
returned content; persisting that repair is left to the caller.
"""

import json
import logging
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass

import aiosqlite

from ..agent.tools import AGENT_BUILDER_TOOL

logger = logging.getLogger(__name__)

UUID_RE = re.compile(r"[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}")
TEXT_REFERENCE_RE = re.compile(r"document.*?(?:id|ID)[:\s]*([a-f0-9-]{36})", re.IGNORECASE)


@dataclass(frozen=True)
class ExtractedContext:
    document_id: str
    content: str


def _parts(message: dict) -> list[dict]:
    parts = message.get("parts") or []
    # Later parts are newer
    return [p for p in reversed(parts) if isinstance(p, dict)]


def _agent_result_id(result) -> str | None:
    if isinstance(result, dict) and result.get("id") and result.get("kind") == "agent":
        return result["id"]
    return None


def completed_invocations(message: dict) -> Iterator[str]:
    for part in _parts(message):
        if (
            part.get("type") == "tool_invocation"
            and part.get("tool_name") == AGENT_BUILDER_TOOL
            and part.get("state") == "result"
        ):
            document_id = _agent_result_id(part.get("result"))
            if document_id:
                yield document_id


def pending_invocations(message: dict) -> Iterator[str]:
    for part in _parts(message):
        if (
            part.get("type") == "tool_invocation"
            and part.get("tool_name") == AGENT_BUILDER_TOOL
            and part.get("state") == "call"
        ):
            args = part.get("args") or {}
            if isinstance(args, dict) and args.get("existing_document_id"):
                yield args["existing_document_id"]


def legacy_tool_parts(message: dict) -> Iterator[str]:
    for part in _parts(message):
        if part.get("type") in ("tool_call", "tool_result") and part.get("tool_name") == AGENT_BUILDER_TOOL:
            document_id = _agent_result_id(part.get("result"))
            if document_id:
                yield document_id


def text_references(message: dict) -> Iterator[str]:
    if message.get("role") != "assistant":
        return
    for part in _parts(message):
        if part.get("type") == "text" and isinstance(part.get("text"), str):
            match = TEXT_REFERENCE_RE.search(part["text"])
            if match:
                yield match.group(1)


def part_provider_metadata(message: dict) -> Iterator[str]:
    for part in _parts(message):
        metadata = part.get("provider_metadata")
        if isinstance(metadata, dict) and metadata.get("document_id"):
            yield metadata["document_id"]


def message_metadata(message: dict) -> Iterator[str]:
    metadata = message.get("metadata")
    if isinstance(metadata, dict) and metadata.get("document_id"):
        yield metadata["document_id"]


def uuid_scan(message: dict) -> Iterator[str]:
    yield from UUID_RE.findall(json.dumps(message, default=str))


EXTRACTORS: tuple[Callable[[dict], Iterator[str]], ...] = (
    completed_invocations,
    pending_invocations,
    legacy_tool_parts,
    text_references,
    part_provider_metadata,
    message_metadata,
    uuid_scan,
)


def is_final_agent(parsed) -> bool:
    return (
        isinstance(parsed, dict)
        and isinstance(parsed.get("name"), str)
        and isinstance(parsed.get("models"), list)
        and isinstance(parsed.get("actions"), list)
    )


def assign_action_ids(agent: dict) -> bool:
    """Give every action without an id a fresh ``act<N>``. Returns True if anything changed."""
    actions = agent["actions"]
    taken = {a.get("id") for a in actions if isinstance(a, dict) and a.get("id")}
    changed = False
    for index, action in enumerate(actions):
        if not isinstance(action, dict) or action.get("id"):
            continue
        n = index + 1
        while f"act{n}" in taken:
            n += 1
        action["id"] = f"act{n}"
        taken.add(action["id"])
        logger.info("Assigned id %s to action %r", action["id"], action.get("name"))
        changed = True
    return changed


class ContextExtractor:
    def __init__(self, sqlite_store) -> None:
        self._sqlite = sqlite_store

    async def extract(self, messages: list[dict], user_id: str) -> ExtractedContext | None:
        tried: set[str] = set()
        for message in reversed(messages):
            for extractor in EXTRACTORS:
                for candidate in extractor(message):
                    if candidate in tried:
                        continue
                    tried.add(candidate)
                    found = await self.validate(candidate, user_id)
                    if found is not None:
                        logger.info("Found agent document %s via %s", candidate, extractor.__name__)
                        return found
        logger.info("No agent document found in %d messages", len(messages))
        return None

    async def validate(self, document_id: str, user_id: str) -> ExtractedContext | None:
        try:
            document = await self._sqlite.get_document(document_id)
        except aiosqlite.Error:
            logger.warning("Failed to fetch document %s", document_id, exc_info=True)
            return None

        if document is None or not document.get("content"):
            return None
        if document["user_id"] != user_id:
            logger.info("Document %s belongs to another user, skipping", document_id)
            return None

        try:
            parsed = json.loads(document["content"])
        except json.JSONDecodeError:
            logger.info("Document %s content is not JSON, skipping", document_id)
            return None

        if not is_final_agent(parsed):
            if isinstance(parsed, dict) and (parsed.get("status") or parsed.get("step")):
                logger.info("Document %s is still in progress, skipping", document_id)
            return None

        if assign_action_ids(parsed):
            return ExtractedContext(document_id=document_id, content=json.dumps(parsed, indent=2))
        return ExtractedContext(document_id=document_id, content=document["content"])
