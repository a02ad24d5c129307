from dataclasses import dataclass


@dataclass(frozen=True)
class Provider:
    id: str
    name: str
    env_var: str  # where the environment-scoped key lives


@dataclass(frozen=True)
class ChatModel:
    id: str
    name: str
    provider_id: str
    description: str = ""
    tool_calling: bool = True
    reasoning: bool = False
    alias_of: str | None = None  # legacy ids served by another model

    @property
    def api_model(self) -> str:
        return self.alias_of or self.id


PROVIDERS: dict[str, Provider] = {
    "anthropic": Provider(id="anthropic", name="Anthropic", env_var="ANTHROPIC_API_KEY"),
}

CHAT_MODELS: list[ChatModel] = [
    ChatModel(
        id="claude-sonnet-4-5-20250929",
        name="Claude Sonnet 4.5",
        provider_id="anthropic",
        description="Most capable model for building agents",
        reasoning=True,
    ),
    ChatModel(
        id="claude-haiku-4-5-20251001",
        name="Claude Haiku 4.5",
        provider_id="anthropic",
        description="Faster and more affordable",
    ),
    ChatModel(
        id="claude-opus-4-1-20250805",
        name="Claude Opus 4.1",
        provider_id="anthropic",
        description="Deep reasoning for complex agents",
        reasoning=True,
    ),
    # Legacy generic ids kept for old clients
    ChatModel(
        id="chat-model",
        name="Chat Model",
        provider_id="anthropic",
        alias_of="claude-sonnet-4-5-20250929",
    ),
    ChatModel(
        id="chat-model-reasoning",
        name="Reasoning Model",
        provider_id="anthropic",
        tool_calling=False,
        reasoning=True,
        alias_of="claude-sonnet-4-5-20250929",
    ),
]


def get_chat_model(model_id: str) -> ChatModel | None:
    return next((m for m in CHAT_MODELS if m.id == model_id), None)
