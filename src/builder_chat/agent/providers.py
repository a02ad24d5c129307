import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

import aiosqlite

from ..config import MODEL
from .models import PROVIDERS, ChatModel, get_chat_model

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelHandle:
    """Everything the model backend needs to make one call."""

    model_id: str
    api_model: str
    provider_id: str
    api_key: str | None
    source: str  # "user", "environment" or "default"
    tool_calling: bool = True
    reasoning: bool = False

    @property
    def env(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {PROVIDERS[self.provider_id].env_var: self.api_key}


class ModelResolver:
    """Pick the model and credential for a turn.

    Tiers, first hit wins: the user's own decrypted key for the model's
    provider, then the provider key from the environment, then the static
    default binding (ambient SDK credentials). Missing tiers degrade silently.
    """

    def __init__(
        self,
        credentials,
        default_model: str = MODEL,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        default = get_chat_model(default_model)
        if default is None:
            raise RuntimeError(f"Default model {default_model!r} is not in the model catalog")
        self._credentials = credentials
        self._default = default
        self._environ = os.environ if environ is None else environ

    @property
    def default_model(self) -> ChatModel:
        return self._default

    async def resolve(self, model_id: str, user_id: str | None = None) -> ModelHandle:
        model = get_chat_model(model_id)
        if model is None:
            logger.warning("Unknown model %r, using default %s", model_id, self._default.id)
            model = self._default

        if user_id:
            api_key = await self._user_key(user_id, model.provider_id)
            if api_key:
                return self._handle(model, api_key, "user")

        provider = PROVIDERS.get(model.provider_id)
        env_key = self._environ.get(provider.env_var) if provider else None
        if env_key:
            return self._handle(model, env_key, "environment")

        return self._handle(model, None, "default")

    async def _user_key(self, user_id: str, provider_id: str) -> str | None:
        try:
            return await self._credentials.get_api_key(user_id, provider_id)
        except aiosqlite.Error:
            logger.warning("Credential lookup failed for user %s", user_id, exc_info=True)
            return None

    @staticmethod
    def _handle(model: ChatModel, api_key: str | None, source: str) -> ModelHandle:
        logger.info("Resolved model %s (%s credentials)", model.id, source)
        return ModelHandle(
            model_id=model.id,
            api_model=model.api_model,
            provider_id=model.provider_id,
            api_key=api_key,
            source=source,
            tool_calling=model.tool_calling,
            reasoning=model.reasoning,
        )
