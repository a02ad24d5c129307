import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class ApiKeyCipher:
    """Symmetric Fernet cipher for user API keys at rest."""

    def __init__(self, secret: str) -> None:
        # Any secret string is stretched to the 32-byte urlsafe key Fernet expects
        digest = hashlib.sha256(f"{secret}:api-keys".encode()).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, api_key: str) -> str:
        return self._fernet.encrypt(api_key.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise ValueError("Invalid encrypted API key") from exc


class CredentialStore:
    """Decrypted per-user provider API keys backed by the SQLite store."""

    def __init__(self, sqlite_store, cipher: ApiKeyCipher) -> None:
        self._sqlite = sqlite_store
        self._cipher = cipher

    async def save_api_key(self, user_id: str, provider: str, api_key: str) -> None:
        await self._sqlite.save_api_key(user_id, provider, self._cipher.encrypt(api_key))

    async def get_api_key(self, user_id: str, provider: str) -> str | None:
        token = await self._sqlite.get_api_key(user_id, provider)
        if token is None:
            return None
        try:
            return self._cipher.decrypt(token)
        except ValueError:
            logger.warning("Failed to decrypt %s API key for user %s", provider, user_id)
            return None

    async def list_providers(self, user_id: str) -> list[str]:
        return await self._sqlite.list_api_key_providers(user_id)

    async def delete_api_key(self, user_id: str, provider: str) -> None:
        await self._sqlite.delete_api_key(user_id, provider)
