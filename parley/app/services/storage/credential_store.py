import logging
import os
from datetime import datetime
from typing import Optional

from parley.app.config.app_config import CredentialConfig
from parley.app.errors import InvalidCredentialError
from parley.app.services.storage.storage_models import CredentialData
from parley.app.services.storage.storage_service import StorageService

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "sk-"


def validate_api_key_format(api_key: Optional[str], min_length: int = 20, max_length: int = 200) -> bool:
    """True if the trimmed key starts with ``sk-`` (which covers ``sk-proj-``) and has a plausible length."""
    if not api_key:
        return False
    trimmed = api_key.strip()
    return trimmed.startswith(API_KEY_PREFIX) and min_length <= len(trimmed) <= max_length


class CredentialStore:
    """API key lookup: the stored key first, then the configured environment variable.

    The key is stored as plain JSON in the settings directory and is never logged.
    """

    def __init__(self, storage: StorageService, config: CredentialConfig) -> None:
        self._storage = storage
        self._config = config

    def is_valid(self, api_key: Optional[str]) -> bool:
        return validate_api_key_format(api_key, self._config.min_key_length, self._config.max_key_length)

    async def get_credential(self) -> Optional[str]:
        data = await self._storage.read(CredentialData)
        if data.api_key:
            return data.api_key
        env_value = os.environ.get(self._config.environment_variable)
        if env_value and env_value.strip():
            return env_value.strip()
        return None

    async def save_credential(self, api_key: str) -> None:
        """Validate and store a key.

        Raises:
            InvalidCredentialError: The key does not look like an API key, or it could not be stored.
        """
        if not self.is_valid(api_key):
            raise InvalidCredentialError("API key must start with 'sk-' and be 20-200 characters long")
        saved = await self._storage.write(CredentialData(api_key=api_key.strip(), updated_at=datetime.now()))
        if not saved:
            raise InvalidCredentialError("API key could not be saved")
        logger.info("API key saved")

    async def delete_credential(self) -> None:
        await self._storage.delete(CredentialData)
        logger.info("Stored API key deleted")

    async def has_credential(self) -> bool:
        return await self.get_credential() is not None
