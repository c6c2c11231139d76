"""API key storage using the system keychain."""

import logging
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

__all__ = ["KeychainManager"]

logger = logging.getLogger(__name__)

SERVICE_NAME = "GlobalLeaderboards"
DEFAULT_ACCOUNT = "default"


class KeychainManager:
    """Stores API keys per account name in the OS keychain."""

    def __init__(self, service_name: str = SERVICE_NAME):
        """Initialize keychain manager.

        Args:
            service_name: Service name for keychain entries
        """
        self.service_name = service_name

    def store_api_key(self, api_key: str, account: str = DEFAULT_ACCOUNT) -> bool:
        """Store an API key.

        Returns:
            True if stored successfully
        """
        try:
            keyring.set_password(self.service_name, account, api_key)
            logger.info(f"API key stored for account {account}")
            return True
        except KeyringError as e:
            logger.error(f"Failed to store API key: {e}")
            return False

    def load_api_key(self, account: str = DEFAULT_ACCOUNT) -> Optional[str]:
        """Load an API key, or None if missing or the keychain is unavailable."""
        try:
            return keyring.get_password(self.service_name, account) or None
        except KeyringError as e:
            logger.error(f"Failed to load API key: {e}")
            return None

    def delete_api_key(self, account: str = DEFAULT_ACCOUNT) -> bool:
        """Delete a stored API key.

        Returns:
            True if deleted (or didn't exist)
        """
        try:
            keyring.delete_password(self.service_name, account)
            logger.info(f"API key deleted for account {account}")
            return True
        except PasswordDeleteError:
            # Key didn't exist
            return True
        except KeyringError as e:
            logger.error(f"Failed to delete API key: {e}")
            return False

    def has_api_key(self, account: str = DEFAULT_ACCOUNT) -> bool:
        return self.load_api_key(account) is not None
