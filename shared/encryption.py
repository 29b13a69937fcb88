"""Encrypted storage for platform and Notion credentials."""

import logging
from typing import List, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from shared.config import get_env
from shared.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

SECRET_KEY_PREFIX = "secret:"


class EncryptionService:
    """
    Fernet encryption with support for key rotation.

    Keys come from the argument or from ``ENCRYPTION_KEYS`` (comma separated,
    newest first). The first key encrypts; every key is tried for decryption.
    Without any configured key an ephemeral one is generated, so ciphertexts
    only survive for the life of the process.
    """

    def __init__(self, keys: Optional[List[str]] = None):
        if keys is None:
            keys = [k.strip() for k in get_env("ENCRYPTION_KEYS", "").split(",") if k.strip()]
        if not keys:
            logger.warning("No ENCRYPTION_KEYS configured, using an ephemeral key")
            keys = [self.generate_key()]

        self.keys = keys
        self.cipher = MultiFernet([Fernet(key.encode()) for key in keys])

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        return self.cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        """Decrypt a token. Raises ``InvalidToken`` if no configured key matches."""
        if not token:
            return ""
        return self.cipher.decrypt(token.encode()).decode()

    def rotate(self, token: str) -> str:
        """Re-encrypt a token under the primary key."""
        if not token:
            return ""
        return self.cipher.rotate(token.encode()).decode()

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()


class CredentialVault:
    """Stores secrets such as the Notion integration token encrypted in a key-value store."""

    def __init__(self, store: KeyValueStore, encryption_service: EncryptionService):
        self.store = store
        self.encryption_service = encryption_service

    def save(self, name: str, secret: str) -> None:
        self.store.set({SECRET_KEY_PREFIX + name: self.encryption_service.encrypt(secret)})

    def load(self, name: str) -> Optional[str]:
        token = self.store.get_one(SECRET_KEY_PREFIX + name)
        if not token:
            return None
        try:
            return self.encryption_service.decrypt(token)
        except InvalidToken:
            logger.error(f"Stored secret '{name}' cannot be decrypted with the configured keys")
            return None

    def delete(self, name: str) -> None:
        self.store.remove([SECRET_KEY_PREFIX + name])

    def rotate_all(self, names: List[str]) -> int:
        """Re-encrypt the named secrets under the primary key. Returns how many were rewritten."""
        rotated = {}
        for name in names:
            token = self.store.get_one(SECRET_KEY_PREFIX + name)
            if token:
                rotated[SECRET_KEY_PREFIX + name] = self.encryption_service.rotate(token)
        if rotated:
            self.store.set(rotated)
        logger.info(f"Rotated {len(rotated)} stored secrets")
        return len(rotated)
