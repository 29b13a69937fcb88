"""
Unit tests for encryption utilities.

Covers EncryptionService key loading and rotation and the CredentialVault
that keeps the Notion integration token encrypted in the key-value store.
"""

import os
import pytest
from unittest.mock import patch
from cryptography.fernet import InvalidToken

from shared.encryption import CredentialVault, EncryptionService
from shared.kv_store import InMemoryKeyValueStore


class TestEncryptionService:
    """Test suite for EncryptionService."""

    def test_keys_from_environment(self):
        """Test that comma separated keys are read newest first."""
        first, second = EncryptionService.generate_key(), EncryptionService.generate_key()

        with patch.dict(os.environ, {'ENCRYPTION_KEYS': f"{first}, {second}"}):
            service = EncryptionService()

        assert service.keys == [first, second]

    def test_ephemeral_key_when_unconfigured(self):
        with patch.dict(os.environ, {}, clear=True):
            service = EncryptionService()

        assert len(service.keys) == 1
        assert service.decrypt(service.encrypt("token")) == "token"

    def test_encrypt_decrypt(self):
        service = EncryptionService([EncryptionService.generate_key()])

        encrypted = service.encrypt("secret_abc123")

        assert encrypted != "secret_abc123"
        assert service.decrypt(encrypted) == "secret_abc123"

    def test_empty_values(self):
        service = EncryptionService([EncryptionService.generate_key()])
        assert service.encrypt("") == ""
        assert service.decrypt("") == ""
        assert service.rotate("") == ""

    def test_decrypt_with_wrong_key_fails(self):
        encrypted = EncryptionService([EncryptionService.generate_key()]).encrypt("secret")
        other = EncryptionService([EncryptionService.generate_key()])

        with pytest.raises(InvalidToken):
            other.decrypt(encrypted)

    def test_old_key_still_decrypts_after_rotation(self):
        """Test that adding a new primary key keeps old tokens readable."""
        old_key, new_key = EncryptionService.generate_key(), EncryptionService.generate_key()
        token = EncryptionService([old_key]).encrypt("secret")

        rotated_service = EncryptionService([new_key, old_key])
        rotated = rotated_service.rotate(token)

        assert rotated_service.decrypt(token) == "secret"
        assert EncryptionService([new_key]).decrypt(rotated) == "secret"


class TestCredentialVault:
    """Test suite for CredentialVault."""

    @pytest.fixture
    def vault(self):
        return CredentialVault(InMemoryKeyValueStore(), EncryptionService([EncryptionService.generate_key()]))

    def test_save_and_load(self, vault):
        """Test that secrets are stored encrypted and load back in clear."""
        vault.save("notion_api_token", "secret_xyz")

        stored = vault.store.get_one("secret:notion_api_token")
        assert stored and stored != "secret_xyz"
        assert vault.load("notion_api_token") == "secret_xyz"

    def test_load_missing(self, vault):
        assert vault.load("missing") is None

    def test_load_undecryptable(self, vault):
        vault.store.set({"secret:notion_api_token": EncryptionService([EncryptionService.generate_key()]).encrypt("x")})
        assert vault.load("notion_api_token") is None

    def test_delete(self, vault):
        vault.save("notion_api_token", "secret_xyz")
        vault.delete("notion_api_token")
        assert vault.load("notion_api_token") is None

    def test_rotate_all(self):
        old_key, new_key = EncryptionService.generate_key(), EncryptionService.generate_key()
        store = InMemoryKeyValueStore()
        CredentialVault(store, EncryptionService([old_key])).save("notion_api_token", "secret_xyz")

        count = CredentialVault(store, EncryptionService([new_key, old_key])).rotate_all(["notion_api_token", "missing"])

        assert count == 1
        assert CredentialVault(store, EncryptionService([new_key])).load("notion_api_token") == "secret_xyz"
