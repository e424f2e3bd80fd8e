"""Unit tests for credential encryption and the credential vault"""

import base64
import hashlib
import uuid

import pytest

from credentials.cipher import CredentialCipher, EncryptionError, derive_key
from credentials.vault import CredentialNotFoundError
from models import Credential, CredentialType


class TestDeriveKey:
    def test_32_byte_material_used_as_is(self):
        material = "k" * 32

        assert derive_key(material) == material.encode("utf-8")

    def test_other_lengths_are_hashed(self):
        assert derive_key("short") == hashlib.sha256(b"short").digest()

    def test_empty_material_rejected(self):
        with pytest.raises(EncryptionError):
            derive_key("")


class TestCredentialCipher:
    """Tests for AES-256-GCM credential encryption"""

    @pytest.fixture
    def cipher(self):
        return CredentialCipher("test-encryption-key")

    @pytest.mark.parametrize("plaintext", ["client-secret", "", "쿠팡 비밀키 🔑", "x" * 2048])
    def test_round_trip(self, cipher, plaintext):
        assert cipher.decrypt(cipher.encrypt(plaintext)) == plaintext

    def test_nonce_is_random(self, cipher):
        """Encrypting the same value twice gives different ciphertexts"""
        assert cipher.encrypt("secret") != cipher.encrypt("secret")

    def test_ciphertext_does_not_contain_plaintext(self, cipher):
        token = cipher.encrypt("client-secret")

        assert "client-secret" not in token
        assert b"client-secret" not in base64.b64decode(token)

    def test_tampered_ciphertext_rejected(self, cipher):
        raw = bytearray(base64.b64decode(cipher.encrypt("client-secret")))
        raw[-1] ^= 0x01
        tampered = base64.b64encode(bytes(raw)).decode("ascii")

        with pytest.raises(EncryptionError, match="tampered"):
            cipher.decrypt(tampered)

    def test_wrong_key_rejected(self, cipher):
        token = cipher.encrypt("client-secret")

        with pytest.raises(EncryptionError):
            CredentialCipher("another-key").decrypt(token)

    def test_invalid_base64_rejected(self, cipher):
        with pytest.raises(EncryptionError):
            cipher.decrypt("not base64 !!")

    def test_truncated_value_rejected(self, cipher):
        with pytest.raises(EncryptionError, match="too short"):
            cipher.decrypt(base64.b64encode(b"0123456789").decode("ascii"))

    def test_none_rejected(self, cipher):
        with pytest.raises(EncryptionError):
            cipher.encrypt(None)


class TestCredentialVault:
    """Tests for CredentialVault scope resolution"""

    def test_value_is_stored_encrypted(self, db_session, container, tenant_id):
        container.vault.put(tenant_id, None, CredentialType.ERP, "api_key", "erp-secret")
        db_session.commit()

        row = db_session.query(Credential).one()
        assert row.encrypted_value != "erp-secret"
        assert container.vault.get(tenant_id, None, CredentialType.ERP, "api_key") == "erp-secret"

    def test_store_scope_overrides_tenant_scope(self, db_session, container, tenant_id):
        store_id = uuid.uuid4()
        other_store_id = uuid.uuid4()
        container.vault.put(tenant_id, None, CredentialType.MARKETPLACE, "api_key", "tenant-key")
        container.vault.put(tenant_id, store_id, CredentialType.MARKETPLACE, "api_key", "store-key")
        db_session.commit()

        assert container.vault.get(tenant_id, store_id, CredentialType.MARKETPLACE, "api_key") == "store-key"
        assert container.vault.get(tenant_id, other_store_id, CredentialType.MARKETPLACE, "api_key") == "tenant-key"
        assert container.vault.get(tenant_id, None, CredentialType.MARKETPLACE, "api_key") == "tenant-key"

    def test_get_all_merges_scopes(self, db_session, container, tenant_id):
        store_id = uuid.uuid4()
        container.vault.put(tenant_id, None, CredentialType.MARKETPLACE, "api_key", "tenant-key")
        container.vault.put(tenant_id, None, CredentialType.MARKETPLACE, "vendor_id", "V-1")
        container.vault.put(tenant_id, store_id, CredentialType.MARKETPLACE, "api_key", "store-key")
        container.vault.put(tenant_id, uuid.uuid4(), CredentialType.MARKETPLACE, "api_key", "other-store-key")
        db_session.commit()

        values = container.vault.get_all(tenant_id, store_id, CredentialType.MARKETPLACE)

        assert values == {"api_key": "store-key", "vendor_id": "V-1"}

    def test_get_all_empty(self, container, tenant_id):
        assert container.vault.get_all(tenant_id, uuid.uuid4(), CredentialType.MARKETPLACE) == {}

    def test_missing_credential_raises(self, container, tenant_id):
        with pytest.raises(CredentialNotFoundError):
            container.vault.get(tenant_id, None, CredentialType.ERP, "api_key")

    def test_tenant_isolation(self, db_session, container, tenant_id):
        container.vault.put(tenant_id, None, CredentialType.ERP, "api_key", "erp-secret")
        db_session.commit()

        with pytest.raises(CredentialNotFoundError):
            container.vault.get(uuid.uuid4(), None, CredentialType.ERP, "api_key")

    def test_put_replaces_value(self, db_session, container, tenant_id):
        container.vault.put(tenant_id, None, CredentialType.ERP, "api_key", "old")
        container.vault.put(tenant_id, None, CredentialType.ERP, "api_key", "new")
        db_session.commit()

        assert db_session.query(Credential).count() == 1
        assert container.vault.get(tenant_id, None, CredentialType.ERP, "api_key") == "new"

    def test_delete(self, db_session, container, tenant_id):
        container.vault.put(tenant_id, None, CredentialType.ERP, "api_key", "erp-secret")
        db_session.commit()

        assert container.vault.delete(tenant_id, None, CredentialType.ERP, "api_key") is True
        assert container.vault.delete(tenant_id, None, CredentialType.ERP, "api_key") is False
