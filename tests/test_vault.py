"""Tests for vault.py - encrypted credential storage."""
import base64

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import VaultConfig
from errors import PersistenceFailure
from models import CloudProvider, ConnectionStatus
from stores import InMemoryConnectionStore
from vault import CredentialVault, extract_metadata, load_key

AWS_CREDENTIALS = {
    "accessKeyId": "AKIAEXAMPLE",
    "secretAccessKey": "wJalrXUtnFEMI/K7MDENG",
    "roleArn": "arn:aws:iam::123456789012:role/SafeOps",
    "region": "eu-west-1",
}
GCP_CREDENTIALS = {
    "accessToken": "ya29.token",
    "refreshToken": "1//refresh",
    "expiry": 1893456000000,
    "project_id": "demo-project",
    "nested": {"scopes": ["cloud-platform"]},
}


@pytest.mark.unit
class TestEncryption:
    def test_round_trip(self, vault):
        token = vault.encrypt("hello vault")

        assert vault.decrypt(token) == "hello vault"

    def test_ciphertext_format(self, vault):
        iv, tag, payload = vault.encrypt("abc").split(":")

        assert len(bytes.fromhex(iv)) == 16
        assert len(bytes.fromhex(tag)) == 16
        assert len(bytes.fromhex(payload)) == 3

    def test_fresh_iv_per_encryption(self, vault):
        assert vault.encrypt("same") != vault.encrypt("same")

    def test_tampered_payload_returns_none(self, vault):
        iv, tag, payload = vault.encrypt("secret material").split(":")
        flipped = format(int(payload[:2], 16) ^ 0xFF, "02x") + payload[2:]

        assert vault.decrypt(f"{iv}:{tag}:{flipped}") is None

    @pytest.mark.parametrize("token", [None, "", "abc", "zz:zz:zz", "00:11", "a:b:c:d"])
    def test_malformed_returns_none(self, vault, token):
        assert vault.decrypt(token) is None

    def test_wrong_key_returns_none(self, vault, connection_store):
        other = CredentialVault(connection_store, AESGCM.generate_key(bit_length=256))
        assert other.decrypt(vault.encrypt("secret")) is None


@pytest.mark.unit
class TestConnections:
    def test_absent_connection_is_none(self, vault):
        assert vault.get_connection("nobody", CloudProvider.AWS) is None

    def test_store_then_get_returns_equal_object(self, vault):
        assert vault.store_connection("u1", CloudProvider.GCP, GCP_CREDENTIALS) is True

        assert vault.get_connection("u1", "gcp") == GCP_CREDENTIALS

    def test_ciphertext_does_not_contain_secret(self, vault, connection_store):
        vault.store_connection("u1", CloudProvider.AWS, AWS_CREDENTIALS)

        stored = connection_store.get("u1", "aws")

        assert "wJalrXUtnFEMI" not in stored.encrypted_data
        assert stored.account_id == "123456789012"

    def test_second_store_overwrites(self, vault):
        vault.store_connection("u1", CloudProvider.AWS, AWS_CREDENTIALS)
        vault.store_connection("u1", CloudProvider.AWS, {"roleArn": "arn:aws:iam::999999999999:role/Other"})

        assert vault.get_connection("u1", CloudProvider.AWS) == {"roleArn": "arn:aws:iam::999999999999:role/Other"}
        assert vault.connection_status("u1", CloudProvider.AWS)["account_id"] == "999999999999"

    def test_connections_isolated_per_provider_and_user(self, vault):
        vault.store_connection("u1", CloudProvider.AWS, AWS_CREDENTIALS)

        assert vault.get_connection("u1", CloudProvider.GCP) is None
        assert vault.get_connection("u2", CloudProvider.AWS) is None

    def test_corrupted_record_returns_none(self, vault, connection_store):
        vault.store_connection("u1", CloudProvider.AWS, AWS_CREDENTIALS)
        record = connection_store.get("u1", "aws")
        last = record.encrypted_data[-2:]
        record.encrypted_data = record.encrypted_data[:-2] + format(int(last, 16) ^ 0x01, "02x")
        connection_store.upsert(record)

        assert vault.get_connection("u1", CloudProvider.AWS) is None

    def test_store_failure_returns_false(self, encryption_key):
        class FailingStore(InMemoryConnectionStore):
            def upsert(self, connection):
                raise PersistenceFailure("database offline")

        vault = CredentialVault(FailingStore(), bytes.fromhex(encryption_key))

        assert vault.store_connection("u1", CloudProvider.AWS, AWS_CREDENTIALS) is False

    def test_driver_errors_degrade(self, encryption_key):
        class DeadConnectionStore:
            def upsert(self, connection):
                raise ConnectionError("db down")

            def get(self, user_id, provider):
                raise OSError("socket closed")

        vault = CredentialVault(DeadConnectionStore(), bytes.fromhex(encryption_key))

        assert vault.store_connection("u1", CloudProvider.AWS, AWS_CREDENTIALS) is False
        assert vault.get_connection("u1", CloudProvider.AWS) is None
        assert vault.disconnect("u1", CloudProvider.AWS) is False
        assert vault.connection_status("u1", CloudProvider.AWS)["status"] == ConnectionStatus.DISCONNECTED.value

    def test_disconnect_write_failure_returns_false(self, vault, connection_store, monkeypatch):
        vault.store_connection("u1", CloudProvider.AWS, AWS_CREDENTIALS)

        def refuse(connection):
            raise ConnectionError("db down")

        monkeypatch.setattr(connection_store, "upsert", refuse)

        assert vault.disconnect("u1", CloudProvider.AWS) is False

    def test_disconnect(self, vault):
        vault.store_connection("u1", CloudProvider.AWS, AWS_CREDENTIALS)

        assert vault.disconnect("u1", CloudProvider.AWS) is True
        assert vault.get_connection("u1", CloudProvider.AWS) is None
        assert vault.connection_status("u1", CloudProvider.AWS)["status"] == ConnectionStatus.DISCONNECTED.value

    def test_disconnect_unknown(self, vault):
        assert vault.disconnect("u1", CloudProvider.GCP) is False

    def test_unknown_provider_rejected(self, vault):
        with pytest.raises(ValueError):
            vault.store_connection("u1", "azure", {})


@pytest.mark.unit
class TestKeys:
    def test_hex_key(self):
        key = AESGCM.generate_key(bit_length=256)
        assert load_key(key.hex()) == key

    def test_base64_key(self):
        key = AESGCM.generate_key(bit_length=256)
        assert load_key(base64.b64encode(key).decode()) == key

    def test_urlsafe_base64_key(self):
        key = AESGCM.generate_key(bit_length=256)
        assert load_key(base64.urlsafe_b64encode(key).decode().rstrip("=")) == key

    @pytest.mark.parametrize("material", ["short", "00" * 16, "not base64 at all!"])
    def test_invalid_key(self, material):
        with pytest.raises(ValueError):
            load_key(material)

    def test_from_config_without_key_is_usable(self, connection_store):
        vault = CredentialVault.from_config(connection_store, VaultConfig(encryption_key=None))
        assert vault.decrypt(vault.encrypt("x")) == "x"

    def test_from_config_with_key(self, connection_store, encryption_key):
        first = CredentialVault.from_config(connection_store, VaultConfig(encryption_key=encryption_key))
        second = CredentialVault.from_config(connection_store, VaultConfig(encryption_key=encryption_key))

        assert second.decrypt(first.encrypt("persisted")) == "persisted"


@pytest.mark.unit
class TestMetadata:
    def test_aws_account_from_role_arn(self):
        assert extract_metadata(CloudProvider.AWS, {"roleArn": "arn:aws:iam::123456789012:role/X"})["account_id"] == "123456789012"

    def test_aws_explicit_account(self):
        assert extract_metadata(CloudProvider.AWS, {"accountId": "111122223333"})["account_id"] == "111122223333"

    def test_gcp_project(self):
        assert extract_metadata(CloudProvider.GCP, {"projectId": "p-1"}) == {"account_id": None, "project_id": "p-1"}
