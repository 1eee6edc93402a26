"""Credential vault: AES-256-GCM encrypted, per-user per-provider cloud credentials.

Ciphertext is stored as ``iv_hex:tag_hex:payload_hex`` so every part needed for
decryption is recoverable from the stored string. Decrypted material is never
logged; decryption failures degrade to ``None``.
"""
from __future__ import annotations

import base64
import binascii
import json
import os
import re
import time
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import VaultConfig
from logging_utils import logger
from models import CloudConnection, CloudProvider, ConnectionStatus
from stores import ConnectionStore

IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32

_ACCOUNT_FROM_ARN = re.compile(r"^arn:aws[a-zA-Z-]*:iam::(\d{12}):")


def load_key(material: str) -> bytes:
    """Decode a 256-bit key given as 64 hex characters or base64."""
    material = material.strip()
    if re.fullmatch(r"[0-9a-fA-F]{64}", material):
        return bytes.fromhex(material)
    standard = material.replace("-", "+").replace("_", "/")
    try:
        key = base64.b64decode(standard + "=" * (-len(standard) % 4), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("ENCRYPTION_KEY must be 64 hex characters or base64 of 32 bytes") from exc
    if len(key) != KEY_LENGTH:
        raise ValueError("ENCRYPTION_KEY must decode to exactly 32 bytes")
    return key


def extract_metadata(provider: CloudProvider, credentials: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Non-secret identifiers kept in cleartext next to the ciphertext."""
    if provider is CloudProvider.AWS:
        account_id = credentials.get("accountId") or credentials.get("account_id")
        role_arn = credentials.get("roleArn") or credentials.get("role_arn")
        if not account_id and isinstance(role_arn, str):
            match = _ACCOUNT_FROM_ARN.match(role_arn)
            account_id = match.group(1) if match else None
        return {"account_id": str(account_id) if account_id else None, "project_id": None}
    project_id = credentials.get("project_id") or credentials.get("projectId")
    return {"account_id": None, "project_id": str(project_id) if project_id else None}


class CredentialVault:
    def __init__(self, store: ConnectionStore, key: bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise ValueError("Vault key must be 256 bits")
        self._store = store
        self._aead = AESGCM(key)

    @classmethod
    def from_config(cls, store: ConnectionStore, config: VaultConfig) -> CredentialVault:
        if config.encryption_key:
            return cls(store, load_key(config.encryption_key))
        logger.warning(
            "ENCRYPTION_KEY not set; using an ephemeral vault key",
            extra={"extra": {"effect": "stored connections will not survive a restart"}},
        )
        return cls(store, AESGCM.generate_key(bit_length=256))

    def encrypt(self, text: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, text.encode("utf-8"), None)
        payload, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{payload.hex()}"

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        """Return the plaintext, or None for missing, malformed or tampered input."""
        if not token or not isinstance(token, str):
            return None
        parts = token.split(":")
        if len(parts) != 3:
            return None
        try:
            iv, tag, payload = (bytes.fromhex(part) for part in parts)
        except ValueError:
            return None
        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            return None
        try:
            plaintext = self._aead.decrypt(iv, payload + tag, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, UnicodeDecodeError):
            return None

    def _read(self, user_id: str, provider: CloudProvider) -> Optional[CloudConnection]:
        try:
            return self._store.get(user_id, provider.value)
        except Exception as exc:
            logger.error(
                "Vault read failed",
                extra={"extra": {"user_id": user_id, "provider": provider.value, "error": str(exc)}},
            )
            return None

    def store_connection(self, user_id: str, provider: CloudProvider | str, credentials: Dict[str, Any]) -> bool:
        """Encrypt and upsert the full credential object; False if the store write failed."""
        provider = CloudProvider(provider)
        metadata = extract_metadata(provider, credentials)
        connection = CloudConnection(
            user_id=user_id,
            provider=provider,
            encrypted_data=self.encrypt(json.dumps(credentials)),
            project_id=metadata["project_id"],
            account_id=metadata["account_id"],
            status=ConnectionStatus.CONNECTED,
        )
        try:
            self._store.upsert(connection)
        except Exception as exc:
            logger.error(
                "Vault write failed",
                extra={"extra": {"user_id": user_id, "provider": provider.value, "error": str(exc)}},
            )
            return False
        logger.info("Cloud connection stored", extra={"extra": connection.public_view()})
        return True

    def get_connection(self, user_id: str, provider: CloudProvider | str) -> Optional[Dict[str, Any]]:
        provider = CloudProvider(provider)
        connection = self._read(user_id, provider)
        if connection is None or connection.status is not ConnectionStatus.CONNECTED:
            return None

        plaintext = self.decrypt(connection.encrypted_data)
        if plaintext is None:
            logger.warning(
                "Stored connection could not be decrypted",
                extra={"extra": {"user_id": user_id, "provider": provider.value}},
            )
            return None
        try:
            credentials = json.loads(plaintext)
        except json.JSONDecodeError:
            return None
        return credentials if isinstance(credentials, dict) else None

    def connection_status(self, user_id: str, provider: CloudProvider | str) -> Dict[str, Any]:
        """Connection metadata without touching the ciphertext."""
        provider = CloudProvider(provider)
        connection = self._read(user_id, provider)
        if connection is None:
            return {"user_id": user_id, "provider": provider.value, "status": ConnectionStatus.DISCONNECTED.value}
        return connection.public_view()

    def disconnect(self, user_id: str, provider: CloudProvider | str) -> bool:
        provider = CloudProvider(provider)
        connection = self._read(user_id, provider)
        if connection is None:
            return False
        connection.status = ConnectionStatus.DISCONNECTED
        connection.encrypted_data = None
        connection.updated_at = time.time()
        try:
            self._store.upsert(connection)
        except Exception as exc:
            logger.error(
                "Vault write failed",
                extra={"extra": {"user_id": user_id, "provider": provider.value, "error": str(exc)}},
            )
            return False
        logger.info("Cloud connection disconnected", extra={"extra": connection.public_view()})
        return True
