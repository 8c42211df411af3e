"""Encryption helpers for job credentials at rest.

Jobs keep their non-secret credential fields (host, port, username, ...) in
the `input_data` JSON column. When an encryption key is configured, secret
fields (refresh tokens, passwords) are moved into a Fernet token stored in
`secrets_encrypted`, and the destination token is sealed with a `fernet:`
prefix. Without a key everything is stored as-is.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken


SEALED_PREFIX = "fernet:"


class ConfigEncryptionError(RuntimeError):
    """Raised when credential encryption or decryption fails."""


def _normalize_fernet_key(raw_key: str) -> bytes:
    """Normalize a user-provided key into a valid Fernet key.

    Either a valid Fernet key string is accepted as-is, or an arbitrary string
    is deterministically derived into one with SHA-256.
    """

    candidate = raw_key.strip().encode("utf-8")

    try:
        if len(base64.urlsafe_b64decode(candidate)) == 32:
            return candidate
    except (binascii.Error, ValueError):
        pass

    return base64.urlsafe_b64encode(hashlib.sha256(candidate).digest())


class SecretSealer:
    """Seal and open secret values with a configured key."""

    def __init__(self, raw_key: Optional[str] = None):
        self._fernet = Fernet(_normalize_fernet_key(raw_key)) if raw_key else None

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def _require(self) -> Fernet:
        if self._fernet is None:
            raise ConfigEncryptionError(
                "CONFIG_ENCRYPTION_KEY is not configured. Provide CONFIG_ENCRYPTION_KEY or CONFIG_ENCRYPTION_KEY_FILE."
            )
        return self._fernet

    def seal_dict(self, secrets: Optional[Dict[str, Any]]) -> Optional[str]:
        """Encrypt a secrets dictionary into a token string.

        Returns:
            Optional[str]: Encrypted token, or None when secrets is empty.

        Raises:
            ConfigEncryptionError: When encryption fails or key is missing.
        """

        if not secrets:
            return None

        try:
            return self._require().encrypt(json.dumps(secrets).encode("utf-8")).decode("utf-8")
        except ConfigEncryptionError:
            raise
        except Exception as exc:
            raise ConfigEncryptionError(f"Failed to encrypt secrets: {exc}") from exc

    def open_dict(self, token: Optional[str]) -> Dict[str, Any]:
        """Decrypt a token string into a secrets dictionary.

        Raises:
            ConfigEncryptionError: When decryption fails.
        """

        if not token:
            return {}

        try:
            data = json.loads(self._require().decrypt(token.encode("utf-8")).decode("utf-8"))
        except InvalidToken as exc:
            raise ConfigEncryptionError("Invalid encryption token or wrong CONFIG_ENCRYPTION_KEY") from exc
        except ConfigEncryptionError:
            raise
        except Exception as exc:
            raise ConfigEncryptionError(f"Failed to decrypt secrets: {exc}") from exc

        if not isinstance(data, dict):
            raise ConfigEncryptionError("Decrypted secrets payload is not a JSON object")
        return data

    def seal_value(self, value: Optional[str]) -> Optional[str]:
        """Seal a single string when encryption is enabled."""

        if not value or not self.enabled:
            return value
        return SEALED_PREFIX + self._require().encrypt(value.encode("utf-8")).decode("utf-8")

    def open_value(self, value: Optional[str]) -> Optional[str]:
        """Open a value produced by `seal_value`; plain values pass through."""

        if not value or not value.startswith(SEALED_PREFIX):
            return value

        try:
            return self._require().decrypt(value[len(SEALED_PREFIX):].encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise ConfigEncryptionError("Invalid encryption token or wrong CONFIG_ENCRYPTION_KEY") from exc
