"""Fernet encryption for tenant database credentials stored in tenant metadata."""

import base64
import hashlib
import json
import logging

from cryptography.fernet import Fernet, InvalidToken

from tenant_manager.config import settings

logger = logging.getLogger(__name__)


def generate_fernet_key() -> str:
    """Generates a new Fernet key and returns it as a string."""
    return Fernet.generate_key().decode("utf-8")


def _derive_key(secret: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())


class CredentialCipher:
    """Encrypts and decrypts credential dicts with Fernet."""

    def __init__(self, encryption_key: str | None = None):
        key = encryption_key or settings.credentials_encryption_key
        if key:
            self._fernet = Fernet(key.encode("utf-8"))
        else:
            logger.warning("credentials_encryption_key is not set; deriving a key from secret_key")
            self._fernet = Fernet(_derive_key(settings.secret_key))

    def encrypt(self, credentials: dict) -> str:
        return self._fernet.encrypt(json.dumps(credentials).encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> dict:
        try:
            return json.loads(self._fernet.decrypt(token.encode("utf-8")))
        except InvalidToken as e:
            raise ValueError("Stored credentials cannot be decrypted with the configured key") from e
