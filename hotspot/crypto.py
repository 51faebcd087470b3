"""
Encryption of router credentials at rest.

Router passwords are stored as Fernet tokens. The key is derived from a
configured secret, so rotating ``DEVICE_CREDENTIALS_KEY`` invalidates stored
passwords.
"""

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class CredentialCipher:
    """Encrypt/decrypt device secrets with a key derived from ``secret``"""

    def __init__(self, secret: str):
        if not secret:
            raise ConfigurationError("A credentials key is required to store device passwords")
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        if not token:
            return ""
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            logger.error("Stored device password could not be decrypted with the current key")
            raise ConfigurationError(
                "Device password cannot be decrypted, was the credentials key rotated?"
            ) from e
