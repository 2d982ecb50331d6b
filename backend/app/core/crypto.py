"""
Encryption of stored WebUntis secrets.

Secrets are sealed with AES-GCM; each row keeps the ciphertext, the nonce
and the version of the key that sealed it so keys can be rotated.
"""

import base64
import logging
import os
from typing import Dict, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.config import settings
from app.integrations.untis.errors import CredentialDecryptError, MissingCredentialError

logger = logging.getLogger(__name__)

NONCE_SIZE = 12


class CredentialCipher:
    """Seals and opens per-user WebUntis secrets."""

    def __init__(self, keys: Optional[Dict[int, bytes]] = None, current_version: Optional[int] = None):
        if keys is None:
            keys = {
                int(version): base64.b64decode(encoded)
                for version, encoded in settings.CREDENTIAL_KEYS.items()
            }
        self._keys = keys
        self.current_version = current_version or (max(keys) if keys else 1)

    def encrypt(self, plaintext: str) -> Tuple[bytes, bytes, int]:
        """Encrypt a secret with the current key. Returns (ciphertext, nonce, key_version)."""
        key = self._keys.get(self.current_version)
        if key is None:
            raise CredentialDecryptError(f"No credential key configured for version {self.current_version}")
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
        return ciphertext, nonce, self.current_version

    def decrypt(self, ciphertext: Optional[bytes], nonce: Optional[bytes], key_version: Optional[int] = None) -> str:
        if not ciphertext or not nonce:
            raise MissingCredentialError("User missing encrypted Untis credential")

        version = key_version or 1
        key = self._keys.get(version)
        if key is None:
            logger.error(f"Credential key version {version} is not configured")
            raise CredentialDecryptError("Credential decryption failed", details={"key_version": version})

        try:
            return AESGCM(key).decrypt(nonce, ciphertext, None).decode("utf-8")
        except (InvalidTag, ValueError, UnicodeDecodeError) as e:
            logger.error(f"Credential decryption failed for key version {version}: {e}")
            raise CredentialDecryptError("Credential decryption failed", original_exception=e)
