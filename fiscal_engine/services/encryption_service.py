"""
Encryption Service for stored signing keys.

Organization private keys are kept in the signing_keys table encrypted with
Fernet (AES-128-CBC + HMAC). The Fernet key is derived from ENCRYPTION_SECRET
and ENCRYPTION_SALT with PBKDF2.
"""

import base64
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from fiscal_engine.config import settings

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption errors."""
    pass


class EncryptionService:
    """
    Encrypts and decrypts sensitive values with a derived Fernet key.

    Encrypted values carry the ENC: prefix so plaintext values can be told
    apart during migrations.
    """

    ENCRYPTED_PREFIX = "ENC:"

    def __init__(self, secret_key: Optional[str] = None, salt: Optional[str] = None):
        self._secret = secret_key or settings.ENCRYPTION_SECRET
        if not self._secret:
            raise EncryptionError("ENCRYPTION_SECRET is not configured")

        self._salt = (salt or settings.ENCRYPTION_SALT).encode()
        self._fernet = self._create_cipher()

    def _create_cipher(self) -> Fernet:
        """Create Fernet cipher from derived key."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self._salt,
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(self._secret.encode()))
        return Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a plaintext string.

        Returns:
            Encrypted string with prefix (ENC:base64_data)
        """
        if not plaintext:
            return plaintext

        if plaintext.startswith(self.ENCRYPTED_PREFIX):
            return plaintext

        encrypted = self._fernet.encrypt(plaintext.encode())
        return f"{self.ENCRYPTED_PREFIX}{encrypted.decode()}"

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a value produced by encrypt(). Unprefixed values are returned as-is."""
        if not ciphertext or not ciphertext.startswith(self.ENCRYPTED_PREFIX):
            return ciphertext

        token = ciphertext[len(self.ENCRYPTED_PREFIX):]
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            raise EncryptionError("Decryption failed: Invalid token or key")
