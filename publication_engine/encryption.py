"""
Symmetric encryption for stored platform credentials.

Credential rows in ``api_configurations.keys`` hold an AES-256-CBC token in
the form ``"<iv hex>:<ciphertext hex>"``.  The key is the 32-character
``ENCRYPTION_KEY`` shared with the service that writes those rows.
"""

import json
import os
from typing import Any, Dict

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from publication_engine.exceptions import ConfigurationError, EncryptionError


KEY_LENGTH = 32
IV_LENGTH = 16


class CredentialCipher:
    """AES-256-CBC cipher for credential secrets.

    Args:
        key: Exactly 32 characters (encoded as UTF-8, must be 32 bytes).

    Raises:
        ConfigurationError: If the key has the wrong length.
    """

    def __init__(self, key: str) -> None:
        key_bytes = key.encode("utf-8") if key else b""
        if len(key_bytes) != KEY_LENGTH:
            raise ConfigurationError(
                f"ENCRYPTION_KEY must be exactly {KEY_LENGTH} characters"
            )
        self._key = key_bytes

    @classmethod
    def from_env(cls) -> "CredentialCipher":
        """Create a cipher from the ``ENCRYPTION_KEY`` environment variable."""
        return cls(os.environ.get("ENCRYPTION_KEY", ""))

    def encrypt(self, text: str) -> str:
        """Encrypt *text* with a fresh random IV."""
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(text.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        """Decrypt a ``"<iv hex>:<ciphertext hex>"`` token.

        Raises:
            EncryptionError: If the token is malformed or was produced with
                a different key.
        """
        if not token or ":" not in token:
            raise EncryptionError("Malformed credential token")
        iv_hex, _, ct_hex = token.partition(":")
        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ct_hex)
        except ValueError as exc:
            raise EncryptionError(f"Malformed credential token: {exc}") from exc
        if len(iv) != IV_LENGTH or not ciphertext or len(ciphertext) % IV_LENGTH:
            raise EncryptionError("Malformed credential token")

        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            plain = unpadder.update(padded) + unpadder.finalize()
            return plain.decode("utf-8")
        except ValueError as exc:
            # Bad padding or invalid UTF-8 both mean a wrong key
            raise EncryptionError("Credential token could not be decrypted") from exc

    def encrypt_json(self, secret: Dict[str, Any]) -> str:
        return self.encrypt(json.dumps(secret))

    def decrypt_json(self, token: str) -> Dict[str, Any]:
        """Decrypt a token holding a JSON object.

        Raises:
            EncryptionError: If decryption fails or the plaintext is not a
                JSON object.
        """
        plain = self.decrypt(token)
        try:
            value = json.loads(plain)
        except json.JSONDecodeError as exc:
            raise EncryptionError("Decrypted credential is not valid JSON") from exc
        if not isinstance(value, dict):
            raise EncryptionError("Decrypted credential is not a JSON object")
        return value


__all__ = [
    "CredentialCipher",
]
