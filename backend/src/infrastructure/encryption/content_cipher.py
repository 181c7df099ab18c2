"""Content cipher for message and attachment fields at rest.

Encrypts message content and attachment storage paths before they reach
the database. The blob format is "iv_hex:cipher_hex":

- aes-256-cbc (default): 16-byte IV, PKCS7 padding
- aes-256-gcm: 12-byte nonce, ciphertext carries the 16-byte auth tag

Every encrypt call draws a fresh random IV, so encrypting the same
plaintext twice yields different blobs.
"""

import logging
import os
import string
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from domain.lifecycle.errors import ConfigError, CryptoError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # AES-256

# Algorithm identifier -> IV length in bytes
SUPPORTED_ALGORITHMS = {
    "aes-256-cbc": 16,
    "aes-256-gcm": 12,
}

BLOB_SEPARATOR = ":"


def parse_key(raw_key: Optional[str]) -> bytes:
    """Turn the configured key string into 32 key bytes.

    A 64-character hex string is decoded as hex. Any other string is taken
    as UTF-8 and must be at least 32 bytes long; the first 32 are used.

    Raises:
        ConfigError: If the key is missing or too short
    """
    if not raw_key:
        raise ConfigError(
            "CONTENT_ENCRYPTION_KEY is not set. "
            "Generate one with: python -c 'import os; print(os.urandom(32).hex())'"
        )

    if len(raw_key) == 2 * KEY_LENGTH and all(c in string.hexdigits for c in raw_key):
        return bytes.fromhex(raw_key)

    key_bytes = raw_key.encode("utf-8")
    if len(key_bytes) < KEY_LENGTH:
        raise ConfigError(
            f"CONTENT_ENCRYPTION_KEY must be at least {KEY_LENGTH} bytes, "
            f"got {len(key_bytes)} bytes"
        )
    return key_bytes[:KEY_LENGTH]


class ContentCipher:
    """Symmetric encrypt/decrypt of text fields at rest.

    Example:
        cipher = ContentCipher(os.urandom(32))
        blob = cipher.encrypt("hello")      # "3f9a...:c01d..."
        cipher.decrypt(blob)                # "hello"
    """

    def __init__(self, key: bytes, algorithm: str = "aes-256-cbc"):
        """Initialize cipher with a fixed-length key.

        Raises:
            ConfigError: If the key length or algorithm is not supported
        """
        algorithm = algorithm.lower()
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ConfigError(
                f"Unsupported encryption algorithm '{algorithm}'. "
                f"Supported: {sorted(SUPPORTED_ALGORITHMS)}"
            )
        if not key or len(key) != KEY_LENGTH:
            raise ConfigError(
                f"Encryption key must be {KEY_LENGTH} bytes, got {len(key) if key else 0} bytes"
            )

        self._key = key
        self.algorithm = algorithm
        self.iv_length = SUPPORTED_ALGORITHMS[algorithm]

    def encrypt(self, plaintext: str) -> str:
        """Encrypt text and return an "iv_hex:cipher_hex" blob.

        Raises:
            CryptoError: If encryption fails
        """
        if plaintext is None:
            raise CryptoError("Cannot encrypt None")

        try:
            data = plaintext.encode("utf-8")
            iv = os.urandom(self.iv_length)

            if self.algorithm == "aes-256-gcm":
                ciphertext = AESGCM(self._key).encrypt(iv, data, None)
            else:
                padder = padding.PKCS7(algorithms.AES.block_size).padder()
                padded = padder.update(data) + padder.finalize()
                encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
                ciphertext = encryptor.update(padded) + encryptor.finalize()

        except Exception as e:
            logger.error(f"Encryption failed: {type(e).__name__}")
            raise CryptoError("Encryption failed") from e

        return iv.hex() + BLOB_SEPARATOR + ciphertext.hex()

    def decrypt(self, blob: str) -> str:
        """Decrypt an "iv_hex:cipher_hex" blob back to text.

        Never returns partial plaintext: any malformed blob, wrong IV length,
        padding or authentication failure raises.

        Raises:
            CryptoError: If the blob cannot be decrypted
        """
        if not isinstance(blob, str) or blob.count(BLOB_SEPARATOR) != 1:
            raise CryptoError("Malformed ciphertext blob")

        iv_hex, cipher_hex = blob.split(BLOB_SEPARATOR)
        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(cipher_hex)
        except ValueError as e:
            raise CryptoError("Malformed ciphertext blob: not hex encoded") from e

        if len(iv) != self.iv_length:
            raise CryptoError(
                f"Invalid IV length: expected {self.iv_length} bytes, got {len(iv)}"
            )
        if not ciphertext:
            raise CryptoError("Malformed ciphertext blob: empty ciphertext")

        try:
            if self.algorithm == "aes-256-gcm":
                data = AESGCM(self._key).decrypt(iv, ciphertext, None)
            else:
                if len(ciphertext) % (algorithms.AES.block_size // 8) != 0:
                    raise CryptoError("Ciphertext is not a whole number of blocks")
                decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
                padded = decryptor.update(ciphertext) + decryptor.finalize()
                unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
                data = unpadder.update(padded) + unpadder.finalize()
            return data.decode("utf-8")

        except CryptoError:
            raise
        except InvalidTag as e:
            raise CryptoError(
                "Decryption failed: data has been tampered with or wrong encryption key"
            ) from e
        except (ValueError, UnicodeDecodeError) as e:
            raise CryptoError("Decryption failed: bad padding or wrong encryption key") from e


def build_cipher(raw_key: Optional[str], algorithm: str) -> ContentCipher:
    """Build the process-wide cipher from configuration.

    Called once at startup; a ConfigError here must stop the process.
    """
    cipher = ContentCipher(parse_key(raw_key), algorithm)
    logger.info(f"Content cipher initialized with {cipher.algorithm}")
    return cipher
