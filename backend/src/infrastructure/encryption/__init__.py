"""Infrastructure encryption utilities."""

from .content_cipher import (
    ContentCipher,
    build_cipher,
    parse_key,
    SUPPORTED_ALGORITHMS,
    KEY_LENGTH,
)

__all__ = [
    "ContentCipher",
    "build_cipher",
    "parse_key",
    "SUPPORTED_ALGORITHMS",
    "KEY_LENGTH",
]
