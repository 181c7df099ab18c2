"""Error taxonomy for the ephemeral data lifecycle.

- ConfigError: fatal at startup (missing or short key, bad algorithm)
- CryptoError: encrypt/decrypt failure, never carries partial plaintext
- ArchiveError: group-scoped, retryable next tick, no erase performed
- SecureDeleteError: file-scoped, blocks the group's erase stage
- TransientIOError: database/network hiccup, retried with backoff
- StateTransitionError: illegal sweep run move, the run is marked FAILED
"""

from typing import Optional


class LifecycleError(Exception):
    """Base class for lifecycle engine errors."""
    pass


class ConfigError(LifecycleError):
    """Raised when required configuration is missing or invalid."""
    pass


class CryptoError(LifecycleError):
    """Raised when encryption or decryption fails."""
    pass


class ArchiveError(LifecycleError):
    """Raised when an export archive cannot be produced for a group."""

    def __init__(self, message: str, group_id: Optional[object] = None):
        self.group_id = group_id
        super().__init__(message)


class SecureDeleteError(LifecycleError):
    """Raised when a file cannot be securely erased.

    The file must be treated as possibly still holding plaintext.
    """

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Secure delete failed for {path}: {reason}")


class TransientIOError(LifecycleError):
    """Raised for retryable database or network failures."""
    pass


class StateTransitionError(LifecycleError):
    """Raised when a sweep run is moved along an edge the state machine forbids."""
    pass
