"""Failures that must reach the consumer of the key rotation layer."""


class KeyRotationError(Exception):
    """Base class for rotation failures that need user action."""


class NoKeysConfiguredError(KeyRotationError):
    """Raised when the pool holds no credentials at all."""


class PoolExhaustedError(KeyRotationError):
    """Raised when keys exist but none of them is eligible."""


class AuthRejectedError(KeyRotationError):
    """Raised when the endpoint rejected a credential (401/403)."""

    def __init__(self, key_name: str, message: str = "") -> None:
        self.key_name = key_name
        super().__init__(f"Credential {key_name} rejected: {message or 'authentication failed'}")
