"""At-rest encryption for session record values.

Session records hold the leader password. When a record secret is configured
every hash value is sealed with Fernet before it reaches Redis. Values written
without a secret stay readable after one is introduced.
"""

import base64
import hashlib

import structlog
from cryptography.fernet import Fernet, InvalidToken

logger = structlog.get_logger()

KEY_SALT = b"megillah-live-record-v1"
KEY_ITERATIONS = 100_000

# Fernet version byte 0x80 followed by the timestamp, base64-encoded
TOKEN_PREFIX = "gAAAAA"


def derive_key(secret: str) -> bytes:
    """Stretch a configured secret into a Fernet key with PBKDF2-SHA256."""
    digest = hashlib.pbkdf2_hmac(
        "sha256", secret.encode("utf-8"), KEY_SALT, KEY_ITERATIONS, dklen=32
    )
    return base64.urlsafe_b64encode(digest)


class RecordCipher:
    """Seals and unseals individual record values."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Record secret must not be empty")
        self._fernet = Fernet(derive_key(secret))

    def seal(self, value: str) -> str:
        """Encrypt a value for storage.

        Args:
            value: Plaintext value. Empty strings are left as they are.

        Returns:
            The Fernet token as text.
        """
        if not value:
            return value
        return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def unseal(self, value: str) -> str:
        """Decrypt a sealed value. Anything that is not a token is returned as-is.

        A token sealed under another secret is returned unchanged too, so a
        password compared against it never matches.

        Args:
            value: Stored value, sealed or plain.

        Returns:
            The plaintext value.
        """
        if not value.startswith(TOKEN_PREFIX):
            return value
        try:
            return self._fernet.decrypt(value.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            logger.warning("Record value sealed under a different secret")
            return value

    def seal_all(self, fields: dict[str, str]) -> dict[str, str]:
        """Seal every value of a hash mapping, keeping field names."""
        return {name: self.seal(value) for name, value in fields.items()}

    def unseal_all(self, fields: dict[str, str]) -> dict[str, str]:
        return {name: self.unseal(value) for name, value in fields.items()}


def cipher_for(secret: str | None) -> RecordCipher | None:
    """Build the cipher for a configured secret, or None when records stay plain."""
    return RecordCipher(secret) if secret else None
