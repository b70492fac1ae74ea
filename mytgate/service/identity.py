from __future__ import annotations

import base64
import hashlib
import hmac

from cryptography.fernet import Fernet


def normalize_identity(identity: str) -> str:
    return identity.strip().lower()


class IdentityHasher:
    """Keyed hashing of end-user identities.

    Raw usernames never become storage keys or log fields; everything is
    keyed by ``HMAC-SHA256(identity_hash_key, normalized identity)``.
    """

    def __init__(self, key: str) -> None:
        self._key = key.encode()

    def hash(self, identity: str) -> str:
        return hmac.new(
            self._key, normalize_identity(identity).encode(), hashlib.sha256
        ).hexdigest()

    def cipher(self, purpose: str) -> Fernet:
        """Derive a Fernet cipher bound to ``purpose`` from the same key."""
        derived = hmac.new(self._key, purpose.encode(), hashlib.sha256).digest()
        return Fernet(base64.urlsafe_b64encode(derived))
