# ============================================================================
# email_crypto_engine/password_vault.py
# ============================================================================
"""
Time-bounded passphrase store for one user session.

The vault only defines the logical map ``{key_id: (secret, captured_at)}``
and its expiry sweep; persistence goes through an ISessionStore.
"""

import base64
import hashlib
import json
import logging
import time
from typing import Callable, Dict, MutableMapping, Optional, Tuple, Union

from cryptography.fernet import Fernet, InvalidToken

from .interfaces import ISessionStore

logger = logging.getLogger(__name__)

VaultMap = Dict[str, Tuple[str, int]]


class InMemorySessionStore:
    """Session store keeping the vault map in process memory."""

    def __init__(self):
        self._data: Optional[VaultMap] = None

    def load(self) -> Optional[VaultMap]:
        return dict(self._data) if self._data is not None else None

    def save(self, data: VaultMap) -> None:
        self._data = dict(data)


class EncryptedSessionStore:
    """
    Session store writing one Fernet-encrypted JSON blob into a host session.

    Args:
        session: Host session mapping (e.g. a web framework session)
        secret: Fernet key, or any passphrase to derive one from
        slot: Session key holding the blob
    """

    def __init__(self, session: MutableMapping, secret: Union[str, bytes], slot: str = "enigma_pass"):
        self.session = session
        self.slot = slot
        self._cipher = Fernet(self._derive_key(secret))

    @staticmethod
    def _derive_key(secret: Union[str, bytes]) -> bytes:
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        try:
            if len(base64.urlsafe_b64decode(secret)) == 32:
                return secret
        except ValueError:
            pass
        return base64.urlsafe_b64encode(hashlib.sha256(secret + b"enigma_pass").digest())

    def load(self) -> Optional[VaultMap]:
        blob = self.session.get(self.slot)
        if not blob:
            return None
        try:
            data = json.loads(self._cipher.decrypt(blob.encode("ascii")).decode("utf-8"))
        except (InvalidToken, ValueError) as e:
            logger.warning(f"Discarding unreadable password vault: {type(e).__name__}")
            return None
        return {key_id: (value[0], int(value[1])) for key_id, value in data.items()}

    def save(self, data: VaultMap) -> None:
        payload = json.dumps({key_id: list(value) for key_id, value in data.items()})
        self.session[self.slot] = self._cipher.encrypt(payload.encode("utf-8")).decode("ascii")


class PasswordVault:
    """Passphrases keyed by key id, purged ``ttl_seconds`` after capture."""

    def __init__(self, store: Optional[ISessionStore] = None, ttl_seconds: int = 0,
                 clock: Callable[[], float] = time.time):
        self.store = store if store is not None else InMemorySessionStore()
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def get_passwords(self) -> Dict[str, str]:
        """Return current passwords, deleting the expired ones first."""
        config = self.store.load() or {}
        threshold = self._clock() - self.ttl_seconds if self.ttl_seconds else 0
        keys = {}
        modified = False

        for key_id, (secret, captured_at) in list(config.items()):
            if threshold and captured_at < threshold:
                del config[key_id]
                modified = True
            else:
                keys[key_id] = secret

        if modified:
            logger.debug("Expired passwords removed from vault")
            self.store.save(config)

        return keys

    def save_password(self, key_id: str, password: str) -> None:
        """Store a password for a key, stamped with the capture time."""
        config = self.store.load() or {}
        config[key_id.upper()] = (password, int(self._clock()))
        self.store.save(config)

    def clear(self) -> None:
        """Forget all passwords (logout)."""
        self.store.save({})
