# ============================================================================
# email_crypto_engine/backend_gateway.py
# ============================================================================
"""
Per-scheme access to a crypto backend.

Every engine call into a backend goes through a BackendGateway, which
imports the sender's published keys first, feeds the vault passwords in,
strips non-ASCII bytes from armored input and logs relevant failures.
"""

import logging
from typing import Optional, Sequence, Set, Tuple

from .core.boundary_splitter import strip_non_ascii
from .data_models import BackendSignMode, Key, Signature, SignatureStatus
from .exceptions import CryptoEngineError, KeyNotFoundError, raise_error
from .interfaces import ICryptoBackend
from .key_discovery import KeyDiscovery
from .password_vault import PasswordVault

logger = logging.getLogger(__name__)


class BackendGateway:
    """Wraps one ICryptoBackend with the engine's pre- and post-processing."""

    def __init__(self, backend: ICryptoBackend, vault: PasswordVault,
                 discovery: Optional[KeyDiscovery] = None):
        self.backend = backend
        self.vault = vault
        self.discovery = discovery

    @property
    def scheme(self) -> str:
        return self.backend.scheme

    @property
    def armored(self) -> bool:
        return self.backend.scheme == "pgp"

    def capabilities(self) -> Set[str]:
        return self.backend.capabilities()

    def signature_algorithm(self) -> str:
        return self.backend.signature_algorithm()

    def _sync_sender(self, sender: Optional[str]) -> None:
        if sender and self.discovery is not None:
            self.discovery.sync_keys([sender])

    def verify(self, body: bytes, signature: Optional[bytes] = None,
               sender: Optional[str] = None) -> Signature:
        """Verify a signature; failures are returned as a Signature status."""
        self._sync_sender(sender)

        if signature is not None and self.armored:
            signature = strip_non_ascii(signature)

        try:
            return self.backend.verify(body, signature)
        except KeyNotFoundError as e:
            return Signature(status=SignatureStatus.KEY_NOT_FOUND, error=str(e))
        except CryptoEngineError as e:
            raise_error(e)
            return Signature(status=SignatureStatus.ERROR, error=str(e))

    def decrypt(self, body: bytes, sender: Optional[str] = None) -> Tuple[bytes, Optional[Signature]]:
        """
        Decrypt a body with the cached passwords.

        Raises:
            KeyNotFoundError, PasswordError, BackendFailureError
        """
        self._sync_sender(sender)

        if self.armored:
            body = strip_non_ascii(body)

        try:
            return self.backend.decrypt(body, self.vault.get_passwords())
        except KeyNotFoundError:
            raise
        except CryptoEngineError as e:
            raise_error(e)
            raise

    def sign(self, body: bytes, key: Key, mode: BackendSignMode) -> bytes:
        try:
            return self.backend.sign(body, key, mode)
        except KeyNotFoundError:
            raise
        except CryptoEngineError as e:
            raise_error(e)
            raise

    def encrypt(self, body: bytes, keys: Sequence[Key], sign_key: Optional[Key] = None) -> bytes:
        try:
            return self.backend.encrypt(body, keys, sign_key)
        except KeyNotFoundError:
            raise
        except CryptoEngineError as e:
            raise_error(e)
            raise
