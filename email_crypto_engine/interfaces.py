# ============================================================================
# email_crypto_engine/interfaces.py
# ============================================================================
"""
Abstract interfaces for the email crypto engine.
The crypto backend and every host-provided service is injected through
these contracts so the engine never instantiates collaborators by name.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set, Tuple, runtime_checkable

from .data_models import BackendSignMode, ImportResult, Key, MimeNode, Signature


# ============================================================================
# Crypto Backend
# ============================================================================

class ICryptoBackend(ABC):
    """
    Interface for a PGP or S/MIME implementation.

    Fallible methods raise KeyNotFoundError, BadPasswordError or
    BackendFailureError.
    """

    scheme: str = "pgp"

    @abstractmethod
    def init(self) -> None:
        """Prepare the key store."""
        pass

    @abstractmethod
    def list_keys(self, pattern: str = "") -> List[Key]:
        """List keys matching an address, id or name pattern."""
        pass

    @abstractmethod
    def get_key(self, key_id: str) -> Key:
        """Return a single key by id."""
        pass

    @abstractmethod
    def delete_key(self, key_id: str) -> bool:
        """Delete a key (private part included)."""
        pass

    @abstractmethod
    def generate_key(self, params: Dict[str, Any]) -> Key:
        """Generate a new key pair."""
        pass

    @abstractmethod
    def import_keys(self, data: bytes, passwords: Optional[Dict[str, str]] = None) -> ImportResult:
        """Import armored or binary key material."""
        pass

    @abstractmethod
    def export_key(self, key_id: str, include_private: bool = False,
                   passwords: Optional[Dict[str, str]] = None) -> bytes:
        """Export a key in armored form."""
        pass

    @abstractmethod
    def sign(self, body: bytes, key: Key, mode: BackendSignMode) -> bytes:
        """Sign a body with ``key`` (its ``password`` set when required)."""
        pass

    @abstractmethod
    def verify(self, body: bytes, signature: Optional[bytes] = None) -> Signature:
        """Verify an inline signed body or a body with a detached signature."""
        pass

    @abstractmethod
    def encrypt(self, body: bytes, keys: Sequence[Key], sign_key: Optional[Key] = None) -> bytes:
        """Encrypt a body to all keys, optionally signing it."""
        pass

    @abstractmethod
    def decrypt(self, body: bytes, passwords: Dict[str, str]) -> Tuple[bytes, Optional[Signature]]:
        """Decrypt a body trying the cached passwords."""
        pass

    @abstractmethod
    def capabilities(self) -> Set[str]:
        """Feature flags supported by this backend."""
        pass

    def signature_algorithm(self) -> str:
        """Hash algorithm name used for signatures (micalg suffix)."""
        return "sha256"


# Capability flags reported by backends
CAPS_SIGN = "sign"
CAPS_VERIFY = "verify"
CAPS_ENCRYPT = "encrypt"
CAPS_DECRYPT = "decrypt"
CAPS_KEYGEN = "keygen"
CAPS_PASSWORD_CHANGE = "password_change"


# ============================================================================
# Host Protocols
# ============================================================================

@runtime_checkable
class ISessionStore(Protocol):
    """Persistence port for the password vault blob of one session."""

    def load(self) -> Optional[Dict[str, Tuple[str, int]]]:
        """Return the stored vault map or None."""
        ...

    def save(self, data: Dict[str, Tuple[str, int]]) -> None:
        """Persist the whole vault map."""
        ...


@runtime_checkable
class IBodyFetcher(Protocol):
    """Host storage access for bodies that are not in memory."""

    def fetch_part(self, uid: Optional[str], node: MimeNode) -> Optional[bytes]:
        """Fetch the (transfer-decoded) body of a part."""
        ...


@runtime_checkable
class ITxtResolver(Protocol):
    """DNS TXT lookup used by key discovery."""

    def __call__(self, fqdn: str) -> List[str]:
        """Return the TXT strings published at ``fqdn``."""
        ...
