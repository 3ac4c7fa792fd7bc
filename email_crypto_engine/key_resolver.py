# ============================================================================
# email_crypto_engine/key_resolver.py
# ============================================================================
"""
Key selection and key store management on top of a crypto backend.
"""

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .data_models import ImportResult, Key, KeyCapability, KeyType
from .exceptions import CryptoEngineError, raise_error
from .interfaces import ICryptoBackend

logger = logging.getLogger(__name__)


class KeyResolver:
    """
    Finds the best key for an address and proxies key management calls.

    Signing-key lookups are cached per address; encryption lookups always
    hit the backend.
    """

    def __init__(self, backend: ICryptoBackend, cache_ttl: int = 0,
                 clock: Callable[[], float] = time.time):
        self.backend = backend
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._cache: Dict[str, Tuple[Optional[Key], float]] = {}

    def _cached(self, email: str) -> Tuple[bool, Optional[Key]]:
        if email not in self._cache:
            return False, None
        key, stored_at = self._cache[email]
        if self.cache_ttl and self._clock() - stored_at > self.cache_ttl:
            del self._cache[email]
            return False, None
        return True, key

    def find_key(self, email: str, can_sign: bool = False) -> Optional[Key]:
        """
        Find the most recent usable key for an address.

        Args:
            email: Address the key must carry a valid user id for
            can_sign: Require a key pair with a signing subkey

        Returns:
            The key whose qualifying subkey was created last, or None
        """
        if can_sign:
            hit, key = self._cached(email)
            if hit:
                return key

        try:
            keys = self.backend.list_keys(email)
        except CryptoEngineError as e:
            raise_error(e)
            return None

        capability = KeyCapability.SIGN if can_sign else KeyCapability.ENCRYPT
        found = None
        found_created = None

        for key in keys:
            subkey = key.find_subkey(email, capability)
            if subkey is None:
                continue
            if can_sign and key.key_type is not KeyType.KEYPAIR:
                continue
            if found is None or subkey.created >= found_created:
                found = key
                found_created = subkey.created

        logger.debug(f"find_key({email}, can_sign={can_sign}): {found.id if found else None}")

        # saves one list_keys() call when signing and attaching a key
        if can_sign:
            self._cache[email] = (found, self._clock())

        return found

    def clear_cache(self) -> None:
        self._cache.clear()

    def list_keys(self, pattern: str = "") -> List[Key]:
        try:
            return self.backend.list_keys(pattern)
        except CryptoEngineError as e:
            raise_error(e)
            raise

    def get_key(self, key_id: str) -> Key:
        try:
            return self.backend.get_key(key_id)
        except CryptoEngineError as e:
            raise_error(e)
            raise

    def delete_key(self, key_id: str) -> bool:
        try:
            return self.backend.delete_key(key_id)
        except CryptoEngineError as e:
            raise_error(e)
            raise

    def generate_key(self, params: Dict[str, Any]) -> Key:
        try:
            return self.backend.generate_key(params)
        except CryptoEngineError as e:
            raise_error(e)
            raise

    def import_key(self, content: Union[bytes, str], is_file: bool = False,
                   passwords: Optional[Dict[str, str]] = None) -> ImportResult:
        """Import key material given as bytes or as a file name."""
        if is_file:
            content = Path(content).read_bytes()
        elif isinstance(content, str):
            content = content.encode("utf-8")

        try:
            result = self.backend.import_keys(content, passwords or {})
        except CryptoEngineError as e:
            raise_error(e)
            raise

        logger.info(f"Imported keys: {result.imported} new, {result.unchanged} unchanged")
        return result

    def export_key(self, key_id: str, include_private: bool = False,
                   passwords: Optional[Dict[str, str]] = None) -> bytes:
        try:
            return self.backend.export_key(key_id, include_private, passwords or {})
        except CryptoEngineError as e:
            raise_error(e)
            raise
