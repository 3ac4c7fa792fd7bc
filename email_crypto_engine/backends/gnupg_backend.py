# ============================================================================
# email_crypto_engine/backends/gnupg_backend.py
# ============================================================================
"""
OpenPGP backend on python-gnupg.

One GnuPG home directory per user. Passphrases are passed with loopback
pinentry, so no agent prompt is ever shown.
"""

import logging
import os
import tempfile
from email.utils import parseaddr
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import gnupg

from ..data_models import BackendSignMode, ImportResult, Key, Signature, SignatureStatus, SubKey, UserId
from ..exceptions import (
    BackendFailureError, BadPasswordError, KeyNotFoundError, MissingPasswordError,
    handle_processing_errors
)
from ..interfaces import CAPS_DECRYPT, CAPS_ENCRYPT, CAPS_KEYGEN, CAPS_SIGN, CAPS_VERIFY, ICryptoBackend

logger = logging.getLogger(__name__)

DIGEST_ARGS = ["--digest-algo", "SHA256"]

INVALID_TRUST = ("r", "e", "i")


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class GnuPGBackend(ICryptoBackend):
    """ICryptoBackend implementation driving the gpg binary."""

    scheme = "pgp"

    def __init__(self, homedir: str, gpg_binary: str = "gpg"):
        self.homedir = homedir
        self.gpg_binary = gpg_binary
        self.gpg: Optional[gnupg.GPG] = None

    def init(self) -> None:
        try:
            os.makedirs(self.homedir, mode=0o700, exist_ok=True)
            self.gpg = gnupg.GPG(gnupghome=self.homedir, gpgbinary=self.gpg_binary)
        except (OSError, ValueError) as e:
            raise BackendFailureError(
                f"Unable to initialize GnuPG in {self.homedir}: {e}",
                {"homedir": self.homedir},
                e
            ) from e
        self.gpg.encoding = "utf-8"
        logger.debug(f"GnuPG initialized in {self.homedir}")

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    def _raise_for_result(self, result: Any, context: str, key_id: Optional[str] = None):
        status = (getattr(result, "status", None) or "").lower()
        stderr = getattr(result, "stderr", "") or ""
        details = {"status": status}
        key_id = key_id or getattr(result, "key_id", None)

        if "bad passphrase" in status or "BAD_PASSPHRASE" in stderr:
            raise BadPasswordError(f"{context}: bad passphrase", {"bad": {key_id: key_id}} if key_id else details)
        if "need passphrase" in status or "MISSING_PASSPHRASE" in stderr:
            raise MissingPasswordError(
                f"{context}: passphrase required",
                {"missing": {key_id: key_id}} if key_id else details
            )
        if "no secret key" in status or "NO_SECKEY" in stderr or "secret key not available" in stderr:
            raise KeyNotFoundError(f"{context}: no secret key", details)
        if "invalid recipient" in status or "INV_RECP" in stderr:
            raise KeyNotFoundError(f"{context}: invalid recipient", details)

        raise BackendFailureError(f"{context} failed: {status or 'unknown error'}", details)

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _secret_fingerprints(self, pattern: Optional[str]) -> Set[str]:
        fingerprints = set()
        for data in self.gpg.list_keys(True, keys=pattern):
            fingerprints.add(data.get("fingerprint"))
            for subkey in data.get("subkeys", []):
                if len(subkey) > 2 and subkey[2]:
                    fingerprints.add(subkey[2])
        return fingerprints

    def _build_key(self, data: Dict[str, Any], secret: Set[str]) -> Key:
        trust = data.get("trust", "")
        valid = trust not in INVALID_TRUST
        users = []
        for uid in data.get("uids", []):
            name, email = parseaddr(uid)
            users.append(UserId(name=name or uid, email=email, valid=valid))

        cap = data.get("cap", "")
        primary_fpr = data.get("fingerprint", "")
        subkeys = [SubKey(
            id=data.get("keyid", ""),
            fingerprint=primary_fpr,
            can_sign="s" in cap,
            can_encrypt="e" in cap,
            created=_to_int(data.get("date")) or 0,
            expires=_to_int(data.get("expires")),
            revoked=trust == "r",
            has_private=primary_fpr in secret,
        )]

        subkey_info = data.get("subkey_info", {})
        for entry in data.get("subkeys", []):
            subkey_id = entry[0]
            subkey_cap = entry[1] if len(entry) > 1 else ""
            fingerprint = entry[2] if len(entry) > 2 else ""
            info = subkey_info.get(subkey_id, {})
            subkeys.append(SubKey(
                id=subkey_id,
                fingerprint=fingerprint or "",
                can_sign="s" in subkey_cap,
                can_encrypt="e" in subkey_cap,
                created=_to_int(info.get("date")) or 0,
                expires=_to_int(info.get("expires")),
                revoked=info.get("trust") == "r" or trust == "r",
                has_private=(fingerprint in secret) if fingerprint else primary_fpr in secret,
            ))

        return Key(
            id=data.get("keyid", ""),
            name=users[0].name if users else "",
            users=users,
            subkeys=subkeys,
        )

    @handle_processing_errors("gnupg list_keys")
    def list_keys(self, pattern: str = "") -> List[Key]:
        pattern = pattern or None
        secret = self._secret_fingerprints(pattern)
        return [self._build_key(data, secret) for data in self.gpg.list_keys(keys=pattern)]

    @handle_processing_errors("gnupg get_key")
    def get_key(self, key_id: str) -> Key:
        keys = self.list_keys(key_id)
        if not keys:
            raise KeyNotFoundError(f"Key {key_id} not found", {"key_id": key_id})
        return keys[0]

    @handle_processing_errors("gnupg delete_key")
    def delete_key(self, key_id: str) -> bool:
        key = self.get_key(key_id)
        fingerprint = key.subkeys[0].fingerprint or key.id

        if any(subkey.has_private for subkey in key.subkeys):
            result = self.gpg.delete_keys(fingerprint, secret=True, expect_passphrase=False)
            if str(result) != "ok":
                self._raise_for_result(result, "Secret key deletion", key.id)

        result = self.gpg.delete_keys(fingerprint)
        if str(result) != "ok":
            self._raise_for_result(result, "Key deletion", key.id)
        return True

    @handle_processing_errors("gnupg generate_key")
    def generate_key(self, params: Dict[str, Any]) -> Key:
        """
        Generate an RSA key pair with an encryption subkey.

        Args:
            params: ``name``, ``email``, optional ``password`` and ``key_length``
        """
        options = {
            "key_type": params.get("key_type", "RSA"),
            "key_length": params.get("key_length", 3072),
            "key_usage": "sign",
            "subkey_type": params.get("key_type", "RSA"),
            "subkey_length": params.get("key_length", 3072),
            "subkey_usage": "encrypt",
            "name_real": params.get("name", ""),
            "name_email": params.get("email", ""),
            "expire_date": params.get("expires", 0),
        }
        if params.get("password"):
            options["passphrase"] = params["password"]
        else:
            options["no_protection"] = True

        result = self.gpg.gen_key(self.gpg.gen_key_input(**options))
        if not result.fingerprint:
            self._raise_for_result(result, "Key generation")

        logger.info(f"Generated key {result.fingerprint} for {params.get('email')}")
        return self.get_key(result.fingerprint)

    @handle_processing_errors("gnupg import_keys")
    def import_keys(self, data: bytes, passwords: Optional[Dict[str, str]] = None) -> ImportResult:
        result = self.gpg.import_keys(data)
        public_imported = getattr(result, "imported", 0) or 0
        private_imported = getattr(result, "sec_imported", 0) or 0
        return ImportResult(
            public_imported=public_imported,
            private_imported=private_imported,
            public_unchanged=getattr(result, "unchanged", 0) or 0,
            private_unchanged=getattr(result, "sec_dups", 0) or 0,
            fingerprints=[fp for fp in getattr(result, "fingerprints", []) if fp],
        )

    @handle_processing_errors("gnupg export_key")
    def export_key(self, key_id: str, include_private: bool = False,
                   passwords: Optional[Dict[str, str]] = None) -> bytes:
        if include_private:
            passphrase = (passwords or {}).get(key_id.upper())
            armor = self.gpg.export_keys(
                key_id, secret=True, passphrase=passphrase,
                expect_passphrase=passphrase is not None
            )
            public = self.gpg.export_keys(key_id)
            armor = (public or "") + (armor or "")
        else:
            armor = self.gpg.export_keys(key_id)

        if not armor:
            raise KeyNotFoundError(f"Key {key_id} not found", {"key_id": key_id})
        return armor.encode("ascii") if isinstance(armor, str) else armor

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    @staticmethod
    def _signature_from(result: Any) -> Signature:
        status = (getattr(result, "status", None) or "").lower()
        if result.valid:
            sig_status = SignatureStatus.VALID
        elif "no public key" in status:
            sig_status = SignatureStatus.KEY_NOT_FOUND
        elif "signature bad" in status:
            sig_status = SignatureStatus.INVALID
        else:
            sig_status = SignatureStatus.ERROR

        return Signature(
            status=sig_status,
            key_id=getattr(result, "key_id", None),
            fingerprint=getattr(result, "fingerprint", None),
            name=getattr(result, "username", None),
            error=None if result.valid else status or None,
        )

    @handle_processing_errors("gnupg sign")
    def sign(self, body: bytes, key: Key, mode: BackendSignMode) -> bytes:
        result = self.gpg.sign(
            body,
            keyid=key.id,
            passphrase=key.password,
            clearsign=mode is BackendSignMode.CLEAR,
            detach=mode is BackendSignMode.DETACHED,
            extra_args=DIGEST_ARGS,
        )
        if not result.data:
            self._raise_for_result(result, "Signing", key.id)
        return result.data

    @handle_processing_errors("gnupg verify")
    def verify(self, body: bytes, signature: Optional[bytes] = None) -> Signature:
        if signature is None:
            return self._signature_from(self.gpg.verify(body))

        fd, sig_path = tempfile.mkstemp(prefix="enigma", suffix=".asc")
        try:
            with os.fdopen(fd, "wb") as sig_file:
                sig_file.write(signature)
            return self._signature_from(self.gpg.verify_data(sig_path, body))
        finally:
            os.unlink(sig_path)

    @handle_processing_errors("gnupg encrypt")
    def encrypt(self, body: bytes, keys: Sequence[Key], sign_key: Optional[Key] = None) -> bytes:
        recipients = [key.subkeys[0].fingerprint if key.subkeys else key.id for key in keys]
        result = self.gpg.encrypt(
            body,
            recipients,
            sign=sign_key.id if sign_key else None,
            passphrase=sign_key.password if sign_key else None,
            always_trust=True,
            armor=True,
            extra_args=DIGEST_ARGS if sign_key else None,
        )
        if not result.ok:
            self._raise_for_result(result, "Encryption", sign_key.id if sign_key else None)
        return result.data

    @handle_processing_errors("gnupg decrypt")
    def decrypt(self, body: bytes, passwords: Dict[str, str]) -> Tuple[bytes, Optional[Signature]]:
        candidates = list(passwords.values()) or [None]
        result = None

        for passphrase in candidates:
            result = self.gpg.decrypt(body, passphrase=passphrase)
            if result.ok:
                break
            status = (result.status or "").lower()
            if "bad passphrase" not in status and "BAD_PASSPHRASE" not in (result.stderr or ""):
                break

        if not result.ok:
            if not passwords and getattr(result, "key_id", None):
                # a protected key without cached password
                status = (result.status or "").lower()
                if "no secret key" not in status and "NO_SECKEY" not in (result.stderr or ""):
                    raise MissingPasswordError(
                        "Decryption: passphrase required",
                        {"missing": {result.key_id: result.key_id}}
                    )
            self._raise_for_result(result, "Decryption")

        signature = None
        if result.valid:
            signature = self._signature_from(result)
        elif getattr(result, "username", None):
            signature = Signature(
                status=SignatureStatus.INVALID,
                key_id=getattr(result, "key_id", None),
                name=result.username,
            )
        return result.data, signature

    def capabilities(self) -> Set[str]:
        return {CAPS_SIGN, CAPS_VERIFY, CAPS_ENCRYPT, CAPS_DECRYPT, CAPS_KEYGEN}

    def signature_algorithm(self) -> str:
        return "sha256"
