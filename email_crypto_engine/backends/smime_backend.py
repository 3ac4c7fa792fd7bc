# ============================================================================
# email_crypto_engine/backends/smime_backend.py
# ============================================================================
"""
S/MIME backend on the cryptography PKCS#7 primitives.

Certificates and private keys live in a per-user directory as
``<fingerprint>.crt`` and ``<fingerprint>.key`` PEM files. Private keys keep
the protection they were imported or generated with.
"""

import datetime
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs7, pkcs12
from cryptography.x509.oid import NameOID

from ..data_models import BackendSignMode, ImportResult, Key, Signature, SubKey, UserId
from ..exceptions import (
    BackendFailureError, BadPasswordError, KeyNotFoundError, MissingPasswordError,
    handle_processing_errors
)
from ..interfaces import CAPS_DECRYPT, CAPS_ENCRYPT, CAPS_KEYGEN, CAPS_SIGN, ICryptoBackend

logger = logging.getLogger(__name__)

PEM_PRIVATE_KEY = re.compile(
    rb"-----BEGIN (?:ENCRYPTED |RSA |EC )?PRIVATE KEY-----.+?-----END (?:ENCRYPTED |RSA |EC )?PRIVATE KEY-----\r?\n?",
    re.DOTALL
)


def _fingerprint(cert: x509.Certificate) -> str:
    return cert.fingerprint(hashes.SHA1()).hex().upper()


def _public_bytes(public_key) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )


class SMIMEBackend(ICryptoBackend):
    """ICryptoBackend implementation for X.509 certificates."""

    scheme = "smime"

    def __init__(self, homedir: str):
        self.homedir = Path(homedir)

    def init(self) -> None:
        try:
            os.makedirs(self.homedir, mode=0o700, exist_ok=True)
        except OSError as e:
            raise BackendFailureError(
                f"Unable to initialize S/MIME store in {self.homedir}: {e}",
                {"homedir": str(self.homedir)},
                e
            ) from e

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def _cert_path(self, key_id: str) -> Path:
        return self.homedir / f"{key_id.upper()}.crt"

    def _key_path(self, key_id: str) -> Path:
        return self.homedir / f"{key_id.upper()}.key"

    def _load_cert(self, key_id: str) -> x509.Certificate:
        path = self._cert_path(key_id)
        if not path.exists():
            raise KeyNotFoundError(f"Certificate {key_id} not found", {"key_id": key_id})
        return x509.load_pem_x509_certificate(path.read_bytes())

    def _load_private_key(self, key_id: str, password: Optional[str]):
        path = self._key_path(key_id)
        if not path.exists():
            raise KeyNotFoundError(f"No private key for {key_id}", {"key_id": key_id})
        return self._unlock(path.read_bytes(), key_id, password)

    @staticmethod
    def _unlock(pem: bytes, key_id: str, password: Optional[str]):
        secret = password.encode("utf-8") if password else None
        try:
            return serialization.load_pem_private_key(pem, secret)
        except TypeError as e:
            if secret is not None:
                # key is not protected
                return serialization.load_pem_private_key(pem, None)
            raise MissingPasswordError(
                f"Password required for key {key_id}", {"missing": {key_id: key_id}}, e
            ) from e
        except ValueError as e:
            raise BadPasswordError(
                f"Bad password for key {key_id}", {"bad": {key_id: key_id}}, e
            ) from e

    def _build_key(self, cert: x509.Certificate) -> Key:
        key_id = _fingerprint(cert)

        names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        name = str(names[0].value) if names else cert.subject.rfc4514_string()

        emails = [str(attr.value) for attr in cert.subject.get_attributes_for_oid(NameOID.EMAIL_ADDRESS)]
        try:
            san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
            emails.extend(san.value.get_values_for_type(x509.RFC822Name))
        except x509.ExtensionNotFound:
            pass

        can_sign = can_encrypt = True
        try:
            usage = cert.extensions.get_extension_for_class(x509.KeyUsage).value
            can_sign = usage.digital_signature
            can_encrypt = usage.key_encipherment
        except x509.ExtensionNotFound:
            pass

        subkey = SubKey(
            id=key_id,
            fingerprint=key_id,
            can_sign=can_sign,
            can_encrypt=can_encrypt,
            created=int(cert.not_valid_before_utc.timestamp()),
            expires=int(cert.not_valid_after_utc.timestamp()),
            has_private=self._key_path(key_id).exists(),
        )
        users = [UserId(name=name, email=email) for email in dict.fromkeys(emails)]
        return Key(id=key_id, name=name, users=users, subkeys=[subkey])

    def _store(self, cert: x509.Certificate, key_pem: Optional[bytes] = None) -> Tuple[bool, bool]:
        key_id = _fingerprint(cert)
        cert_path = self._cert_path(key_id)
        cert_new = not cert_path.exists()
        if cert_new:
            cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))

        key_new = False
        if key_pem is not None and not self._key_path(key_id).exists():
            self._key_path(key_id).write_bytes(key_pem)
            os.chmod(self._key_path(key_id), 0o600)
            key_new = True
        return cert_new, key_new

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @handle_processing_errors("smime list_keys")
    def list_keys(self, pattern: str = "") -> List[Key]:
        pattern = (pattern or "").lower()
        keys = []
        for path in sorted(self.homedir.glob("*.crt")):
            key = self._build_key(x509.load_pem_x509_certificate(path.read_bytes()))
            haystack = [key.id.lower(), key.name.lower()] + [u.email.lower() for u in key.users]
            if not pattern or any(pattern in item for item in haystack):
                keys.append(key)
        return keys

    @handle_processing_errors("smime get_key")
    def get_key(self, key_id: str) -> Key:
        return self._build_key(self._load_cert(key_id))

    @handle_processing_errors("smime delete_key")
    def delete_key(self, key_id: str) -> bool:
        cert_path = self._cert_path(key_id)
        if not cert_path.exists():
            raise KeyNotFoundError(f"Certificate {key_id} not found", {"key_id": key_id})
        cert_path.unlink()
        if self._key_path(key_id).exists():
            self._key_path(key_id).unlink()
        return True

    @handle_processing_errors("smime generate_key")
    def generate_key(self, params: Dict[str, Any]) -> Key:
        """Create a self-signed certificate for ``params['email']``."""
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=params.get("key_length", 2048))
        name = params.get("name") or params.get("email", "")
        subject = x509.Name([
            x509.NameAttribute(NameOID.COMMON_NAME, name),
            x509.NameAttribute(NameOID.EMAIL_ADDRESS, params.get("email", "")),
        ])
        now = datetime.datetime.now(datetime.timezone.utc)

        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(private_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + datetime.timedelta(days=params.get("days", 365)))
            .add_extension(x509.SubjectAlternativeName([x509.RFC822Name(params.get("email", ""))]), critical=False)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True, content_commitment=False, key_encipherment=True,
                    data_encipherment=False, key_agreement=False, key_cert_sign=False,
                    crl_sign=False, encipher_only=False, decipher_only=False
                ),
                critical=True
            )
            .sign(private_key, hashes.SHA256())
        )

        password = params.get("password")
        encryption = (
            serialization.BestAvailableEncryption(password.encode("utf-8"))
            if password else serialization.NoEncryption()
        )
        key_pem = private_key.private_bytes(
            serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, encryption
        )

        self._store(cert, key_pem)
        logger.info(f"Generated certificate {_fingerprint(cert)} for {params.get('email')}")
        return self._build_key(cert)

    @handle_processing_errors("smime import_keys")
    def import_keys(self, data: bytes, passwords: Optional[Dict[str, str]] = None) -> ImportResult:
        """Import PEM certificates and keys, a DER certificate or a PKCS#12 bundle."""
        candidates = [None] + list((passwords or {}).values())
        pairs: List[Tuple[x509.Certificate, Optional[bytes]]] = []

        if b"-----BEGIN" in data:
            certs = x509.load_pem_x509_certificates(data) if b"CERTIFICATE-----" in data else []
            unlocked = []
            for pem in PEM_PRIVATE_KEY.findall(data):
                for password in candidates:
                    try:
                        unlocked.append((pem, self._unlock(pem, "import", password)))
                        break
                    except (MissingPasswordError, BadPasswordError):
                        continue

            for cert in certs:
                key_pem = None
                for pem, private_key in unlocked:
                    if _public_bytes(private_key.public_key()) == _public_bytes(cert.public_key()):
                        key_pem = pem
                pairs.append((cert, key_pem))
        else:
            try:
                pairs.append((x509.load_der_x509_certificate(data), None))
            except ValueError:
                pairs.extend(self._load_pkcs12(data, candidates))

        result = ImportResult()
        for cert, key_pem in pairs:
            cert_new, key_new = self._store(cert, key_pem)
            result.fingerprints.append(_fingerprint(cert))
            if cert_new:
                result.public_imported += 1
            else:
                result.public_unchanged += 1
            if key_pem is not None:
                if key_new:
                    result.private_imported += 1
                else:
                    result.private_unchanged += 1
        return result

    @staticmethod
    def _load_pkcs12(data: bytes, candidates: Sequence[Optional[str]]):
        for password in candidates:
            try:
                private_key, cert, _ = pkcs12.load_key_and_certificates(
                    data, password.encode("utf-8") if password else None
                )
            except ValueError:
                continue
            if cert is None:
                return []
            key_pem = None
            if private_key is not None:
                encryption = (
                    serialization.BestAvailableEncryption(password.encode("utf-8"))
                    if password else serialization.NoEncryption()
                )
                key_pem = private_key.private_bytes(
                    serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, encryption
                )
            return [(cert, key_pem)]
        raise BadPasswordError("Unable to open PKCS#12 bundle", {"bad": {}})

    @handle_processing_errors("smime export_key")
    def export_key(self, key_id: str, include_private: bool = False,
                   passwords: Optional[Dict[str, str]] = None) -> bytes:
        data = self._load_cert(key_id).public_bytes(serialization.Encoding.PEM)
        if include_private and self._key_path(key_id).exists():
            data += self._key_path(key_id).read_bytes()
        return data

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _signed(self, body: bytes, key: Key, encoding, options) -> bytes:
        cert = self._load_cert(key.id)
        private_key = self._load_private_key(key.id, key.password)
        return (
            pkcs7.PKCS7SignatureBuilder()
            .set_data(body)
            .add_signer(cert, private_key, hashes.SHA256())
            .sign(encoding, options)
        )

    @handle_processing_errors("smime sign")
    def sign(self, body: bytes, key: Key, mode: BackendSignMode) -> bytes:
        if mode is BackendSignMode.DETACHED:
            return self._signed(body, key, serialization.Encoding.DER, [pkcs7.PKCS7Options.DetachedSignature])
        if mode is BackendSignMode.CLEAR:
            return self._signed(body, key, serialization.Encoding.SMIME, [pkcs7.PKCS7Options.DetachedSignature])
        return self._signed(body, key, serialization.Encoding.DER, [])

    def verify(self, body: bytes, signature: Optional[bytes] = None) -> Signature:
        raise BackendFailureError("S/MIME signature verification is not supported")

    @handle_processing_errors("smime encrypt")
    def encrypt(self, body: bytes, keys: Sequence[Key], sign_key: Optional[Key] = None) -> bytes:
        if sign_key is not None:
            body = self._signed(body, sign_key, serialization.Encoding.SMIME, [pkcs7.PKCS7Options.DetachedSignature])

        builder = pkcs7.PKCS7EnvelopeBuilder().set_data(body)
        for key in keys:
            builder = builder.add_recipient(self._load_cert(key.id))
        return builder.encrypt(serialization.Encoding.DER, [])

    @handle_processing_errors("smime decrypt")
    def decrypt(self, body: bytes, passwords: Dict[str, str]) -> Tuple[bytes, Optional[Signature]]:
        decrypt_func = pkcs7.pkcs7_decrypt_pem if body.lstrip().startswith(b"-----BEGIN") else pkcs7.pkcs7_decrypt_der

        locked = None
        for key in self.list_keys():
            if not key.subkeys[0].has_private:
                continue
            try:
                private_key = self._load_private_key(key.id, passwords.get(key.id))
            except (MissingPasswordError, BadPasswordError) as e:
                locked = locked or e
                continue
            try:
                return decrypt_func(body, self._load_cert(key.id), private_key, []), None
            except ValueError:
                # not a recipient
                continue

        if locked is not None:
            raise locked
        raise KeyNotFoundError("No certificate to decrypt the message")

    def capabilities(self) -> Set[str]:
        return {CAPS_SIGN, CAPS_ENCRYPT, CAPS_DECRYPT, CAPS_KEYGEN}
