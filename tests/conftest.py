import base64
import hashlib
import json
import os
import sys

import pytest

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, ROOT_DIR)

from email_crypto_engine.config_manager import EngineConfiguration, PasswordConfiguration
from email_crypto_engine.data_models import (
    BackendSignMode, ImportResult, Key, Signature, SignatureStatus, SubKey, UserId
)
from email_crypto_engine.engine import SecurityEngine
from email_crypto_engine.exceptions import (
    BackendFailureError, BadPasswordError, KeyNotFoundError, MissingPasswordError
)
from email_crypto_engine.interfaces import (
    CAPS_DECRYPT, CAPS_ENCRYPT, CAPS_KEYGEN, CAPS_SIGN, CAPS_VERIFY, ICryptoBackend
)
from email_crypto_engine.password_vault import InMemorySessionStore

ALICE_ID = "AAAA0000AAAA0001"
BOB_ID = "BBBB0000BBBB0002"


def make_key(key_id, email, created=1000, can_sign=True, can_encrypt=True,
             private=False, name=None):
    subkey = SubKey(
        id=key_id,
        fingerprint=key_id * 2,
        can_sign=can_sign,
        can_encrypt=can_encrypt,
        created=created,
        has_private=private,
    )
    return Key(id=key_id, name=name or email, users=[UserId(name=name or email, email=email)],
               subkeys=[subkey])


def _canonical(body):
    lines = body.replace(b"\r\n", b"\n").split(b"\n")
    return b"\n".join(line.rstrip() for line in lines).strip(b"\n")


def _armor(kind, payload):
    return (
        b"-----BEGIN PGP " + kind + b"-----\n\n"
        + base64.b64encode(json.dumps(payload).encode()) + b"\n"
        + b"-----END PGP " + kind + b"-----\n"
    )


def _unarmor(kind, data):
    begin = b"-----BEGIN PGP " + kind + b"-----"
    end = b"-----END PGP " + kind + b"-----"
    start = data.find(begin)
    stop = data.find(end)
    if start < 0 or stop < 0:
        raise BackendFailureError(f"No {kind.decode()} block")
    lines = [line.strip() for line in data[start + len(begin):stop].splitlines() if line.strip()]
    try:
        return json.loads(base64.b64decode(b"".join(lines)))
    except ValueError as e:
        raise BackendFailureError(f"Garbled {kind.decode()} block", original_exception=e)


class FakeBackend(ICryptoBackend):
    """In-memory backend producing self-describing fake armor."""

    def __init__(self, scheme="pgp", caps=None):
        self.scheme = scheme
        self.keys = {}
        self.passwords = {}
        self.caps = caps if caps is not None else {CAPS_SIGN, CAPS_VERIFY, CAPS_ENCRYPT, CAPS_DECRYPT, CAPS_KEYGEN}
        self.list_calls = 0
        self.imported = []
        self.init_calls = 0
        self.fail_init = False

    def add_key(self, key, password=None):
        self.keys[key.id] = key
        if password is not None:
            self.passwords[key.id] = password
        return key

    def init(self):
        self.init_calls += 1
        if self.fail_init:
            raise BackendFailureError("init failed")

    def list_keys(self, pattern=""):
        self.list_calls += 1
        pattern = (pattern or "").lower()
        return [
            key for key in self.keys.values()
            if not pattern or pattern in key.id.lower()
            or any(pattern in user.email.lower() for user in key.users)
        ]

    def get_key(self, key_id):
        if key_id not in self.keys:
            raise KeyNotFoundError(f"Key {key_id} not found")
        return self.keys[key_id]

    def delete_key(self, key_id):
        self.get_key(key_id)
        del self.keys[key_id]
        return True

    def generate_key(self, params):
        key_id = hashlib.sha1(params["email"].encode()).hexdigest()[:16].upper()
        return self.add_key(make_key(key_id, params["email"], private=True, name=params.get("name")),
                            params.get("password"))

    def import_keys(self, data, passwords=None):
        self.imported.append(data)
        return ImportResult(public_imported=len(data.splitlines()), public_unchanged=1)

    def export_key(self, key_id, include_private=False, passwords=None):
        self.get_key(key_id)
        return (b"-----BEGIN PGP PUBLIC KEY BLOCK-----\n\n" + key_id.encode()
                + b"\n-----END PGP PUBLIC KEY BLOCK-----\n")

    def _check_password(self, key_id, supplied):
        required = self.passwords.get(key_id)
        if required is None:
            return
        if supplied is None:
            raise MissingPasswordError("password required", {"missing": {key_id: key_id}})
        if supplied != required:
            raise BadPasswordError("bad password", {"bad": {key_id: key_id}})

    def _signature_payload(self, body, key):
        return {"key": key.id, "digest": hashlib.sha256(_canonical(body)).hexdigest()}

    def sign(self, body, key, mode):
        if key.id not in self.keys:
            raise KeyNotFoundError("unknown signing key")
        self._check_password(key.id, key.password)

        signature = _armor(b"SIGNATURE", self._signature_payload(body, key))
        if mode is BackendSignMode.CLEAR:
            text = body.replace(b"\n-", b"\n- -")
            if text.startswith(b"-"):
                text = b"- " + text
            return (b"-----BEGIN PGP SIGNED MESSAGE-----\nHash: SHA256\n\n"
                    + text.rstrip(b"\r\n") + b"\n" + signature)
        return signature

    def verify(self, body, signature=None):
        if signature is None:
            head, sep, rest = body.partition(b"\n\n")
            if not sep:
                head, sep, rest = body.partition(b"\r\n\r\n")
            cut = rest.find(b"-----BEGIN PGP SIGNATURE-----")
            text = rest[:cut].replace(b"\n- ", b"\n")
            if text.startswith(b"- "):
                text = text[2:]
            signature = rest[cut:]
            body = text

        payload = _unarmor(b"SIGNATURE", signature)
        key = self.keys.get(payload["key"])
        if key is None:
            return Signature(status=SignatureStatus.KEY_NOT_FOUND, key_id=payload["key"])
        if payload["digest"] != hashlib.sha256(_canonical(body)).hexdigest():
            return Signature(status=SignatureStatus.INVALID, key_id=key.id, name=key.name)
        return Signature(status=SignatureStatus.VALID, key_id=key.id, name=key.name)

    def encrypt(self, body, keys, sign_key=None):
        if sign_key is not None:
            self._check_password(sign_key.id, sign_key.password)
        return _armor(b"MESSAGE", {
            "to": [key.id for key in keys],
            "data": base64.b64encode(body).decode(),
            "signer": sign_key.id if sign_key else None,
        })

    def decrypt(self, body, passwords):
        payload = _unarmor(b"MESSAGE", body)
        own = [
            key_id for key_id in payload["to"]
            if key_id in self.keys and self.keys[key_id].subkeys[0].has_private
        ]
        if not own:
            raise KeyNotFoundError("no secret key")
        self._check_password(own[0], passwords.get(own[0]))

        signature = None
        if payload["signer"]:
            signature = Signature(status=SignatureStatus.VALID, key_id=payload["signer"])
        return base64.b64decode(payload["data"]), signature

    def capabilities(self):
        return set(self.caps)


@pytest.fixture
def backend():
    fake = FakeBackend()
    fake.add_key(make_key(ALICE_ID, "alice@example.org", private=True, name="Alice"), "secret")
    fake.add_key(make_key(BOB_ID, "bob@example.org", name="Bob"))
    return fake


@pytest.fixture
def config():
    return EngineConfiguration(passwords=PasswordConfiguration(password_time_minutes=0))


@pytest.fixture
def engine(backend, config):
    return SecurityEngine(config, backend, session_store=InMemorySessionStore())


@pytest.fixture
def unlocked_engine(engine):
    engine.save_password(ALICE_ID, "secret")
    return engine
