import base64
import os
import sys

import pytest

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, ROOT_DIR)

from email_crypto_engine.config_manager import (
    EngineConfiguration, KeyDiscoveryConfiguration, PasswordConfiguration
)
from email_crypto_engine.core.mime_parser import parse_document
from email_crypto_engine.data_models import ComposedMessage, EncryptMode, SignMode
from email_crypto_engine.engine import SecurityEngine
from email_crypto_engine.exceptions import (
    BadPasswordError, KeyNotFoundError, MissingPasswordError
)
from email_crypto_engine.key_discovery import KeyDiscovery
from email_crypto_engine.password_vault import InMemorySessionStore

from conftest import ALICE_ID, BOB_ID, _unarmor


def make_message(**kwargs):
    headers = {
        "From": "Alice <alice@example.org>",
        "To": "Bob <bob@example.org>",
        "Subject": "Plans",
    }
    headers.update(kwargs.pop("headers", {}))
    return ComposedMessage(headers=headers, **kwargs)


def payload_of(armor):
    return _unarmor(b"MESSAGE", armor if isinstance(armor, bytes) else armor.encode())


# ----------------------------------------------------------------------
# Signing
# ----------------------------------------------------------------------

def test_clear_sign_plain_message(unlocked_engine):
    message = make_message(text_body="Meet at noon.\r\n")

    unlocked_engine.sign_message(message)

    assert message.text_body.startswith("-----BEGIN PGP SIGNED MESSAGE-----")
    assert "Meet at noon." in message.text_body
    assert message.container is None

    ctx = unlocked_engine.process_document(parse_document(message.as_bytes()))
    assert ctx.signatures[""].valid


def test_clear_sign_rewraps_flowed_text(unlocked_engine):
    long_line = " ".join(["word"] * 30)
    message = make_message(text_body="Hello \r\nthere\r\n" + long_line + "\r\n", format_flowed=True)

    unlocked_engine.sign_message(message, SignMode.BODY)

    assert not message.format_flowed
    text = message.text_body.split("-----BEGIN PGP SIGNATURE-----")[0]
    assert "Hello there" in text
    assert all(len(line) <= 72 for line in text.splitlines())
    assert len(text.splitlines()) > 4


def test_detached_sign_multipart(unlocked_engine):
    message = make_message(text_body="See attached", attachments=[])
    message.add_attachment(b"%PDF-1.4", "application/pdf", "plan.pdf")
    orig_body = message.get_orig_body()

    unlocked_engine.sign_message(message)

    assert message.container_type.startswith("multipart/signed")
    assert 'micalg="pgp-sha256"' in message.container_type
    assert orig_body in message.container

    doc = parse_document(message.as_bytes())
    assert doc.root.mimetype == "multipart/signed"
    ctx = unlocked_engine.process_document(doc)
    assert ctx.signatures[""].valid
    assert ctx.signatures["1"].valid


def test_sign_mime_mode_forces_detached(unlocked_engine):
    message = make_message(text_body="Short note")

    unlocked_engine.sign_message(message, SignMode.MIME)

    assert message.container is not None
    assert message.text_body == "Short note"


def test_sign_missing_password(engine):
    message = make_message(text_body="Meet at noon.")

    with pytest.raises(MissingPasswordError) as exc_info:
        engine.sign_message(message)

    assert exc_info.value.details == {"missing": {ALICE_ID: "Alice"}}
    assert message.text_body == "Meet at noon."
    assert message.container is None


def test_sign_bad_password(engine):
    engine.save_password(ALICE_ID, "wrong")
    message = make_message(text_body="Meet at noon.")

    with pytest.raises(BadPasswordError) as exc_info:
        engine.sign_message(message)

    assert exc_info.value.details == {"bad": {ALICE_ID: "Alice"}}
    assert message.text_body == "Meet at noon."


def test_sign_passwordless(backend):
    backend.passwords.pop(ALICE_ID)
    config = EngineConfiguration(
        passwords=PasswordConfiguration(password_time_minutes=0, passwordless=True)
    )
    engine = SecurityEngine(config, backend, session_store=InMemorySessionStore())
    message = make_message(text_body="Meet at noon.")

    engine.sign_message(message)
    assert "BEGIN PGP SIGNED MESSAGE" in message.text_body


def test_sign_unknown_sender(unlocked_engine):
    message = make_message(text_body="Hi", headers={"From": "carol@example.org"})

    with pytest.raises(KeyNotFoundError) as exc_info:
        unlocked_engine.sign_message(message)

    assert exc_info.value.details == {"missing": "carol@example.org"}


def test_sign_public_key_only_sender(unlocked_engine):
    message = make_message(text_body="Hi", headers={"From": "bob@example.org"})

    with pytest.raises(KeyNotFoundError):
        unlocked_engine.sign_message(message)


def test_sign_html_only_message_in_body_mode(unlocked_engine):
    message = make_message(html_body="<p>Meet at <b>noon</b>.</p>")

    unlocked_engine.sign_message(message, SignMode.BODY)

    assert message.html_body is None
    assert "BEGIN PGP SIGNED MESSAGE" in message.text_body
    assert "noon" in message.text_body
    assert "<b>" not in message.text_body


def test_signing_key_is_cached_without_password(unlocked_engine, backend):
    unlocked_engine.sign_message(make_message(text_body="one"))
    unlocked_engine.sign_message(make_message(text_body="two"))

    assert backend.list_calls == 1
    cached = unlocked_engine.find_key("alice@example.org", can_sign=True)
    assert cached.password is None


# ----------------------------------------------------------------------
# Encryption
# ----------------------------------------------------------------------

def test_encrypt_body_for_sender_and_recipients(unlocked_engine):
    message = make_message(text_body="Secret plans")

    unlocked_engine.encrypt_message(message, EncryptMode.BODY)

    payload = payload_of(message.text_body)
    assert payload["to"] == [ALICE_ID, BOB_ID]
    assert base64.b64decode(payload["data"]) == b"Secret plans"
    assert payload["signer"] is None


def test_encrypt_unknown_recipient_leaves_message(unlocked_engine):
    message = make_message(
        text_body="Secret plans",
        headers={"Cc": "Carol <carol@example.org>"},
    )

    with pytest.raises(KeyNotFoundError) as exc_info:
        unlocked_engine.encrypt_message(message)

    assert exc_info.value.details == {"missing": "carol@example.org"}
    assert message.text_body == "Secret plans"
    assert message.container is None


def test_encrypt_bcc_needs_a_key(unlocked_engine):
    message = make_message(text_body="Secret", headers={"Bcc": "dave@example.org"})

    with pytest.raises(KeyNotFoundError) as exc_info:
        unlocked_engine.encrypt_message(message)
    assert exc_info.value.details == {"missing": "dave@example.org"}


def test_encrypt_draft_for_sender_only(unlocked_engine):
    message = make_message(
        text_body="Draft",
        headers={"To": "Carol <carol@example.org>"},
    )

    unlocked_engine.encrypt_message(message, EncryptMode.BODY, is_draft=True)

    assert payload_of(message.text_body)["to"] == [ALICE_ID]


def test_encrypt_folds_duplicate_recipients(unlocked_engine):
    message = make_message(
        text_body="Secret",
        headers={"To": "Bob <bob@example.org>, ALICE@example.org", "Cc": "BOB@Example.org"},
    )

    unlocked_engine.encrypt_message(message, EncryptMode.BODY)

    assert payload_of(message.text_body)["to"] == [ALICE_ID, BOB_ID]


def test_encrypt_and_sign_body(unlocked_engine):
    message = make_message(text_body="Signed secret")

    unlocked_engine.encrypt_message(message, EncryptMode.BODY | EncryptMode.SIGN)

    assert message.text_body.startswith("-----BEGIN PGP MESSAGE-----")
    assert payload_of(message.text_body)["signer"] == ALICE_ID


def test_encrypt_and_sign_bad_password(engine):
    engine.save_password(ALICE_ID, "wrong")
    message = make_message(text_body="Signed secret")

    with pytest.raises(BadPasswordError) as exc_info:
        engine.encrypt_message(message, EncryptMode.BODY | EncryptMode.SIGN)

    assert exc_info.value.details == {"bad": {ALICE_ID: "Alice"}}
    assert message.text_body == "Signed secret"


def test_encrypt_mime_round_trip(unlocked_engine):
    message = make_message(text_body="See attached")
    message.add_attachment(b"%PDF-1.4", "application/pdf", "plan.pdf")

    unlocked_engine.encrypt_message(message)

    assert message.container_type.startswith("multipart/encrypted")
    doc = parse_document(message.as_bytes())
    ctx = unlocked_engine.process_document(doc)

    assert ctx.decryptions[""].success
    assert doc.root.mimetype == "multipart/mixed"
    assert doc.get("1").body.startswith(b"See attached")
    assert doc.get("2").filename == "plan.pdf"
    # top-level headers survive
    assert doc.root.headers["subject"] == "Plans"


def test_encrypt_mime_flag_on_plain_message(unlocked_engine):
    message = make_message(text_body="Short")

    unlocked_engine.encrypt_message(message, EncryptMode.MIME)

    assert message.container is not None
    assert message.text_body == "Short"


def test_encrypt_syncs_published_keys(backend):
    queried = []

    def resolver(fqdn):
        queried.append(fqdn)
        return []

    config = EngineConfiguration(
        passwords=PasswordConfiguration(password_time_minutes=0),
        key_discovery=KeyDiscoveryConfiguration(woat_enabled=True),
    )
    engine = SecurityEngine(config, backend, session_store=InMemorySessionStore(),
                            txt_resolver=resolver)
    message = make_message(text_body="Secret", headers={"To": "carol+news@example.net"})

    with pytest.raises(KeyNotFoundError):
        engine.encrypt_message(message)

    assert f"{KeyDiscovery.lookup_label('carol')}._woat.example.net" in queried


# ----------------------------------------------------------------------
# Public key attachment
# ----------------------------------------------------------------------

def test_attach_public_key(engine):
    message = make_message(text_body="My key")

    assert engine.attach_public_key(message)

    attachment = message.attachments[-1]
    assert attachment.filename == "0xAAAA0001.asc"
    assert attachment.content_type == "application/pgp-keys"
    assert ALICE_ID.encode() in attachment.data

    doc = parse_document(message.as_bytes())
    assert engine.is_keys_part(doc.get("2"))


def test_attach_public_key_unknown_sender(engine):
    message = make_message(text_body="My key", headers={"From": "carol@example.org"})

    assert not engine.attach_public_key(message)
    assert message.attachments == []


def test_attach_public_key_export_failure(engine, backend):
    def broken_export(*args, **kwargs):
        raise KeyNotFoundError("gone")

    backend.export_key = broken_export
    message = make_message(text_body="My key")

    assert not engine.attach_public_key(message)
    assert message.attachments == []
