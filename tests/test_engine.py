import os
import sys

import pytest

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, ROOT_DIR)

from email_crypto_engine import create_engine
from email_crypto_engine.backends import GnuPGBackend, SMIMEBackend
from email_crypto_engine.config_manager import (
    BackendConfiguration, EngineConfiguration, PasswordConfiguration
)
from email_crypto_engine.data_models import MimeNode
from email_crypto_engine.engine import SecurityEngine
from email_crypto_engine.exceptions import BackendFailureError, ConfigurationError
from email_crypto_engine.interfaces import CAPS_KEYGEN, CAPS_PASSWORD_CHANGE, CAPS_SIGN
from email_crypto_engine.password_vault import InMemorySessionStore

from conftest import ALICE_ID, FakeBackend


def backend_config(tmp_path, **kwargs):
    return EngineConfiguration(backend=BackendConfiguration(
        pgp_homedir=str(tmp_path / "pgp"),
        smime_homedir=str(tmp_path / "smime"),
        **kwargs
    ))


def test_create_engine_unknown_driver(tmp_path):
    with pytest.raises(ConfigurationError) as exc_info:
        create_engine(backend_config(tmp_path, pgp_driver="openpgp-js"))
    assert exc_info.value.details == {"available": ["gnupg"]}


def test_create_engine_unknown_smime_driver(tmp_path, monkeypatch):
    monkeypatch.setattr(GnuPGBackend, "init", lambda self: None)
    with pytest.raises(ConfigurationError):
        create_engine(backend_config(tmp_path, smime_driver="openssl"))


def test_create_engine_builds_user_backends(tmp_path, monkeypatch):
    monkeypatch.setattr(GnuPGBackend, "init", lambda self: None)

    engine = create_engine(backend_config(tmp_path), username="alice")

    assert isinstance(engine.pgp_backend, GnuPGBackend)
    assert engine.pgp_backend.homedir == str(tmp_path / "pgp" / "alice")
    assert isinstance(engine.smime_backend, SMIMEBackend)
    assert str(engine.smime_backend.homedir) == str(tmp_path / "smime" / "alice")
    assert os.path.isdir(tmp_path / "smime" / "alice")


def test_create_engine_without_smime(tmp_path, monkeypatch):
    monkeypatch.setattr(GnuPGBackend, "init", lambda self: None)
    engine = create_engine(backend_config(tmp_path), enable_smime=False)
    assert engine.smime_backend is None
    assert engine.smime is None


def test_backend_init_failure_aborts(backend, config, caplog):
    backend.fail_init = True

    with pytest.raises(BackendFailureError):
        SecurityEngine(config, backend)
    assert "Enigma engine: init failed" in caplog.text


def test_invalid_config_rejected(backend):
    config = EngineConfiguration(passwords=PasswordConfiguration(password_time_minutes=-5))
    with pytest.raises(ConfigurationError):
        SecurityEngine(config, backend)
    assert backend.init_calls == 0


def test_expired_passwords_purged_on_startup(backend):
    clock_now = [1000.0]
    store = InMemorySessionStore()
    store.save({ALICE_ID: ("secret", 100)})
    config = EngineConfiguration(passwords=PasswordConfiguration(password_time_minutes=5))

    SecurityEngine(config, backend, session_store=store, clock=lambda: clock_now[0])

    assert store.load() == {}


def test_save_password_ignores_empty_values(engine):
    engine.save_password("", "secret")
    engine.save_password(ALICE_ID, "")
    assert engine.get_passwords() == {}

    engine.save_password(ALICE_ID, "secret")
    assert engine.get_passwords() == {ALICE_ID: "secret"}

    engine.clear_passwords()
    assert engine.get_passwords() == {}


def test_is_supported(config):
    backend = FakeBackend(caps={CAPS_SIGN, CAPS_KEYGEN})
    engine = SecurityEngine(config, backend)

    assert engine.is_supported(CAPS_SIGN)
    assert not engine.is_supported(CAPS_PASSWORD_CHANGE)


def test_is_keys_part():
    assert SecurityEngine.is_keys_part(MimeNode(mimetype="application/pgp-keys"))
    assert not SecurityEngine.is_keys_part(MimeNode(mimetype="application/pgp-signature"))


def test_delete_user_data(backend, tmp_path):
    config = backend_config(tmp_path)
    engine = SecurityEngine(config, backend)
    (tmp_path / "pgp" / "alice").mkdir(parents=True)
    (tmp_path / "pgp" / "alice" / "pubring.kbx").write_bytes(b"keys")
    (tmp_path / "smime" / "alice").mkdir(parents=True)
    (tmp_path / "pgp" / "bob").mkdir(parents=True)

    assert engine.delete_user_data("alice")

    assert not (tmp_path / "pgp" / "alice").exists()
    assert not (tmp_path / "smime" / "alice").exists()
    assert (tmp_path / "pgp" / "bob").exists()


def test_delete_user_data_without_directories(backend, tmp_path):
    engine = SecurityEngine(backend_config(tmp_path), backend)
    assert engine.delete_user_data("nobody")


def test_key_management_passes_vault_passwords(unlocked_engine, backend):
    calls = []
    original = backend.export_key

    def export_key(key_id, include_private=False, passwords=None):
        calls.append((key_id, include_private, passwords))
        return original(key_id, include_private, passwords)

    backend.export_key = export_key

    unlocked_engine.export_key(ALICE_ID, include_private=True)

    assert calls == [(ALICE_ID, True, {ALICE_ID: "secret"})]


def test_list_and_find_keys(engine):
    assert {key.id for key in engine.list_keys()} == {ALICE_ID, "BBBB0000BBBB0002"}
    assert engine.find_key("alice@example.org", can_sign=True).id == ALICE_ID
    assert engine.get_key(ALICE_ID).name == "Alice"
