# ============================================================================
# email_crypto_engine/__init__.py
# ============================================================================
"""
Email Crypto Engine Package

OpenPGP and S/MIME message security for a mail client: classifies MIME
parts, verifies and decrypts inbound mail, signs and encrypts outbound
mail through pluggable crypto backends.
"""

from .config_manager import EngineConfiguration, get_config_from_env, get_default_config, configure_logging
from .data_models import (
    Action, ComposedMessage, DecryptionStatus, EncryptMode, Key, MimeDocument, MimeNode,
    Signature, SignatureStatus, SignMode, WalkContext
)
from .engine import SecurityEngine, create_engine
from .exceptions import (
    BackendFailureError, BadPasswordError, ConfigurationError, CryptoEngineError,
    KeyNotFoundError, MalformedInputError, MissingPasswordError, PasswordError
)
from .password_vault import EncryptedSessionStore, InMemorySessionStore

__version__ = "1.0.0"

__all__ = [
    "create_engine",
    "SecurityEngine",
    "EngineConfiguration",
    "get_config_from_env",
    "get_default_config",
    "configure_logging",
    "Action",
    "ComposedMessage",
    "DecryptionStatus",
    "EncryptMode",
    "Key",
    "MimeDocument",
    "MimeNode",
    "Signature",
    "SignatureStatus",
    "SignMode",
    "WalkContext",
    "CryptoEngineError",
    "KeyNotFoundError",
    "PasswordError",
    "MissingPasswordError",
    "BadPasswordError",
    "MalformedInputError",
    "BackendFailureError",
    "ConfigurationError",
    "InMemorySessionStore",
    "EncryptedSessionStore",
]
