# ============================================================================
# email_crypto_engine/engine.py
# ============================================================================
"""
SecurityEngine facade and factory.

One engine serves one user session: it owns the backends, the key
resolver with its signing-key cache, the password vault and the key
discovery service. Every document walk gets its own WalkContext.
"""

import logging
import os
import shutil
import time
from typing import Any, Callable, Dict, List, Optional, Union

from .backend_gateway import BackendGateway
from .backends.gnupg_backend import GnuPGBackend
from .backends.smime_backend import SMIMEBackend
from .config_manager import EngineConfiguration, get_default_config
from .data_models import (
    Action, ComposedMessage, EncryptMode, ImportResult, Key, MimeDocument, MimeNode,
    PartOutcome, SignMode, WalkContext
)
from .exceptions import ConfigurationError, CryptoEngineError, raise_error
from .interfaces import ICryptoBackend, ISessionStore
from .key_discovery import KeyDiscovery
from .key_resolver import KeyResolver
from .password_vault import PasswordVault
from .security_orchestrator import SecurityOrchestrator
from .structure_classifier import StructureClassifier

logger = logging.getLogger(__name__)

PGP_DRIVERS = {
    "gnupg": GnuPGBackend,
}

SMIME_DRIVERS = {
    "cryptography": SMIMEBackend,
}


class SecurityEngine:
    """
    Message security engine for one user session.

    Inbound: start_walk() / part_structure() / part_body() per node, or
    process_document() for a whole tree. Outbound: sign_message(),
    encrypt_message() and attach_public_key() on a ComposedMessage.
    """

    def __init__(
        self,
        config: EngineConfiguration,
        pgp_backend: ICryptoBackend,
        smime_backend: Optional[ICryptoBackend] = None,
        session_store: Optional[ISessionStore] = None,
        txt_resolver: Optional[Callable[[str], List[str]]] = None,
        clock: Callable[[], float] = time.time
    ):
        config.validate()
        self.config = config

        for backend in (pgp_backend, smime_backend):
            if backend is None:
                continue
            try:
                backend.init()
            except CryptoEngineError as e:
                raise_error(e, abort=True)

        self.pgp_backend = pgp_backend
        self.smime_backend = smime_backend

        self.vault = PasswordVault(session_store, config.passwords.ttl_seconds, clock)
        self.resolver = KeyResolver(pgp_backend, config.processing.signing_key_cache_ttl, clock)

        self.discovery = None
        if config.key_discovery.woat_enabled:
            self.discovery = KeyDiscovery(config.key_discovery, self._import_discovered, txt_resolver)

        self.pgp = BackendGateway(pgp_backend, self.vault, self.discovery)
        self.smime = BackendGateway(smime_backend, self.vault) if smime_backend is not None else None

        self.classifier = StructureClassifier(config.processing, self.pgp, self.smime)
        self.orchestrator = SecurityOrchestrator(
            self.pgp, self.resolver, self.vault,
            config.processing, config.passwords, self.discovery
        )

        # removes expired passwords from the session
        if config.passwords.ttl_seconds:
            self.vault.get_passwords()

    def _import_discovered(self, data: bytes) -> ImportResult:
        return self.pgp_backend.import_keys(data, {})

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def start_walk(self, action: Action = Action.SHOW) -> WalkContext:
        """Fresh context for one document walk."""
        return WalkContext(action=action)

    def part_structure(self, ctx: WalkContext, document: MimeDocument, node: MimeNode,
                       body: Optional[bytes] = None) -> PartOutcome:
        return self.classifier.part_structure(ctx, document, node, body)

    def part_body(self, ctx: WalkContext, document: MimeDocument, node: MimeNode) -> Optional[bytes]:
        return self.classifier.part_body(ctx, document, node)

    def process_document(self, document: MimeDocument, action: Action = Action.SHOW) -> WalkContext:
        """
        Classify every node of a document, depth first.

        Children of a node are visited after the node itself, so a decrypted
        subtree is walked in place of its envelope.
        """
        ctx = self.start_walk(action)
        self._walk(ctx, document, document.root)
        logger.debug(
            f"Processed document {document.uid}: {len(ctx.signatures)} signature(s), "
            f"{len(ctx.decryptions)} decryption(s)"
        )
        return ctx

    def _walk(self, ctx: WalkContext, document: MimeDocument, node: MimeNode) -> None:
        outcome = self.part_structure(ctx, document, node)
        if outcome.abort:
            return
        for child in list(outcome.node.parts):
            self._walk(ctx, document, child)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def sign_message(self, message: ComposedMessage, mode: Optional[SignMode] = None) -> None:
        self.orchestrator.sign_message(message, mode)

    def encrypt_message(self, message: ComposedMessage, mode: Optional[EncryptMode] = None,
                        is_draft: bool = False) -> None:
        self.orchestrator.encrypt_message(message, mode, is_draft)

    def attach_public_key(self, message: ComposedMessage) -> bool:
        return self.orchestrator.attach_public_key(message)

    # ------------------------------------------------------------------
    # Keys and passwords
    # ------------------------------------------------------------------

    def list_keys(self, pattern: str = "") -> List[Key]:
        return self.resolver.list_keys(pattern)

    def find_key(self, email: str, can_sign: bool = False) -> Optional[Key]:
        return self.resolver.find_key(email, can_sign)

    def get_key(self, key_id: str) -> Key:
        return self.resolver.get_key(key_id)

    def delete_key(self, key_id: str) -> bool:
        return self.resolver.delete_key(key_id)

    def generate_key(self, params: Dict[str, Any]) -> Key:
        return self.resolver.generate_key(params)

    def import_key(self, content: Union[bytes, str], is_file: bool = False) -> ImportResult:
        return self.resolver.import_key(content, is_file, self.vault.get_passwords())

    def export_key(self, key_id: str, include_private: bool = False) -> bytes:
        return self.resolver.export_key(key_id, include_private, self.vault.get_passwords())

    def save_password(self, key_id: str, password: str) -> None:
        if key_id and password:
            self.vault.save_password(key_id, password)

    def get_passwords(self) -> Dict[str, str]:
        return self.vault.get_passwords()

    def clear_passwords(self) -> None:
        self.vault.clear()

    # ------------------------------------------------------------------
    # Misc
    # ------------------------------------------------------------------

    def is_supported(self, feature: str) -> bool:
        return feature in self.pgp_backend.capabilities()

    @staticmethod
    def is_keys_part(node: MimeNode) -> bool:
        """True for parts carrying a PGP key (application/pgp-keys)."""
        return node.mimetype == "application/pgp-keys"

    def delete_user_data(self, username: str) -> bool:
        """Remove the key store directories of a user."""
        for base in (self.config.backend.pgp_homedir, self.config.backend.smime_homedir):
            homedir = os.path.join(base, username)
            if not os.path.exists(homedir):
                continue
            try:
                shutil.rmtree(homedir)
            except OSError as e:
                logger.error(f"Unable to delete {homedir}: {e}")
                return False
        return True


def _select_driver(drivers: Dict[str, type], name: str, kind: str) -> type:
    try:
        return drivers[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown {kind} driver '{name}'",
            {"available": sorted(drivers)}
        )


def create_engine(
    config: Optional[EngineConfiguration] = None,
    username: str = "default",
    session_store: Optional[ISessionStore] = None,
    txt_resolver: Optional[Callable[[str], List[str]]] = None,
    enable_smime: bool = True
) -> SecurityEngine:
    """
    Factory function to create an engine with the configured backends.

    Backend drivers are chosen here, once; the engine itself only sees
    ICryptoBackend instances.
    """
    if config is None:
        config = get_default_config()

    backend_config = config.backend

    pgp_class = _select_driver(PGP_DRIVERS, backend_config.pgp_driver, "PGP")
    pgp_backend = pgp_class(
        os.path.join(backend_config.pgp_homedir, username),
        backend_config.gpg_binary
    )

    smime_backend = None
    if enable_smime:
        smime_class = _select_driver(SMIME_DRIVERS, backend_config.smime_driver, "S/MIME")
        smime_backend = smime_class(os.path.join(backend_config.smime_homedir, username))

    return SecurityEngine(
        config=config,
        pgp_backend=pgp_backend,
        smime_backend=smime_backend,
        session_store=session_store,
        txt_resolver=txt_resolver
    )
