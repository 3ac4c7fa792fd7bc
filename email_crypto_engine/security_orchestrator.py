# ============================================================================
# email_crypto_engine/security_orchestrator.py
# ============================================================================
"""
Signing and encryption of outgoing messages.

Each operation resolves keys and passwords first and calls the backend
second; the ComposedMessage is only modified once the backend succeeded,
so a failed operation never leaves a half-protected message behind.
"""

import dataclasses
import logging
from typing import List, Optional, Tuple

from .backend_gateway import BackendGateway
from .config_manager import PasswordConfiguration, ProcessingConfiguration
from .core.text_formatter import MessageTextFormatter
from .data_models import BackendSignMode, ComposedMessage, EncryptMode, Key, SignMode
from .exceptions import BadPasswordError, CryptoEngineError, MissingPasswordError, raise_key_not_found
from .key_discovery import KeyDiscovery
from .key_resolver import KeyResolver
from .password_vault import PasswordVault

logger = logging.getLogger(__name__)


class SecurityOrchestrator:
    """Outbound PGP operations on composed messages."""

    def __init__(self, gateway: BackendGateway, resolver: KeyResolver, vault: PasswordVault,
                 processing: ProcessingConfiguration, passwords: PasswordConfiguration,
                 discovery: Optional[KeyDiscovery] = None):
        self.gateway = gateway
        self.resolver = resolver
        self.vault = vault
        self.processing = processing
        self.passwords = passwords
        self.discovery = discovery

    def _signing_key(self, address: Optional[str]) -> Key:
        """Signing key of the sender with its password set."""
        key = self.resolver.find_key(address, can_sign=True) if address else None
        if key is None:
            raise_key_not_found(address)

        password = self.vault.get_passwords().get(key.id)
        if password is None and not self.passwords.passwordless:
            raise MissingPasswordError(
                f"Password required for key {key.id}",
                {"missing": {key.id: key.name}}
            )

        # keep the cached key free of the secret
        return dataclasses.replace(key, password=password)

    @staticmethod
    def _bad_password(key: Key, error: BadPasswordError) -> BadPasswordError:
        return BadPasswordError(
            f"Bad password for key {key.id}",
            {"bad": {key.id: key.name}},
            error
        )

    def _text_body(self, message: ComposedMessage) -> Tuple[str, bool]:
        """Plain text of the message and whether it was converted from HTML."""
        if message.text_body is None and message.html_body is not None:
            return MessageTextFormatter.html_to_text(message.html_body), True
        return message.text_body or "", False

    def _replace_text_body(self, message: ComposedMessage, text: str, from_html: bool) -> None:
        message.set_text_body(text)
        message.format_flowed = False
        if from_html:
            message.html_body = None

    def sign_message(self, message: ComposedMessage, mode: Optional[SignMode] = None) -> None:
        """
        Sign a message in place.

        Args:
            message: Message to sign
            mode: SignMode.BODY (clear-sign), SignMode.MIME (PGP/MIME) or
                None to choose by message structure

        Raises:
            KeyNotFoundError: no signing key for the From address
            MissingPasswordError: details["missing"] = {key_id: key_name}
            BadPasswordError: details["bad"] = {key_id: key_name}
            BackendFailureError: any other backend failure
        """
        key = self._signing_key(message.from_address())

        if mode == SignMode.BODY:
            pgp_mode = BackendSignMode.CLEAR
        elif mode == SignMode.MIME:
            pgp_mode = BackendSignMode.DETACHED
        elif message.is_multipart():
            pgp_mode = BackendSignMode.DETACHED
        else:
            pgp_mode = BackendSignMode.CLEAR

        from_html = False
        if pgp_mode is BackendSignMode.CLEAR:
            text, from_html = self._text_body(message)

            # clear-signed text cannot be format=flowed
            if message.format_flowed:
                text = MessageTextFormatter.unfold_flowed(text)
                text = MessageTextFormatter.wordwrap(text, self.processing.line_length, "\r\n")

            body = text.encode(message.text_charset)
        else:
            body = message.get_orig_body()

        try:
            signed = self.gateway.sign(body, key, pgp_mode)
        except BadPasswordError as e:
            raise self._bad_password(key, e) from e

        if pgp_mode is BackendSignMode.CLEAR:
            self._replace_text_body(message, signed.decode(message.text_charset, "replace"), from_html)
        else:
            message.add_pgp_signature(signed, self.gateway.signature_algorithm())

        logger.info(f"Message signed with key {key.id} ({pgp_mode.value})")

    def _recipient_addresses(self, message: ComposedMessage, sender: Optional[str],
                             is_draft: bool) -> List[str]:
        addresses = [sender] if sender else []
        # drafts are readable by the sender only
        if not is_draft:
            addresses.extend(message.recipients())

        recipients = []
        seen = set()
        for address in addresses:
            if address.lower() not in seen:
                seen.add(address.lower())
                recipients.append(address)
        return recipients

    def encrypt_message(self, message: ComposedMessage, mode: Optional[EncryptMode] = None,
                        is_draft: bool = False) -> None:
        """
        Encrypt a message in place for the sender and all recipients.

        Args:
            message: Message to encrypt
            mode: EncryptMode flags; BODY or MIME select the format, SIGN
                adds a signature
            is_draft: Encrypt for the sender only

        Raises:
            KeyNotFoundError: details["missing"] names the recipient without a key
            MissingPasswordError, BadPasswordError: signing key password problems
            BackendFailureError: any other backend failure
        """
        mode = EncryptMode(mode or 0)
        sender = message.from_address()

        sign_key = None
        if mode & EncryptMode.SIGN:
            sign_key = self._signing_key(sender)

        recipients = self._recipient_addresses(message, sender, is_draft)

        if self.discovery is not None:
            self.discovery.sync_keys(recipients)

        keys = []
        for email in recipients:
            if sign_key is not None and sender and email.lower() == sender.lower():
                key = sign_key
            else:
                key = self.resolver.find_key(email)

            if key is None:
                raise_key_not_found(email)
            keys.append(key)

        if mode & EncryptMode.BODY:
            body_mode = True
        elif mode & EncryptMode.MIME:
            body_mode = False
        else:
            body_mode = not message.is_multipart()

        from_html = False
        if body_mode:
            text, from_html = self._text_body(message)
            body = text.encode(message.text_charset)
        else:
            body = message.get_orig_body()

        try:
            encrypted = self.gateway.encrypt(body, keys, sign_key)
        except BadPasswordError as e:
            if sign_key is None:
                raise
            raise self._bad_password(sign_key, e) from e

        if body_mode:
            self._replace_text_body(message, encrypted.decode("ascii", "replace"), from_html)
        else:
            message.set_pgp_encrypted_body(encrypted)

        logger.info(f"Message encrypted for {len(keys)} key(s)")

    def attach_public_key(self, message: ComposedMessage) -> bool:
        """Attach the sender's public key as ``0x<ID>.asc``; False when not possible."""
        sender = message.from_address()
        if not sender:
            return False

        key = self.resolver.find_key(sender, can_sign=True)
        if key is None:
            return False

        try:
            armor = self.resolver.export_key(key.id)
        except CryptoEngineError:
            return False

        message.add_attachment(armor, "application/pgp-keys", f"0x{Key.format_id(key.id)}.asc", "7bit")
        return True
