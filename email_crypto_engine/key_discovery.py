# ============================================================================
# email_crypto_engine/key_discovery.py
# ============================================================================
"""
Public key discovery through the DNS based Web-Of-Anti-Trust directory.

For ``local+tag@example.org`` the TXT record at
``sha1("local")._woat.example.org`` is queried; a record such as
``v=woat1,public_key=<armored or base64 key>`` is imported.
"""

import hashlib
import logging
import re
from typing import Callable, Iterable, List, Optional

import dns.exception
import dns.resolver

from .config_manager import KeyDiscoveryConfiguration
from .exceptions import CryptoEngineError

logger = logging.getLogger(__name__)

WOAT_PREFIX = "v=woat1,"
RECIPIENT_DELIMITER = re.compile(r"\+.*$")


def dns_txt_resolver(timeout: float = 5.0) -> Callable[[str], List[str]]:
    """Build a TXT lookup function on dnspython."""

    def resolve(fqdn: str) -> List[str]:
        try:
            answers = dns.resolver.resolve(fqdn, "TXT", lifetime=timeout)
        except dns.exception.DNSException as e:
            logger.debug(f"TXT lookup for {fqdn} failed: {type(e).__name__}")
            return []
        return [b"".join(rdata.strings).decode("utf-8", "replace") for rdata in answers]

    return resolve


class KeyDiscovery:
    """Imports missing public keys published under the ``_woat`` label."""

    def __init__(self, config: KeyDiscoveryConfiguration, importer: Callable[[bytes], object],
                 resolver: Optional[Callable[[str], List[str]]] = None):
        self.config = config
        self.importer = importer
        self.resolver = resolver or dns_txt_resolver(config.dns_timeout)

    @staticmethod
    def lookup_label(local_part: str) -> str:
        """sha1 of the local part with any ``+tag`` suffix removed."""
        local_part = RECIPIENT_DELIMITER.sub("", local_part)
        return hashlib.sha1(local_part.encode("utf-8")).hexdigest()

    def lookup_name(self, address: str) -> Optional[str]:
        """FQDN to query for an address, None when the address is not eligible."""
        if "@" not in address or address.startswith("@"):
            return None

        local, domain = address.split("@", 1)
        allowed = self.config.woat_domains
        if allowed and domain.lower() not in (d.lower() for d in allowed):
            return None

        return f"{self.lookup_label(local)}._woat.{domain}"

    @staticmethod
    def extract_key(records: Iterable[str]) -> Optional[str]:
        for record in records:
            if record.startswith(WOAT_PREFIX):
                entry = record.split("public_key=")
                if len(entry) == 2:
                    # only one key per address
                    return entry[1]
        return None

    def sync_keys(self, recipients: Iterable[str]) -> int:
        """
        Look up and import keys for the addresses. Never raises.

        Returns:
            Number of key payloads handed to the importer
        """
        if not self.config.woat_enabled:
            return 0

        payloads = []
        for recipient in recipients:
            if not recipient:
                continue
            fqdn = self.lookup_name(recipient)
            if not fqdn:
                continue

            try:
                records = self.resolver(fqdn)
            except Exception as e:
                logger.warning(f"Key discovery lookup for {recipient} failed: {e}")
                continue

            payload = self.extract_key(records)
            if payload:
                logger.info(f"Found published key for {recipient}")
                payloads.append(payload)

        if not payloads:
            return 0

        try:
            self.importer("\n".join(payloads).encode("utf-8"))
        except CryptoEngineError as e:
            logger.warning(f"Importing discovered keys failed: {e}")
            return 0

        return len(payloads)
