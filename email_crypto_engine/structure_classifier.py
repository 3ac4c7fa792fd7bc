# ============================================================================
# email_crypto_engine/structure_classifier.py
# ============================================================================
"""
Classification of MIME parts into signed, encrypted and plain content.

Called once for every node of a document walk. Text parts are scanned for
inline armor, multipart/signed parts are split and verified and encrypted
containers are handed to the DecryptionSplicer.

text/html is never inspected for armor (EFAIL).
"""

import logging
from email.utils import getaddresses
from typing import Optional

from .backend_gateway import BackendGateway
from .config_manager import ProcessingConfiguration
from .core.armor_scanner import MODE_ENCRYPTED, MODE_SIGNED, extract_clearsigned_text, scan_armor
from .core.boundary_splitter import find_boundary, split_signed_body
from .data_models import MimeDocument, MimeNode, PartOutcome, WalkContext
from .decryption_splicer import DecryptionSplicer
from .interfaces import CAPS_VERIFY

logger = logging.getLogger(__name__)

PLAIN_TYPES = ("text/plain", "application/pgp")
ENCRYPTED_TYPES = ("multipart/encrypted", "application/pkcs7-mime")
SMIME_SIGNATURE_TYPES = ("application/pkcs7-signature", "application/x-pkcs7-signature")


class StructureClassifier:
    """Dispatches MIME nodes to the armor, signature and decryption handlers."""

    def __init__(self, config: ProcessingConfiguration, pgp: BackendGateway,
                 smime: Optional[BackendGateway] = None):
        self.config = config
        self.pgp = pgp
        self.smime = smime
        self.splicer = DecryptionSplicer(self, pgp, smime, enabled=config.enable_decryption)

    def part_structure(self, ctx: WalkContext, document: MimeDocument, node: MimeNode,
                       body: Optional[bytes] = None) -> PartOutcome:
        """
        Classify one node of the document.

        Args:
            ctx: Context of the current document walk
            document: Document owning the node
            node: Node to classify
            body: Already fetched body of the node, if any

        Returns:
            PartOutcome whose node replaces ``node`` when it was decrypted
        """
        outcome = PartOutcome(node=node, mimetype=node.mimetype)

        # Decryption oracle (CVE-2019-10740): on compose only the first
        # content part of a message is processed.
        if ctx.got_content and ctx.is_compose:
            logger.debug(f"Skipping part '{node.mime_id}' after first content part")
            return outcome

        self._update_sender(ctx, document, node)

        mimetype = node.mimetype
        if mimetype in PLAIN_TYPES:
            self.parse_plain(ctx, document, outcome, body)
            ctx.got_content = True
        elif mimetype == "multipart/signed":
            self.parse_signed(ctx, document, outcome, body)
            ctx.got_content = True
        elif mimetype in ENCRYPTED_TYPES:
            self.parse_encrypted(ctx, document, outcome)
            ctx.got_content = True
        else:
            ctx.got_content = node.part_type == "content"

        return outcome

    def _update_sender(self, ctx: WalkContext, document: MimeDocument, node: MimeNode) -> None:
        if document.sender:
            ctx.sender = document.sender

        from_header = node.headers.get("from")
        if from_header:
            addresses = [addr for _, addr in getaddresses([from_header]) if addr]
            if addresses:
                ctx.sender = addresses[0]

    def part_body(self, ctx: WalkContext, document: MimeDocument, node: MimeNode) -> Optional[bytes]:
        """Body of a node, decrypting attachments flagged for decryption on demand."""
        if node.need_decryption:
            return self.splicer.decrypt_attachment(document, node, sender=ctx.sender)
        return document.get_part_body(node)

    # ------------------------------------------------------------------
    # text/plain
    # ------------------------------------------------------------------

    def parse_plain(self, ctx: WalkContext, document: MimeDocument, outcome: PartOutcome,
                    body: Optional[bytes] = None, prefix: bytes = b"") -> None:
        """Scan a text body for an inline signed or encrypted block."""
        node = outcome.node

        if body is None:
            body = document.get_part_body(node)
        if not body:
            return

        block = scan_armor(body)

        if block.mode == MODE_SIGNED:
            self._parse_plain_signed(ctx, node, block.body, prefix + block.prefix)
        elif block.mode == MODE_ENCRYPTED:
            self.splicer.parse_plain_encrypted(ctx, document, outcome, block.body, prefix + block.prefix)

    def _parse_plain_signed(self, ctx: WalkContext, node: MimeNode, block: bytes, prefix: bytes) -> None:
        if not self.config.enable_signatures:
            return

        signature = None
        if ctx.is_display:
            signature = self.pgp.verify(block, sender=ctx.sender)

        node.body = extract_clearsigned_text(block, prefix)
        node.body_modified = True

        if signature is not None:
            signature.partial = bool(prefix)
            ctx.signatures[node.mime_id] = signature

    # ------------------------------------------------------------------
    # multipart/signed
    # ------------------------------------------------------------------

    def parse_signed(self, ctx: WalkContext, document: MimeDocument, outcome: PartOutcome,
                     body: Optional[bytes] = None) -> None:
        parts = outcome.node.parts

        if len(parts) > 1 and parts[1].mimetype in SMIME_SIGNATURE_TYPES:
            self._parse_smime_signed(ctx, document, outcome.node, body)
        # RFC 3156: exactly two parts, the second one the signature
        elif len(parts) == 2 and parts[1].mimetype == "application/pgp-signature":
            self._parse_pgp_signed(ctx, document, outcome.node, body)

    def _parse_pgp_signed(self, ctx: WalkContext, document: MimeDocument, node: MimeNode,
                          body: Optional[bytes]) -> None:
        self._verify_detached(ctx, document, node, body, self.pgp)

    def _parse_smime_signed(self, ctx: WalkContext, document: MimeDocument, node: MimeNode,
                            body: Optional[bytes]) -> None:
        if self.smime is None or CAPS_VERIFY not in self.smime.capabilities():
            logger.debug(f"S/MIME signature of part '{node.mime_id}' not verified")
            return
        self._verify_detached(ctx, document, node, body, self.smime)

    def _verify_detached(self, ctx: WalkContext, document: MimeDocument, node: MimeNode,
                         body: Optional[bytes], gateway: BackendGateway) -> None:
        if not self.config.enable_signatures or not ctx.is_display:
            return

        if body is None:
            # a modified body exists in memory only
            body = node.body if node.body_modified else document.get_part_body(node)

        split = split_signed_body(body, find_boundary(node))
        if split is None:
            logger.debug(f"Malformed multipart/signed part '{node.mime_id}', verification skipped")
            return

        msg_body, sig_body = split
        if not msg_body or not sig_body:
            return

        signature = gateway.verify(msg_body, sig_body, sender=ctx.sender)

        ctx.signatures[node.mime_id] = signature
        ctx.signatures[node.parts[0].mime_id] = signature

    # ------------------------------------------------------------------
    # multipart/encrypted, application/pkcs7-mime
    # ------------------------------------------------------------------

    def parse_encrypted(self, ctx: WalkContext, document: MimeDocument, outcome: PartOutcome) -> None:
        node = outcome.node
        parts = node.parts

        if node.mimetype == "application/pkcs7-mime":
            self.splicer.parse_smime_encrypted(ctx, document, outcome)
        # RFC 3156: control part followed by the encrypted data
        elif (len(parts) == 2
              and parts[0].mimetype == "application/pgp-encrypted"
              and parts[1].mimetype == "application/octet-stream"):
            self.splicer.parse_pgp_encrypted(ctx, document, outcome)
