# ============================================================================
# email_crypto_engine/decryption_splicer.py
# ============================================================================
"""
Decryption of encrypted parts and grafting of the plaintext into the document.

The decrypted plaintext is parsed into a new subtree which replaces the
encrypted envelope: the old path and its descendants leave the document
index, the new nodes are renumbered below the old path and registered.
"""

import logging
import re
from typing import Optional

from .backend_gateway import BackendGateway
from .core.mime_parser import normalize_line_endings, parse_message
from .data_models import (
    DecryptionResult, DecryptionStatus, MimeDocument, MimeNode, PartOutcome,
    Signature, WalkContext
)
from .exceptions import CryptoEngineError
from .interfaces import CAPS_DECRYPT

logger = logging.getLogger(__name__)

PGP_SUFFIX = re.compile(r"^(.*)\.pgp$", re.IGNORECASE)


class DecryptionSplicer:
    """Decrypts inline, PGP/MIME and S/MIME encrypted parts."""

    def __init__(self, classifier, pgp: BackendGateway, smime: Optional[BackendGateway] = None,
                 enabled: bool = True):
        self.classifier = classifier
        self.pgp = pgp
        self.smime = smime
        self.enabled = enabled

    # ------------------------------------------------------------------
    # Inline PGP
    # ------------------------------------------------------------------

    def parse_plain_encrypted(self, ctx: WalkContext, document: MimeDocument, outcome: PartOutcome,
                              block: bytes, prefix: bytes = b"") -> None:
        """
        Decrypt an inline armored block of a text part.

        Separately encrypted ``*.pgp`` sibling attachments are flagged for
        on-demand decryption when the text decrypts, and restored when it
        does not.
        """
        if not self.enabled:
            return

        node = outcome.node

        try:
            plaintext, signature = self.pgp.decrypt(block, sender=ctx.sender)
        except CryptoEngineError as e:
            ctx.decryptions[node.mime_id] = DecryptionResult(DecryptionStatus.FAILURE, e)
            self._restore_encrypted_attachments(document, node)
            return

        ctx.decryptions[node.mime_id] = DecryptionResult(DecryptionStatus.SUCCESS)
        if signature is not None:
            ctx.signatures[node.mime_id] = signature

        node.body = prefix + plaintext
        node.body_modified = True

        # may be clear-signed inside
        self.classifier.parse_plain(ctx, document, outcome, plaintext, prefix)

        ctx.encrypted_parts.append(node.mime_id)

        # only a part of the body was encrypted
        if prefix:
            ctx.decryptions[node.mime_id] = DecryptionResult(DecryptionStatus.PARTIALLY_ENCRYPTED)

        self._flag_encrypted_attachments(document, node)

    def _flag_encrypted_attachments(self, document: MimeDocument, node: MimeNode) -> None:
        # Enigmail "encrypt each attachment separately" sends foo.pgp
        # attachments next to the inline encrypted text
        parent = document.parent_of(node.mime_id)
        if parent is None:
            return

        for sibling in parent.parts:
            if sibling.disposition != "attachment" or sibling.mimetype != "application/octet-stream":
                continue
            m = PGP_SUFFIX.match(sibling.filename or "")
            if m:
                sibling.filename = m.group(1)
                sibling.need_decryption = True
                sibling.body_modified = True
                # the stored body is ciphertext, never serve it as the plain file
                if sibling.body is not None:
                    sibling.encrypted_body = sibling.body
                    sibling.body = None
                logger.debug(f"Attachment '{sibling.mime_id}' flagged for decryption")

    def _restore_encrypted_attachments(self, document: MimeDocument, node: MimeNode) -> None:
        parent = document.parent_of(node.mime_id)
        if parent is None:
            return

        for sibling in parent.parts:
            if sibling.need_decryption and not PGP_SUFFIX.match(sibling.filename or ""):
                sibling.filename = (sibling.filename or "") + ".pgp"
                sibling.need_decryption = False
                if sibling.encrypted_body is not None:
                    sibling.body = sibling.encrypted_body
                    sibling.encrypted_body = None

    def decrypt_attachment(self, document: MimeDocument, node: MimeNode,
                           sender: Optional[str] = None) -> Optional[bytes]:
        """Fetch and decrypt an attachment flagged with ``need_decryption``."""
        body = node.encrypted_body
        if body is None and document.fetcher is not None:
            body = document.fetcher.fetch_part(document.uid, node)
        if body is None:
            return None

        try:
            plaintext, _ = self.pgp.decrypt(body, sender=sender)
        except CryptoEngineError as e:
            logger.debug(f"Attachment '{node.mime_id}' left encrypted: {e}")
            return None

        node.body = plaintext
        node.size = len(plaintext)
        node.body_modified = True
        node.need_decryption = False
        node.encrypted_body = None
        return plaintext

    # ------------------------------------------------------------------
    # PGP/MIME and S/MIME
    # ------------------------------------------------------------------

    def parse_pgp_encrypted(self, ctx: WalkContext, document: MimeDocument, outcome: PartOutcome) -> None:
        if not self.enabled:
            return

        part = outcome.node.parts[1]
        body = document.get_part_body(part)

        try:
            plaintext, signature = self.pgp.decrypt(body or b"", sender=ctx.sender)
        except CryptoEngineError as e:
            self._mark_failed(ctx, document, outcome, part, e)
            return

        self._splice(ctx, document, outcome, plaintext, signature)

    def parse_smime_encrypted(self, ctx: WalkContext, document: MimeDocument, outcome: PartOutcome) -> None:
        if not self.enabled:
            return
        if self.smime is None or CAPS_DECRYPT not in self.smime.capabilities():
            logger.debug(f"No S/MIME backend to decrypt part '{outcome.node.mime_id}'")
            return

        node = outcome.node
        body = document.get_part_body(node)

        try:
            plaintext, signature = self.smime.decrypt(body or b"", sender=ctx.sender)
        except CryptoEngineError as e:
            self._mark_failed(ctx, document, outcome, node, e)
            return

        self._splice(ctx, document, outcome, plaintext, signature)

    def _mark_failed(self, ctx: WalkContext, document: MimeDocument, outcome: PartOutcome,
                     part: MimeNode, error: CryptoEngineError) -> None:
        ctx.decryptions[part.mime_id] = DecryptionResult(DecryptionStatus.FAILURE, error)

        # render the decryption status instead of the encrypted attachment
        part.part_type = "content"
        document.content_parts.append(part)
        outcome.abort = True

    def _splice(self, ctx: WalkContext, document: MimeDocument, outcome: PartOutcome,
                plaintext: bytes, signature: Optional[Signature]) -> None:
        plaintext = normalize_line_endings(plaintext)
        struct = parse_message(plaintext)

        self.modify_structure(ctx, document, outcome, struct, len(plaintext))

        # there may be encrypted or signed parts inside
        inner = self.classifier.part_structure(ctx, document, struct)
        if inner.node is not struct:
            outcome.node = inner.node
            outcome.mimetype = inner.mimetype
        outcome.abort = outcome.abort or inner.abort

        result = DecryptionResult(DecryptionStatus.SUCCESS)
        ctx.decryptions[struct.mime_id] = result
        for sub in struct.parts:
            ctx.decryptions[sub.mime_id] = result
            if signature is not None:
                ctx.signatures[sub.mime_id] = signature

    def modify_structure(self, ctx: WalkContext, document: MimeDocument, outcome: PartOutcome,
                         struct: MimeNode, size: int = 0) -> None:
        """Replace the encrypted node of ``outcome`` with the decrypted ``struct``."""
        old = outcome.node
        old_id = old.mime_id

        removed = document.remove_subtree(old_id)
        logger.debug(f"Replacing part '{old_id}' ({len(removed)} index entries)")

        # original envelope headers are the base
        struct.headers = {**old.headers, **struct.headers}
        struct.size = size
        struct.filename = old.filename

        self._modify_structure_part(ctx, document, struct, old_id)

        document.replace(old, struct, old_id)
        outcome.node = struct
        outcome.mimetype = struct.mimetype

    def _modify_structure_part(self, ctx: WalkContext, document: MimeDocument,
                               part: MimeNode, old_id: str) -> None:
        # never cache the body
        part.body_modified = True
        part.encoding = "stream"

        if old_id:
            part.mime_id = f"{old_id}.{part.mime_id}" if part.mime_id else old_id

        ctx.encrypted_parts.append(part.mime_id)
        document.register(part)

        for sub in part.parts:
            self._modify_structure_part(ctx, document, sub, old_id)
